import pytest

from shotlink.continuity.derivation import derive_connections
from shotlink.continuity.shot_index import ShotIndex
from shotlink.models import ContinuityGroup, ContinuityStatus, Shot


def _shots(scene_id: str, shot_ids: list[str]) -> list[Shot]:
    return [
        Shot(id=shot_id, scene_id=scene_id, position=position)
        for position, shot_id in enumerate(shot_ids)
    ]


def _group(group_id: str, shot_ids: list[str], status: ContinuityStatus) -> ContinuityGroup:
    return ContinuityGroup(id=group_id, scene_id="scene-1", shot_ids=shot_ids, status=status)


def test_shot_index_orders_by_position_and_filters_scene():
    shots = [
        Shot(id="S3", scene_id="scene-1", position=2),
        Shot(id="S1", scene_id="scene-1", position=0),
        Shot(id="X1", scene_id="scene-2", position=1),
        Shot(id="S2", scene_id="scene-1", position=1),
    ]
    index = ShotIndex("scene-1", shots)

    assert index.shot_ids == ["S1", "S2", "S3"]
    assert len(index) == 3
    assert "X1" not in index
    assert index.rank_of("S3") == 2
    assert index.next_of("S1") == "S2"
    assert index.next_of("S3") is None
    assert index.pairs() == [("S1", "S2"), ("S2", "S3")]


def test_shot_index_adjacency_is_directional():
    index = ShotIndex("scene-1", _shots("scene-1", ["S1", "S2", "S3"]))

    assert index.are_adjacent("S1", "S2")
    assert not index.are_adjacent("S2", "S1")
    assert not index.are_adjacent("S1", "S3")
    assert not index.are_adjacent("S1", "missing")
    assert index.is_contiguous_run(["S1", "S2", "S3"])
    assert not index.is_contiguous_run(["S1", "S3"])
    assert not index.is_contiguous_run(["S1"])


def test_shot_index_rejects_duplicate_ids():
    shots = [
        Shot(id="S1", scene_id="scene-1", position=0),
        Shot(id="S1", scene_id="scene-1", position=1),
    ]
    with pytest.raises(ValueError):
        ShotIndex("scene-1", shots)


def test_derive_connections_prefers_approved_over_proposed():
    index = ShotIndex("scene-1", _shots("scene-1", ["S1", "S2", "S3", "S4"]))
    approved = [_group("a1", ["S1", "S2"], ContinuityStatus.APPROVED)]
    proposed = [_group("p1", ["S1", "S2", "S3", "S4"], ContinuityStatus.PROPOSED)]

    connections = derive_connections(index, approved, proposed)

    assert [(c.shot_a, c.shot_b, c.status, c.group_id) for c in connections] == [
        ("S1", "S2", ContinuityStatus.APPROVED, "a1"),
        ("S2", "S3", ContinuityStatus.PROPOSED, "p1"),
        ("S3", "S4", ContinuityStatus.PROPOSED, "p1"),
    ]


def test_derive_connections_ignores_declined_and_can_hide_proposed():
    index = ShotIndex("scene-1", _shots("scene-1", ["S1", "S2", "S3"]))
    approved = [_group("a1", ["S2", "S3"], ContinuityStatus.APPROVED)]
    proposed = [_group("p1", ["S1", "S2"], ContinuityStatus.PROPOSED)]
    declined = [_group("d1", ["S1", "S2", "S3"], ContinuityStatus.DECLINED)]

    all_connections = derive_connections(index, approved, proposed, declined)
    assert [(c.shot_a, c.status) for c in all_connections] == [
        ("S1", ContinuityStatus.PROPOSED),
        ("S2", ContinuityStatus.APPROVED),
    ]

    approved_only = derive_connections(
        index, approved, proposed, declined, include_proposed=False
    )
    assert [(c.shot_a, c.shot_b) for c in approved_only] == [("S2", "S3")]


def test_derive_connections_skips_edges_no_longer_adjacent():
    # S2 已被删除，旧分组中的 S1->S3 不再是相邻连接
    index = ShotIndex("scene-1", _shots("scene-1", ["S1", "S3"]))
    approved = [_group("a1", ["S1", "S2", "S3"], ContinuityStatus.APPROVED)]

    assert derive_connections(index, approved, []) == []
