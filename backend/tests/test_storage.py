from datetime import datetime, timezone

import kuzu
import pytest

from shotlink.continuity.serialization import load_payload
from shotlink.models import ContinuityGroup, ContinuityPayload, ContinuityStatus
from shotlink.storage.graph import GraphStorage
from shotlink.storage.migrations import export_continuity, run_backfill_migrations

CREATED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _payload() -> ContinuityPayload:
    return ContinuityPayload(
        continuity_groups={
            "scene-1": [
                ContinuityGroup(
                    id="g-approved",
                    scene_id="scene-1",
                    group_number=1,
                    shot_ids=["S1", "S2"],
                    status=ContinuityStatus.APPROVED,
                    transition_type="flow",
                    approved_at=CREATED,
                    created_at=CREATED,
                ),
                ContinuityGroup(
                    id="g-proposed",
                    scene_id="scene-1",
                    group_number=2,
                    shot_ids=["S2", "S3", "S4"],
                    status=ContinuityStatus.PROPOSED,
                    description="it's a 'quoted' pan",
                    created_at=CREATED,
                ),
            ],
            "scene-2": [
                ContinuityGroup(
                    id="g-declined",
                    scene_id="scene-2",
                    group_number=1,
                    shot_ids=["T1", "T2"],
                    status=ContinuityStatus.DECLINED,
                    edited_by="editor",
                    edited_at=CREATED,
                    created_at=CREATED,
                )
            ],
        },
        locked=False,
        locked_scene_ids=["scene-1"],
    )


def test_graph_storage_replaces_and_orders_shots(tmp_path):
    storage = GraphStorage(db_path=tmp_path / "shotlink.db")
    try:
        storage.replace_scene_shots(scene_id="scene-1", shot_ids=["S1", "S2", "S3"])
        shots = storage.replace_scene_shots(scene_id="scene-1", shot_ids=["S3", "S1"])

        assert [(shot.id, shot.position) for shot in shots] == [("S3", 0), ("S1", 1)]
        assert storage.get_shots("scene-1") == shots
        assert storage.get_shots("scene-2") == []
    finally:
        storage.close()


def test_graph_storage_delete_shot_renumbers_positions(tmp_path):
    storage = GraphStorage(db_path=tmp_path / "shotlink.db")
    try:
        storage.replace_scene_shots(scene_id="scene-1", shot_ids=["S1", "S2", "S3"])

        storage.delete_shot(scene_id="scene-1", shot_id="S2")

        shots = storage.get_shots("scene-1")
        assert [(shot.id, shot.position) for shot in shots] == [("S1", 0), ("S3", 1)]
        with pytest.raises(KeyError):
            storage.delete_shot(scene_id="scene-1", shot_id="S2")
    finally:
        storage.close()


def test_graph_storage_rejects_duplicate_shot_ids(tmp_path):
    storage = GraphStorage(db_path=tmp_path / "shotlink.db")
    try:
        with pytest.raises(ValueError):
            storage.replace_scene_shots(scene_id="scene-1", shot_ids=["S1", "S1"])
    finally:
        storage.close()


def test_graph_storage_persists_continuity(tmp_path):
    db_path = tmp_path / "shotlink.db"
    storage = GraphStorage(db_path=db_path)
    payload = _payload()
    try:
        assert storage.load_continuity(video_id="video-1") is None

        storage.save_continuity(video_id="video-1", payload=payload)
        storage.save_continuity(video_id="video-1", payload=payload)

        raw = storage.load_continuity(video_id="video-1")
        assert raw["lockedSceneIds"] == ["scene-1"]
        assert [group["id"] for group in raw["continuityGroups"]["scene-1"]] == [
            "g-approved",
            "g-proposed",
        ]
        assert load_payload(raw) == payload
        assert storage.list_continuity_videos() == ["video-1"]
    finally:
        storage.close()

    reopened = GraphStorage(db_path=db_path)
    try:
        assert load_payload(reopened.load_continuity(video_id="video-1")) == payload
    finally:
        reopened.close()


def test_graph_storage_save_overwrites_previous_groups(tmp_path):
    storage = GraphStorage(db_path=tmp_path / "shotlink.db")
    try:
        storage.save_continuity(video_id="video-1", payload=_payload())
        storage.save_continuity(
            video_id="video-2",
            payload=_payload().model_copy(update={"continuity_groups": {}}),
        )
        storage.save_continuity(
            video_id="video-1", payload=ContinuityPayload(locked=True)
        )

        raw = storage.load_continuity(video_id="video-1")
        assert raw == {"continuityGroups": {}, "locked": True, "lockedSceneIds": []}
        assert storage.list_continuity_videos() == ["video-1", "video-2"]
    finally:
        storage.close()


def test_backfill_migrations_default_missing_status_to_approved(tmp_path):
    db_path = tmp_path / "shotlink.db"
    db = kuzu.Database(str(db_path))
    conn = kuzu.Connection(db)
    conn.execute(
        "CREATE NODE TABLE ContinuityGroup("
        "id STRING, "
        "video_id STRING, "
        "scene_id STRING, "
        "group_number INT64, "
        "shot_ids_json STRING, "
        "transition_type STRING, "
        "description STRING, "
        "created_at STRING, "
        "PRIMARY KEY (id)"
        ");"
    )
    conn.execute(
        (
            "CREATE (:ContinuityGroup {"
            "id: 'legacy-1', "
            "video_id: 'video-1', "
            "scene_id: 'scene-1', "
            "group_number: 1, "
            "shot_ids_json: '[\"S1\", \"S2\"]', "
            "transition_type: 'flow', "
            "created_at: '2024-05-01T12:00:00+00:00'"
            "});"
        )
    )
    conn.execute(
        "CREATE NODE TABLE ContinuityState("
        "id STRING, locked BOOLEAN, locked_scene_ids_json STRING, PRIMARY KEY (id)"
        ");"
    )
    conn.execute(
        "CREATE (:ContinuityState {id: 'video-1', locked: false, locked_scene_ids_json: '[]'});"
    )
    conn.close()
    db.close()

    assert run_backfill_migrations(db_path) == ["video-1"]

    exported = export_continuity(db_path, "video-1")
    group = exported["continuityGroups"]["scene-1"][0]
    assert group["id"] == "legacy-1"
    assert group["status"] == "approved"
    assert group["shotIds"] == ["S1", "S2"]

    storage = GraphStorage(db_path=db_path)
    try:
        raw = storage.load_continuity(video_id="video-1")
        assert raw["continuityGroups"]["scene-1"][0]["status"] == "approved"
    finally:
        storage.close()


def test_export_continuity_missing_video_fails(tmp_path):
    db_path = tmp_path / "shotlink.db"
    GraphStorage(db_path=db_path).close()

    with pytest.raises(KeyError):
        export_continuity(db_path, "missing")
