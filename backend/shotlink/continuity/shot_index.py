"""场景镜头的只读有序视图，提供相邻关系查询。"""

from __future__ import annotations

from typing import Iterable, Sequence

from shotlink.models import Shot


class ShotIndex:
    """按 position 排序的镜头索引。"""

    def __init__(self, scene_id: str, shots: Iterable[Shot]):
        self.scene_id = scene_id
        ordered = sorted(
            (shot for shot in shots if shot.scene_id == scene_id),
            key=lambda shot: shot.position,
        )
        self._order: list[str] = [shot.id for shot in ordered]
        self._rank: dict[str, int] = {shot_id: idx for idx, shot_id in enumerate(self._order)}
        if len(self._rank) != len(self._order):
            raise ValueError(f"duplicate shot ids in scene: scene_id={scene_id}")

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, shot_id: object) -> bool:
        return shot_id in self._rank

    @property
    def shot_ids(self) -> list[str]:
        return list(self._order)

    def rank_of(self, shot_id: str) -> int:
        return self._rank[shot_id]

    def next_of(self, shot_id: str) -> str | None:
        rank = self._rank.get(shot_id)
        if rank is None or rank + 1 >= len(self._order):
            return None
        return self._order[rank + 1]

    def are_adjacent(self, shot_a: str, shot_b: str) -> bool:
        """shot_b 是否紧跟在 shot_a 之后。"""
        rank_a = self._rank.get(shot_a)
        rank_b = self._rank.get(shot_b)
        if rank_a is None or rank_b is None:
            return False
        return rank_b == rank_a + 1

    def is_contiguous_run(self, shot_ids: Sequence[str]) -> bool:
        if len(shot_ids) < 2:
            return False
        return all(self.are_adjacent(a, b) for a, b in zip(shot_ids, shot_ids[1:]))

    def pairs(self) -> list[tuple[str, str]]:
        return list(zip(self._order, self._order[1:]))
