"""分组仓库：group 仓（id -> group）+ 场景索引（scene -> status -> [id]）。"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from shotlink.continuity.errors import DuplicateApproval, InvalidGroup
from shotlink.continuity.shot_index import ShotIndex
from shotlink.models import ContinuityGroup, ContinuityStatus

PARTITION_ORDER = (
    ContinuityStatus.APPROVED,
    ContinuityStatus.PROPOSED,
    ContinuityStatus.DECLINED,
)


@dataclass(frozen=True)
class ScenePartitions:
    """单个场景的三个分区快照；只读，修改返回新快照。"""

    scene_id: str
    approved: tuple[ContinuityGroup, ...] = field(default_factory=tuple)
    proposed: tuple[ContinuityGroup, ...] = field(default_factory=tuple)
    declined: tuple[ContinuityGroup, ...] = field(default_factory=tuple)

    @classmethod
    def from_groups(
        cls, scene_id: str, groups: Iterable[ContinuityGroup]
    ) -> "ScenePartitions":
        buckets: dict[ContinuityStatus, list[ContinuityGroup]] = {
            status: [] for status in PARTITION_ORDER
        }
        for group in groups:
            buckets[group.status].append(group)
        return cls(
            scene_id=scene_id,
            approved=tuple(buckets[ContinuityStatus.APPROVED]),
            proposed=tuple(buckets[ContinuityStatus.PROPOSED]),
            declined=tuple(buckets[ContinuityStatus.DECLINED]),
        )

    def of(self, status: ContinuityStatus) -> tuple[ContinuityGroup, ...]:
        if status == ContinuityStatus.APPROVED:
            return self.approved
        if status == ContinuityStatus.PROPOSED:
            return self.proposed
        return self.declined

    def __iter__(self) -> Iterator[ContinuityGroup]:
        """approved ++ proposed ++ declined。"""
        yield from self.approved
        yield from self.proposed
        yield from self.declined

    def is_empty(self) -> bool:
        return not (self.approved or self.proposed or self.declined)

    def find(self, group_id: str) -> ContinuityGroup | None:
        for group in self:
            if group.id == group_id:
                return group
        return None

    def find_in(
        self, group_id: str, statuses: Iterable[ContinuityStatus]
    ) -> ContinuityGroup | None:
        for status in statuses:
            for group in self.of(status):
                if group.id == group_id:
                    return group
        return None

    def groups_with_edge(
        self, shot_a: str, shot_b: str, statuses: Iterable[ContinuityStatus]
    ) -> list[ContinuityGroup]:
        return [
            group
            for status in statuses
            for group in self.of(status)
            if group.has_edge(shot_a, shot_b)
        ]

    def _with(self, status: ContinuityStatus, groups: Iterable[ContinuityGroup]) -> "ScenePartitions":
        groups = tuple(groups)
        if status == ContinuityStatus.APPROVED:
            return ScenePartitions(self.scene_id, groups, self.proposed, self.declined)
        if status == ContinuityStatus.PROPOSED:
            return ScenePartitions(self.scene_id, self.approved, groups, self.declined)
        return ScenePartitions(self.scene_id, self.approved, self.proposed, groups)

    def without(self, group_id: str) -> "ScenePartitions":
        result = self
        for status in PARTITION_ORDER:
            kept = [group for group in result.of(status) if group.id != group_id]
            if len(kept) != len(result.of(status)):
                result = result._with(status, kept)
        return result

    def with_group(self, group: ContinuityGroup) -> "ScenePartitions":
        return self._with(group.status, [*self.of(group.status), group])

    def with_replaced(self, group: ContinuityGroup) -> "ScenePartitions":
        """原位替换同 id 的分组（保持分区内顺序）；状态变化时移动到新分区末尾。"""
        current = self.find(group.id)
        if current is None:
            raise KeyError(f"group not in scene: group_id={group.id}")
        if current.status != group.status:
            return self.without(group.id).with_group(group)
        return self._with(
            group.status,
            [group if item.id == group.id else item for item in self.of(group.status)],
        )

    def with_partition(
        self, status: ContinuityStatus, groups: Iterable[ContinuityGroup]
    ) -> "ScenePartitions":
        return self._with(status, groups)

    def next_group_number(self) -> int:
        return max((group.group_number for group in self), default=0) + 1


def validate_partitions(partitions: ScenePartitions, index: ShotIndex) -> None:
    """提交前校验：>=2 镜头、连续、分区与状态一致、approved 连接唯一。"""
    seen_ids: set[str] = set()
    approved_edges: dict[tuple[str, str], str] = {}
    for status in PARTITION_ORDER:
        for group in partitions.of(status):
            if group.id in seen_ids:
                raise InvalidGroup(f"duplicate group id in scene: group_id={group.id}")
            seen_ids.add(group.id)
            if group.status != status:
                raise InvalidGroup(
                    f"group status does not match partition: group_id={group.id} "
                    f"status={group.status.value} partition={status.value}"
                )
            if group.scene_id != partitions.scene_id:
                raise InvalidGroup(
                    f"group belongs to another scene: group_id={group.id} scene_id={group.scene_id}"
                )
            if len(group.shot_ids) < 2:
                raise InvalidGroup(f"group must contain at least 2 shots: group_id={group.id}")
            if not index.is_contiguous_run(group.shot_ids):
                raise InvalidGroup(
                    f"group shots must be a contiguous run: group_id={group.id} "
                    f"shot_ids={group.shot_ids}"
                )
            if status != ContinuityStatus.APPROVED:
                continue
            for edge in group.edges():
                owner = approved_edges.get(edge)
                if owner is not None:
                    raise DuplicateApproval(
                        f"connection already approved: shot_a={edge[0]} shot_b={edge[1]} "
                        f"group_id={owner}"
                    )
                approved_edges[edge] = group.id


class GroupRepository:
    """唯一的权威分组存储；只通过 replace_scene 整体替换场景的三个分区。"""

    def __init__(self) -> None:
        self._arena: dict[str, ContinuityGroup] = {}
        self._index: dict[str, dict[ContinuityStatus, list[str]]] = {}
        self._guard = threading.RLock()

    def scene_ids(self) -> list[str]:
        with self._guard:
            return [scene_id for scene_id, index in self._index.items() if any(index.values())]

    def partitions(self, scene_id: str) -> ScenePartitions:
        with self._guard:
            index = self._index.get(scene_id)
            if not index:
                return ScenePartitions(scene_id=scene_id)
            return ScenePartitions(
                scene_id=scene_id,
                approved=tuple(self._arena[gid] for gid in index[ContinuityStatus.APPROVED]),
                proposed=tuple(self._arena[gid] for gid in index[ContinuityStatus.PROPOSED]),
                declined=tuple(self._arena[gid] for gid in index[ContinuityStatus.DECLINED]),
            )

    def replace_scene(self, scene_id: str, partitions: ScenePartitions) -> None:
        if partitions.scene_id != scene_id:
            raise ValueError(
                f"partitions scene mismatch: expected={scene_id} actual={partitions.scene_id}"
            )
        with self._guard:
            previous = self._index.pop(scene_id, None) or {}
            for ids in previous.values():
                for group_id in ids:
                    self._arena.pop(group_id, None)
            if partitions.is_empty():
                return
            index: dict[ContinuityStatus, list[str]] = {}
            for status in PARTITION_ORDER:
                index[status] = []
                for group in partitions.of(status):
                    self._arena[group.id] = group
                    index[status].append(group.id)
            self._index[scene_id] = index

    def clear(self) -> None:
        with self._guard:
            self._arena.clear()
            self._index.clear()
