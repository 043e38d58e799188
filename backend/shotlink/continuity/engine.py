"""连续性编辑引擎：分组仓库的唯一写入方。

每个操作都是针对单个场景三个分区的一次读-改-写事务：
在场景锁内读取快照 -> 生成新快照 -> 校验不变量 -> 整体替换。
任何一步抛错，仓库都保持原样；提交成功后才触发 on_commit（持久化同步）。
"""

from __future__ import annotations

import contextlib
import itertools
import logging
import threading
from datetime import datetime
from typing import Callable, Iterator, Sequence

from shotlink.continuity.derivation import derive_connections
from shotlink.continuity.errors import GroupNotFound, InvalidConnection, InvalidGroup
from shotlink.continuity.lock import LockController
from shotlink.continuity.migration import migrate_legacy_links
from shotlink.continuity.repository import (
    GroupRepository,
    ScenePartitions,
    validate_partitions,
)
from shotlink.continuity.shot_index import ShotIndex
from shotlink.models import (
    Connection,
    ContinuityGroup,
    ContinuityGroupDraft,
    ContinuityPayload,
    ContinuityStatus,
    LegacyShot,
    new_group_id,
    utc_now,
)
from shotlink.services.shot_store import ShotStore

logger = logging.getLogger(__name__)

APPROVED = ContinuityStatus.APPROVED
PROPOSED = ContinuityStatus.PROPOSED
DECLINED = ContinuityStatus.DECLINED

Mutation = Callable[[ScenePartitions, ShotIndex], ScenePartitions]


class ContinuityEngine:
    """单个视频的连续性状态；不同场景可并行，同一场景串行。"""

    def __init__(
        self,
        video_id: str,
        shot_store: ShotStore,
        *,
        repository: GroupRepository | None = None,
        on_commit: Callable[[str], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
        editor: str = "user",
    ):
        self.video_id = video_id
        self._shot_store = shot_store
        self._repository = repository or GroupRepository()
        self.locks = LockController(self._repository)
        self._on_commit = on_commit
        self._clock = clock
        self._editor = editor
        self._scene_locks: dict[str, threading.Lock] = {}
        self._scene_locks_guard = threading.Lock()

    # ------------------------------------------------------------------ reads

    def shot_index(self, scene_id: str) -> ShotIndex:
        return ShotIndex(scene_id, self._shot_store.get_shots(scene_id))

    def scene_ids(self) -> list[str]:
        return self._repository.scene_ids()

    def partitions(self, scene_id: str) -> ScenePartitions:
        return self._repository.partitions(scene_id)

    def merged_groups(self, scene_id: str) -> list[ContinuityGroup]:
        return list(self._repository.partitions(scene_id))

    def connections(self, scene_id: str) -> list[Connection]:
        partitions = self._repository.partitions(scene_id)
        return derive_connections(
            self.shot_index(scene_id),
            partitions.approved,
            partitions.proposed,
            partitions.declined,
            include_proposed=not self.locks.is_locked(scene_id),
        )

    def is_locked(self, scene_id: str) -> bool:
        return self.locks.is_locked(scene_id)

    def snapshot(self) -> ContinuityPayload:
        scene_ids = self._repository.scene_ids()
        locked_scene_ids = self.locks.locked_scene_ids()
        return ContinuityPayload(
            continuity_groups={
                scene_id: list(self._repository.partitions(scene_id)) for scene_id in scene_ids
            },
            locked=bool(scene_ids) and all(scene_id in locked_scene_ids for scene_id in scene_ids),
            locked_scene_ids=locked_scene_ids,
        )

    def load(self, payload: ContinuityPayload) -> None:
        """用持久化载荷整体替换内存状态（不触发 on_commit）。

        持有全部场景锁完成替换：进行中的事务先提交，之后的事务读到新状态。
        """
        with self._scene_locks_guard, contextlib.ExitStack() as stack:
            for scene_id in payload.continuity_groups:
                self._scene_locks.setdefault(scene_id, threading.Lock())
            for scene_id in sorted(self._scene_locks):
                stack.enter_context(self._scene_locks[scene_id])
            self._repository.clear()
            for scene_id, groups in payload.continuity_groups.items():
                self._repository.replace_scene(
                    scene_id, ScenePartitions.from_groups(scene_id, groups)
                )
            self.locks.reset(payload.locked_scene_ids)

    # ------------------------------------------------------------------ group edits

    def approve_group(self, scene_id: str, group_id: str) -> ScenePartitions:
        def mutate(current: ScenePartitions, index: ShotIndex) -> ScenePartitions:
            group = current.find(group_id)
            if group is None:
                raise GroupNotFound(scene_id, group_id)
            return self._move(current, group, APPROVED, self._clock())

        return self._transact(scene_id, mutate, action="approve_group")

    def decline_group(self, scene_id: str, group_id: str) -> ScenePartitions:
        def mutate(current: ScenePartitions, index: ShotIndex) -> ScenePartitions:
            group = current.find(group_id)
            if group is None:
                raise GroupNotFound(scene_id, group_id)
            return self._move(current, group, DECLINED, self._clock())

        return self._transact(scene_id, mutate, action="decline_group")

    def edit_group(self, scene_id: str, updated: ContinuityGroup) -> ScenePartitions:
        """只替换 shot_ids / transition_type / description；状态变化必须走 approve/decline。"""

        def mutate(current: ScenePartitions, index: ShotIndex) -> ScenePartitions:
            existing = current.find_in(updated.id, [updated.status])
            if existing is None:
                raise GroupNotFound(scene_id, updated.id)
            edited = existing.model_copy(
                update={
                    "shot_ids": list(updated.shot_ids),
                    "transition_type": updated.transition_type,
                    "description": updated.description,
                    "edited_by": updated.edited_by or self._editor,
                    "edited_at": self._clock(),
                }
            )
            return current.with_replaced(edited)

        return self._transact(scene_id, mutate, action="edit_group")

    # ------------------------------------------------------------------ connection edits

    def approve_connection(self, scene_id: str, shot_a: str, shot_b: str) -> ScenePartitions:
        def mutate(current: ScenePartitions, index: ShotIndex) -> ScenePartitions:
            self._require_adjacent(index, shot_a, shot_b)
            already_approved = bool(current.groups_with_edge(shot_a, shot_b, [APPROVED]))
            candidates = current.groups_with_edge(shot_a, shot_b, [PROPOSED, DECLINED])
            if not candidates:
                if already_approved:
                    return current
                raise GroupNotFound(scene_id, f"{shot_a}->{shot_b}")

            now = self._clock()
            numbers = itertools.count(current.next_group_number())
            result = current
            pending = list(candidates)

            if not already_approved:
                first = pending[0]
                if len(first.shot_ids) == 2:
                    result = self._move(result, first, APPROVED, now)
                    pending = pending[1:]
                else:
                    target = self._extendable_approved(result, shot_a, shot_b)
                    if target is not None:
                        result = result.with_replaced(
                            target.model_copy(update={"shot_ids": [*target.shot_ids, shot_b]})
                        )
                    else:
                        result = result.with_group(
                            self._derive(first, [shot_a, shot_b], APPROVED, now, next(numbers))
                        )

            # 该连接只能留在 approved 里：其余持有它的分组全部在此处切开
            for group in pending:
                result = result.without(group.id)
                split_at = group.shot_ids.index(shot_a) + 1
                prefix = group.shot_ids[:split_at]
                remainder = group.shot_ids[split_at:]
                if len(prefix) >= 2 and not self._has_run(result, group.status, prefix):
                    result = result.with_group(
                        self._derive(group, prefix, group.status, now, next(numbers))
                    )
                if len(remainder) >= 2 and not self._has_run(result, PROPOSED, remainder):
                    result = result.with_group(
                        self._derive(group, remainder, PROPOSED, now, next(numbers))
                    )
            return result

        return self._transact(scene_id, mutate, action="approve_connection")

    def decline_connection(self, scene_id: str, shot_a: str, shot_b: str) -> ScenePartitions:
        def mutate(current: ScenePartitions, index: ShotIndex) -> ScenePartitions:
            self._require_adjacent(index, shot_a, shot_b)
            live = current.groups_with_edge(shot_a, shot_b, [APPROVED, PROPOSED])
            if not live:
                if current.groups_with_edge(shot_a, shot_b, [DECLINED]):
                    return current
                raise GroupNotFound(scene_id, f"{shot_a}->{shot_b}")

            now = self._clock()
            numbers = itertools.count(current.next_group_number())
            result = current
            for group in live:
                if len(group.shot_ids) == 2:
                    result = self._move(result, group, DECLINED, now)
                    continue
                result = result.without(group.id)
                split_at = group.shot_ids.index(shot_a) + 1
                before = group.shot_ids[:split_at]
                after = group.shot_ids[split_at:]
                if len(before) >= 2:
                    kept = self._derive(group, before, group.status, now, next(numbers))
                    if group.status == APPROVED:
                        kept = kept.model_copy(update={"approved_at": group.approved_at})
                    result = result.with_group(kept)
                if len(after) >= 2 and not self._has_run(result, PROPOSED, after):
                    result = result.with_group(
                        self._derive(group, after, PROPOSED, now, next(numbers))
                    )
            return result

        return self._transact(scene_id, mutate, action="decline_connection")

    # ------------------------------------------------------------------ seeding & maintenance

    def migrate_legacy_links(
        self,
        scene_id: str,
        shots: Sequence[LegacyShot],
        *,
        status: ContinuityStatus = APPROVED,
    ) -> ScenePartitions:
        """用旧标记生成的 2 镜头分组整体替换目标分区。"""

        def mutate(current: ScenePartitions, index: ShotIndex) -> ScenePartitions:
            foreign = [shot.id for shot in shots if shot.scene_id != scene_id]
            if foreign:
                raise InvalidGroup(f"legacy shots belong to another scene: shot_ids={foreign}")
            remaining = current.with_partition(status, [])
            groups = migrate_legacy_links(
                scene_id,
                shots,
                status=status,
                now=self._clock(),
                first_group_number=remaining.next_group_number(),
            )
            return remaining.with_partition(status, groups)

        return self._transact(scene_id, mutate, action="migrate_legacy_links")

    def seed_proposals(
        self, scene_id: str, drafts: Sequence[ContinuityGroupDraft]
    ) -> ScenePartitions:
        """AI 拆解结果整体替换 proposed 分区。"""

        def mutate(current: ScenePartitions, index: ShotIndex) -> ScenePartitions:
            now = self._clock()
            remaining = current.with_partition(PROPOSED, [])
            numbers = itertools.count(remaining.next_group_number())
            groups: list[ContinuityGroup] = []
            for draft in drafts:
                if draft.scene_id != scene_id:
                    raise InvalidGroup(
                        f"draft belongs to another scene: group_id={draft.id} scene_id={draft.scene_id}"
                    )
                group = ContinuityGroup.from_draft(draft, created_at=now)
                if not draft.group_number:
                    group = group.model_copy(update={"group_number": next(numbers)})
                groups.append(group)
            return remaining.with_partition(PROPOSED, groups)

        return self._transact(scene_id, mutate, action="seed_proposals")

    def revalidate_scene(self, scene_id: str) -> ScenePartitions:
        """镜头被删除后：在缺失镜头处切开分组，丢弃不足 2 个镜头的片段。

        这是镜头序列变化带来的结构修复，锁定状态下同样执行。
        """

        def mutate(current: ScenePartitions, index: ShotIndex) -> ScenePartitions:
            result = current
            changed = False
            now = self._clock()
            for group in current:
                runs = list(_surviving_runs(group.shot_ids, index))
                if runs == [group.shot_ids]:
                    continue
                changed = True
                result = result.without(group.id)
                for offset, run in enumerate(runs):
                    update = {"shot_ids": run, "edited_at": now}
                    if offset:
                        update["id"] = new_group_id()
                    result = result.with_group(group.model_copy(update=update))
            return result if changed else current

        return self._transact(scene_id, mutate, action="revalidate_scene", enforce_lock=False)

    def lock(self, scene_id: str) -> None:
        with self._scene_lock(scene_id):
            self.locks.lock(scene_id)
        self._notify()

    def unlock(self, scene_id: str) -> None:
        with self._scene_lock(scene_id):
            self.locks.unlock(scene_id)
        self._notify()

    # ------------------------------------------------------------------ internals

    def _scene_lock(self, scene_id: str) -> threading.Lock:
        with self._scene_locks_guard:
            lock = self._scene_locks.get(scene_id)
            if lock is None:
                lock = threading.Lock()
                self._scene_locks[scene_id] = lock
            return lock

    def _transact(
        self,
        scene_id: str,
        mutate: Mutation,
        *,
        action: str,
        enforce_lock: bool = True,
    ) -> ScenePartitions:
        with self._scene_lock(scene_id):
            if enforce_lock:
                self.locks.require_unlocked(scene_id)
            current = self._repository.partitions(scene_id)
            index = self.shot_index(scene_id)
            updated = mutate(current, index)
            if updated is current:
                logger.debug("%s is a no-op: video_id=%s scene_id=%s", action, self.video_id, scene_id)
                return current
            validate_partitions(updated, index)
            self._repository.replace_scene(scene_id, updated)
        logger.info(
            "%s committed: video_id=%s scene_id=%s approved=%d proposed=%d declined=%d",
            action,
            self.video_id,
            scene_id,
            len(updated.approved),
            len(updated.proposed),
            len(updated.declined),
        )
        self._notify()
        return updated

    def _notify(self) -> None:
        if self._on_commit is not None:
            self._on_commit(self.video_id)

    def _require_adjacent(self, index: ShotIndex, shot_a: str, shot_b: str) -> None:
        if not index.are_adjacent(shot_a, shot_b):
            raise InvalidConnection(index.scene_id, shot_a, shot_b)

    @staticmethod
    def _move(
        current: ScenePartitions,
        group: ContinuityGroup,
        status: ContinuityStatus,
        now: datetime,
    ) -> ScenePartitions:
        if group.status == status:
            return current
        moved = group.model_copy(
            update={
                "status": status,
                "approved_at": now if status == APPROVED else None,
            }
        )
        return current.with_replaced(moved)

    @staticmethod
    def _derive(
        source: ContinuityGroup,
        shot_ids: list[str],
        status: ContinuityStatus,
        now: datetime,
        group_number: int,
    ) -> ContinuityGroup:
        return source.model_copy(
            update={
                "id": new_group_id(),
                "group_number": group_number,
                "shot_ids": list(shot_ids),
                "status": status,
                "approved_at": now if status == APPROVED else None,
                "created_at": now,
            }
        )

    @staticmethod
    def _extendable_approved(
        partitions: ScenePartitions, shot_a: str, shot_b: str
    ) -> ContinuityGroup | None:
        # 第一个以 shot_a 结尾的 approved 链
        for group in partitions.approved:
            if group.shot_ids[-1] == shot_a and shot_b not in group.shot_ids:
                return group
        return None

    @staticmethod
    def _has_run(
        partitions: ScenePartitions, status: ContinuityStatus, shot_ids: list[str]
    ) -> bool:
        return any(group.shot_ids == shot_ids for group in partitions.of(status))


def _surviving_runs(shot_ids: Sequence[str], index: ShotIndex) -> Iterator[list[str]]:
    run: list[str] = []
    for shot_id in shot_ids:
        if shot_id not in index:
            if len(run) >= 2:
                yield run
            run = []
            continue
        if run and not index.are_adjacent(run[-1], shot_id):
            if len(run) >= 2:
                yield run
            run = []
        run.append(shot_id)
    if len(run) >= 2:
        yield run
