"""场景级锁定：至少一个 approved 分组后才能锁定，锁定后拒绝所有编辑。"""

from __future__ import annotations

import logging
import threading
from typing import Iterable

from shotlink.continuity.errors import LockedError, NoApprovedGroups
from shotlink.continuity.repository import GroupRepository

logger = logging.getLogger(__name__)


class LockController:
    def __init__(self, repository: GroupRepository, locked_scene_ids: Iterable[str] = ()):
        self._repository = repository
        self._locked: set[str] = set(locked_scene_ids)
        self._guard = threading.Lock()

    def is_locked(self, scene_id: str) -> bool:
        with self._guard:
            return scene_id in self._locked

    def locked_scene_ids(self) -> list[str]:
        with self._guard:
            return sorted(self._locked)

    def require_unlocked(self, scene_id: str) -> None:
        if self.is_locked(scene_id):
            raise LockedError(scene_id)

    def lock(self, scene_id: str) -> None:
        if not self._repository.partitions(scene_id).approved:
            raise NoApprovedGroups(scene_id)
        with self._guard:
            self._locked.add(scene_id)
        logger.info("continuity locked: scene_id=%s", scene_id)

    def unlock(self, scene_id: str) -> None:
        with self._guard:
            self._locked.discard(scene_id)
        logger.info("continuity unlocked: scene_id=%s", scene_id)

    def reset(self, locked_scene_ids: Iterable[str]) -> None:
        with self._guard:
            self._locked = set(locked_scene_ids)
