"""连续性引擎的错误类型；引擎抛错时内存状态保持不变。"""

from __future__ import annotations


class ContinuityError(Exception):
    """所有连续性引擎错误的基类。"""


class GroupNotFound(ContinuityError, LookupError):
    def __init__(self, scene_id: str, target: str):
        super().__init__(f"Continuity group not found: scene_id={scene_id} target={target}")
        self.scene_id = scene_id
        self.target = target


class InvalidConnection(ContinuityError, ValueError):
    def __init__(self, scene_id: str, shot_a: str, shot_b: str):
        super().__init__(
            f"Shots are not adjacent in scene: scene_id={scene_id} shot_a={shot_a} shot_b={shot_b}"
        )
        self.scene_id = scene_id
        self.shot_a = shot_a
        self.shot_b = shot_b


class InvalidGroup(ContinuityError, ValueError):
    pass


class DuplicateApproval(ContinuityError, ValueError):
    pass


class LockedError(ContinuityError):
    def __init__(self, scene_id: str):
        super().__init__(f"Continuity is locked: scene_id={scene_id}")
        self.scene_id = scene_id


class NoApprovedGroups(ContinuityError, ValueError):
    def __init__(self, scene_id: str):
        super().__init__(
            f"Cannot lock continuity without approved groups: scene_id={scene_id}"
        )
        self.scene_id = scene_id


class PersistenceError(ContinuityError):
    pass
