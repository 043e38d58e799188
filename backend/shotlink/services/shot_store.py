"""镜头序列存储接口（由外部维护，引擎只读）。"""

from __future__ import annotations

import threading
from typing import Iterable, Protocol

from shotlink.models import Shot


class ShotStore(Protocol):
    def get_shots(self, scene_id: str) -> list[Shot]:
        """按 position 排序返回场景内镜头。"""
        ...


class InMemoryShotStore:
    """进程内镜头存储，用于脚本与测试。"""

    def __init__(self, shots: Iterable[Shot] = ()):
        self._shots: dict[str, list[Shot]] = {}
        self._guard = threading.Lock()
        for shot in shots:
            self._shots.setdefault(shot.scene_id, []).append(shot)

    def get_shots(self, scene_id: str) -> list[Shot]:
        with self._guard:
            return sorted(self._shots.get(scene_id, []), key=lambda shot: shot.position)

    def replace_scene_shots(self, scene_id: str, shot_ids: list[str]) -> list[Shot]:
        shots = [
            Shot(id=shot_id, scene_id=scene_id, position=position)
            for position, shot_id in enumerate(shot_ids)
        ]
        with self._guard:
            self._shots[scene_id] = shots
        return list(shots)

    def delete_shot(self, scene_id: str, shot_id: str) -> None:
        with self._guard:
            shots = self._shots.get(scene_id, [])
            remaining = [shot for shot in shots if shot.id != shot_id]
            if len(remaining) == len(shots):
                raise KeyError(f"Shot not found: scene_id={scene_id} shot_id={shot_id}")
            self._shots[scene_id] = [
                shot.model_copy(update={"position": position})
                for position, shot in enumerate(remaining)
            ]
