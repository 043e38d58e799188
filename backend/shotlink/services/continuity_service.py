"""按视频管理连续性引擎：懒加载存储中的状态，提交后交给同步器落盘。"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable

from shotlink.continuity.engine import ContinuityEngine
from shotlink.continuity.serialization import load_payload
from shotlink.models import ContinuityPayload, utc_now
from shotlink.services.shot_store import ShotStore
from shotlink.services.sync import (
    ContinuitySink,
    ContinuitySyncer,
    GraphContinuitySink,
    HttpContinuitySink,
)
from shotlink.storage.graph import GraphStorage

logger = logging.getLogger(__name__)


class ContinuityService:
    def __init__(
        self,
        storage: GraphStorage,
        *,
        shot_store: ShotStore | None = None,
        sink: ContinuitySink | None = None,
        debounce_seconds: float = 0.5,
        retry_seconds: float = 2.0,
        max_retry_seconds: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.shot_store: ShotStore = shot_store or storage
        self._clock = clock
        self._engines: dict[str, ContinuityEngine] = {}
        self._guard = threading.Lock()
        self._sink = sink or GraphContinuitySink(storage)
        self.syncer = ContinuitySyncer(
            self._sink,
            self._snapshot,
            debounce_seconds=debounce_seconds,
            retry_seconds=retry_seconds,
            max_retry_seconds=max_retry_seconds,
        )

    def engine(self, video_id: str) -> ContinuityEngine:
        with self._guard:
            engine = self._engines.get(video_id)
            if engine is not None:
                return engine
            engine = ContinuityEngine(
                video_id,
                self.shot_store,
                on_commit=self.syncer.schedule,
                clock=self._clock,
            )
            raw = self.storage.load_continuity(video_id=video_id)
            if raw is not None:
                engine.load(load_payload(raw))
                logger.info("continuity loaded from storage: video_id=%s", video_id)
            self._engines[video_id] = engine
            return engine

    def _snapshot(self, video_id: str) -> ContinuityPayload:
        return self.engine(video_id).snapshot()

    def stored_payload(self, video_id: str) -> dict[str, Any] | None:
        return self.storage.load_continuity(video_id=video_id)

    def overwrite(self, video_id: str, payload: ContinuityPayload) -> None:
        """持久化契约的接收端：整体覆盖存储，已加载的引擎同步替换。"""
        self.storage.save_continuity(video_id=video_id, payload=payload)
        with self._guard:
            engine = self._engines.get(video_id)
        if engine is not None:
            engine.load(payload)
        logger.info(
            "continuity overwritten: video_id=%s scenes=%d locked=%s",
            video_id,
            len(payload.continuity_groups),
            payload.locked,
        )

    def close(self) -> None:
        self.syncer.close()
        if isinstance(self._sink, HttpContinuitySink):
            self._sink.close()
