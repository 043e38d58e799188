"""持久化同步：内存事务提交后按视频去抖，最终一定投递最新状态。

- 快照在定时器触发时才生成，因此连续编辑只会落盘最后一次（last-write-wins）。
- 落盘失败只记录告警并按指数退避重试，不回滚内存状态。
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

import httpx

from shotlink.continuity.errors import PersistenceError
from shotlink.continuity.serialization import dump_payload
from shotlink.models import ContinuityPayload
from shotlink.storage.graph import GraphStorage

logger = logging.getLogger(__name__)


class ContinuitySink(Protocol):
    def save(self, video_id: str, payload: ContinuityPayload) -> None:
        ...


class GraphContinuitySink:
    """写入本地 Kùzu。"""

    def __init__(self, storage: GraphStorage):
        self._storage = storage

    def save(self, video_id: str, payload: ContinuityPayload) -> None:
        try:
            self._storage.save_continuity(video_id=video_id, payload=payload)
        except RuntimeError as exc:
            raise PersistenceError(f"graph save failed: video_id={video_id}: {exc}") from exc


class HttpContinuitySink:
    """PATCH /scenes/{video_id}/continuity，整体覆盖语义。"""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ):
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def save(self, video_id: str, payload: ContinuityPayload) -> None:
        try:
            response = self._client.patch(
                f"/scenes/{video_id}/continuity", json=dump_payload(payload)
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PersistenceError(f"http save failed: video_id={video_id}: {exc}") from exc

    def close(self) -> None:
        self._client.close()


class ContinuitySyncer:
    def __init__(
        self,
        sink: ContinuitySink,
        snapshot: Callable[[str], ContinuityPayload],
        *,
        debounce_seconds: float = 0.5,
        retry_seconds: float = 2.0,
        max_retry_seconds: float = 30.0,
    ):
        self._sink = sink
        self._snapshot = snapshot
        self._debounce = debounce_seconds
        self._retry = retry_seconds
        self._max_retry = max_retry_seconds
        self._timers: dict[str, threading.Timer] = {}
        self._attempts: dict[str, int] = {}
        self._last_errors: dict[str, str] = {}
        self._guard = threading.Lock()
        self._closed = False

    def schedule(self, video_id: str) -> None:
        """合并短时间内的多次编辑，只启动一个定时器。"""
        self._arm(video_id, self._debounce)

    def _arm(self, video_id: str, delay: float) -> None:
        with self._guard:
            if self._closed:
                return
            previous = self._timers.pop(video_id, None)
            if previous is not None:
                previous.cancel()
            timer = threading.Timer(delay, self._fire, args=(video_id,))
            timer.daemon = True
            self._timers[video_id] = timer
            timer.start()
        logger.debug("continuity sync scheduled: video_id=%s delay=%.3fs", video_id, delay)

    def _fire(self, video_id: str) -> None:
        with self._guard:
            self._timers.pop(video_id, None)
        if not self._deliver(video_id):
            attempts = self._attempts.get(video_id, 1)
            delay = min(self._retry * (2 ** (attempts - 1)), self._max_retry)
            logger.warning(
                "continuity sync retry scheduled: video_id=%s attempt=%d delay=%.1fs",
                video_id,
                attempts,
                delay,
            )
            self._arm(video_id, delay)

    def _deliver(self, video_id: str) -> bool:
        payload = self._snapshot(video_id)
        try:
            self._sink.save(video_id, payload)
        except PersistenceError as exc:
            with self._guard:
                self._attempts[video_id] = self._attempts.get(video_id, 0) + 1
                self._last_errors[video_id] = str(exc)
            logger.warning("continuity sync failed: video_id=%s error=%s", video_id, exc)
            return False
        with self._guard:
            self._attempts.pop(video_id, None)
            self._last_errors.pop(video_id, None)
        logger.info("continuity synced: video_id=%s", video_id)
        return True

    def pending(self) -> list[str]:
        with self._guard:
            return sorted(self._timers)

    def warnings(self, video_id: str) -> list[str]:
        with self._guard:
            error = self._last_errors.get(video_id)
        return [f"continuity not yet persisted: {error}"] if error else []

    def flush(self, video_id: str | None = None) -> bool:
        """立即同步待处理的视频；失败的保留重试定时器。返回是否全部成功。"""
        with self._guard:
            targets = [video_id] if video_id is not None else list(self._timers)
            for target in targets:
                timer = self._timers.pop(target, None)
                if timer is not None:
                    timer.cancel()
        ok = True
        for target in targets:
            if not self._deliver(target):
                ok = False
                self._arm(target, self._retry)
        return ok

    def close(self) -> None:
        self.flush()
        with self._guard:
            self._closed = True
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
