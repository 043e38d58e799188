import json
import time

import httpx
import pytest

from shotlink.continuity.errors import PersistenceError
from shotlink.models import ContinuityGroup, ContinuityPayload, ContinuityStatus
from shotlink.services.sync import ContinuitySyncer, HttpContinuitySink


class RecordingSink:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.saved: list[tuple[str, ContinuityPayload]] = []

    def save(self, video_id: str, payload: ContinuityPayload) -> None:
        if self.failures:
            self.failures -= 1
            raise PersistenceError("backend unavailable")
        self.saved.append((video_id, payload))


def _payload(version: int) -> ContinuityPayload:
    group = ContinuityGroup(
        id=f"g{version}",
        scene_id="scene-1",
        shot_ids=["S1", "S2"],
        status=ContinuityStatus.APPROVED,
    )
    return ContinuityPayload(continuity_groups={"scene-1": [group]})


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_syncer_debounces_and_sends_latest_snapshot():
    sink = RecordingSink()
    state = {"version": 1}
    syncer = ContinuitySyncer(
        sink, lambda video_id: _payload(state["version"]), debounce_seconds=0.05
    )
    try:
        for version in (1, 2, 3):
            state["version"] = version
            syncer.schedule("video-1")

        assert _wait_for(lambda: len(sink.saved) == 1)
        time.sleep(0.1)
        assert len(sink.saved) == 1
        video_id, payload = sink.saved[0]
        assert video_id == "video-1"
        assert payload.continuity_groups["scene-1"][0].id == "g3"
    finally:
        syncer.close()


def test_syncer_keeps_warning_until_retry_succeeds():
    sink = RecordingSink(failures=1)
    syncer = ContinuitySyncer(
        sink,
        lambda video_id: _payload(1),
        debounce_seconds=60,
        retry_seconds=60,
    )
    try:
        syncer.schedule("video-1")
        assert syncer.pending() == ["video-1"]

        assert syncer.flush("video-1") is False
        assert syncer.warnings("video-1") == [
            "continuity not yet persisted: backend unavailable"
        ]
        assert syncer.pending() == ["video-1"]

        assert syncer.flush("video-1") is True
        assert syncer.warnings("video-1") == []
        assert syncer.pending() == []
        assert len(sink.saved) == 1
    finally:
        syncer.close()


def test_syncer_retries_with_backoff_on_its_own():
    sink = RecordingSink(failures=2)
    syncer = ContinuitySyncer(
        sink,
        lambda video_id: _payload(1),
        debounce_seconds=0.01,
        retry_seconds=0.02,
        max_retry_seconds=0.05,
    )
    try:
        syncer.schedule("video-1")
        assert _wait_for(lambda: len(sink.saved) == 1)
        assert syncer.warnings("video-1") == []
    finally:
        syncer.close()


def test_close_flushes_pending_work():
    sink = RecordingSink()
    syncer = ContinuitySyncer(sink, lambda video_id: _payload(1), debounce_seconds=60)
    syncer.schedule("video-1")
    syncer.schedule("video-2")

    syncer.close()

    assert sorted(video_id for video_id, _ in sink.saved) == ["video-1", "video-2"]
    syncer.schedule("video-3")
    assert syncer.pending() == []


def test_http_sink_patches_full_payload():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    client = httpx.Client(base_url="http://sync.test", transport=httpx.MockTransport(handler))
    sink = HttpContinuitySink("http://sync.test", client=client)

    sink.save("video-1", _payload(1))
    sink.close()

    assert len(requests) == 1
    assert requests[0].method == "PATCH"
    assert requests[0].url.path == "/scenes/video-1/continuity"
    body = json.loads(requests[0].content)
    assert body["continuityGroups"]["scene-1"][0]["id"] == "g1"
    assert body["locked"] is False


def test_http_sink_wraps_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "down"})

    client = httpx.Client(base_url="http://sync.test", transport=httpx.MockTransport(handler))
    sink = HttpContinuitySink("http://sync.test", client=client)

    with pytest.raises(PersistenceError):
        sink.save("video-1", _payload(1))
