"""FastAPI 入口，暴露连续性分组的编辑、查询与持久化接口。"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Callable, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Path
from pydantic import Field

from shotlink.config import (
    kuzu_db_path,
    log_level,
    sync_debounce_seconds,
    sync_max_retry_seconds,
    sync_retry_seconds,
    sync_timeout_seconds,
    sync_url,
)
from shotlink.continuity.engine import ContinuityEngine
from shotlink.continuity.errors import (
    ContinuityError,
    DuplicateApproval,
    GroupNotFound,
    InvalidConnection,
    InvalidGroup,
    LockedError,
    NoApprovedGroups,
)
from shotlink.continuity.serialization import dump_payload, load_payload
from shotlink.models import (
    Connection,
    ContinuityGroup,
    ContinuityGroupDraft,
    ContinuityStatus,
    LegacyShot,
    Shot,
    WireModel,
)
from shotlink.services.breakdown import BreakdownGenerator, LocalBreakdownGenerator
from shotlink.services.continuity_service import ContinuityService
from shotlink.services.sync import GraphContinuitySink, HttpContinuitySink
from shotlink.storage.graph import GraphStorage

logger = logging.getLogger(__name__)

app = FastAPI(title="Shotlink Continuity API", version="0.1.0")


@app.on_event("startup")
async def _validate_config() -> None:
    logging.basicConfig(level=log_level())
    sync_debounce_seconds()
    sync_retry_seconds()
    sync_max_retry_seconds()
    sync_timeout_seconds()


@app.on_event("shutdown")
async def _flush_pending_sync() -> None:
    if get_continuity_service.cache_info().currsize:
        get_continuity_service().close()


class ShotOrderPayload(WireModel):
    shot_ids: List[str] = Field(..., min_length=1)


class ConnectionPayload(WireModel):
    shot_a: str = Field(..., min_length=1)
    shot_b: str = Field(..., min_length=1)


class ProposalPayload(WireModel):
    drafts: Optional[List[ContinuityGroupDraft]] = None


class MigratePayload(WireModel):
    shots: List[LegacyShot] = Field(..., min_length=1)
    status: ContinuityStatus = ContinuityStatus.APPROVED


class SceneContinuityView(WireModel):
    video_id: str
    scene_id: str
    locked: bool
    applied: bool = True
    approved: List[ContinuityGroup] = Field(default_factory=list)
    proposed: List[ContinuityGroup] = Field(default_factory=list)
    declined: List[ContinuityGroup] = Field(default_factory=list)
    merged: List[ContinuityGroup] = Field(default_factory=list)
    connections: List[Connection] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class SceneShotsView(WireModel):
    scene_id: str
    shots: List[Shot] = Field(default_factory=list)


class FlushResult(WireModel):
    video_id: str
    ok: bool
    pending: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


@lru_cache(maxsize=1)
def get_graph_storage() -> GraphStorage:
    """GraphStorage 单例，避免重复建立连接。"""
    return GraphStorage(db_path=kuzu_db_path())


@lru_cache(maxsize=1)
def get_continuity_service() -> ContinuityService:
    """按配置选择落盘目标：配置了 CONTINUITY_SYNC_URL 走 HTTP，否则写本地 Kùzu。"""
    storage = get_graph_storage()
    url = sync_url()
    sink = (
        HttpContinuitySink(url, timeout=sync_timeout_seconds())
        if url
        else GraphContinuitySink(storage)
    )
    return ContinuityService(
        storage,
        sink=sink,
        debounce_seconds=sync_debounce_seconds(),
        retry_seconds=sync_retry_seconds(),
        max_retry_seconds=sync_max_retry_seconds(),
    )


def get_breakdown_generator() -> BreakdownGenerator:
    """默认使用本地拆解，可在测试中 override。"""
    return LocalBreakdownGenerator()


def _scene_view(
    service: ContinuityService,
    video_id: str,
    scene_id: str,
    *,
    applied: bool = True,
) -> SceneContinuityView:
    engine = service.engine(video_id)
    partitions = engine.partitions(scene_id)
    return SceneContinuityView(
        video_id=video_id,
        scene_id=scene_id,
        locked=engine.is_locked(scene_id),
        applied=applied,
        approved=list(partitions.approved),
        proposed=list(partitions.proposed),
        declined=list(partitions.declined),
        merged=engine.merged_groups(scene_id),
        connections=engine.connections(scene_id),
        warnings=service.syncer.warnings(video_id),
    )


def _http_error(exc: ContinuityError) -> HTTPException:
    if isinstance(exc, GroupNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, LockedError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (InvalidGroup, DuplicateApproval, NoApprovedGroups)):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _apply_edit(
    service: ContinuityService,
    video_id: str,
    scene_id: str,
    edit: Callable[[ContinuityEngine], Any],
) -> SceneContinuityView:
    engine = service.engine(video_id)
    try:
        edit(engine)
    except InvalidConnection as exc:
        logger.warning("connection rejected: video_id=%s %s", video_id, exc)
        return _scene_view(service, video_id, scene_id, applied=False)
    except ContinuityError as exc:
        raise _http_error(exc) from exc
    return _scene_view(service, video_id, scene_id)


@app.put(
    "/api/v1/videos/{video_id}/scenes/{scene_id}/shots",
    response_model=SceneShotsView,
)
async def replace_scene_shots_endpoint(
    payload: ShotOrderPayload,
    video_id: str = Path(..., min_length=1),
    scene_id: str = Path(..., min_length=1),
    service: ContinuityService = Depends(get_continuity_service),
) -> SceneShotsView:
    try:
        shots = service.storage.replace_scene_shots(
            scene_id=scene_id, shot_ids=payload.shot_ids
        )
        service.engine(video_id).revalidate_scene(scene_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return SceneShotsView(scene_id=scene_id, shots=shots)


@app.delete(
    "/api/v1/videos/{video_id}/scenes/{scene_id}/shots/{shot_id}",
    response_model=SceneContinuityView,
)
async def delete_shot_endpoint(
    video_id: str = Path(..., min_length=1),
    scene_id: str = Path(..., min_length=1),
    shot_id: str = Path(..., min_length=1),
    service: ContinuityService = Depends(get_continuity_service),
) -> SceneContinuityView:
    try:
        service.storage.delete_shot(scene_id=scene_id, shot_id=shot_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _apply_edit(
        service, video_id, scene_id, lambda engine: engine.revalidate_scene(scene_id)
    )


@app.get(
    "/api/v1/videos/{video_id}/scenes/{scene_id}/continuity",
    response_model=SceneContinuityView,
)
async def get_scene_continuity_endpoint(
    video_id: str = Path(..., min_length=1),
    scene_id: str = Path(..., min_length=1),
    service: ContinuityService = Depends(get_continuity_service),
) -> SceneContinuityView:
    return _scene_view(service, video_id, scene_id)


@app.post(
    "/api/v1/videos/{video_id}/scenes/{scene_id}/continuity/proposals",
    response_model=SceneContinuityView,
)
async def seed_proposals_endpoint(
    video_id: str = Path(..., min_length=1),
    scene_id: str = Path(..., min_length=1),
    payload: Optional[ProposalPayload] = None,
    service: ContinuityService = Depends(get_continuity_service),
    generator: BreakdownGenerator = Depends(get_breakdown_generator),
) -> SceneContinuityView:
    drafts = payload.drafts if payload is not None else None
    if drafts is None:
        drafts = await generator.generate_breakdown(
            scene_id, service.shot_store.get_shots(scene_id)
        )
    return _apply_edit(
        service, video_id, scene_id, lambda engine: engine.seed_proposals(scene_id, drafts)
    )


@app.post(
    "/api/v1/videos/{video_id}/scenes/{scene_id}/continuity/groups/{group_id}/approve",
    response_model=SceneContinuityView,
)
async def approve_group_endpoint(
    video_id: str = Path(..., min_length=1),
    scene_id: str = Path(..., min_length=1),
    group_id: str = Path(..., min_length=1),
    service: ContinuityService = Depends(get_continuity_service),
) -> SceneContinuityView:
    return _apply_edit(
        service, video_id, scene_id, lambda engine: engine.approve_group(scene_id, group_id)
    )


@app.post(
    "/api/v1/videos/{video_id}/scenes/{scene_id}/continuity/groups/{group_id}/decline",
    response_model=SceneContinuityView,
)
async def decline_group_endpoint(
    video_id: str = Path(..., min_length=1),
    scene_id: str = Path(..., min_length=1),
    group_id: str = Path(..., min_length=1),
    service: ContinuityService = Depends(get_continuity_service),
) -> SceneContinuityView:
    return _apply_edit(
        service, video_id, scene_id, lambda engine: engine.decline_group(scene_id, group_id)
    )


@app.put(
    "/api/v1/videos/{video_id}/scenes/{scene_id}/continuity/groups/{group_id}",
    response_model=SceneContinuityView,
)
async def edit_group_endpoint(
    payload: ContinuityGroup,
    video_id: str = Path(..., min_length=1),
    scene_id: str = Path(..., min_length=1),
    group_id: str = Path(..., min_length=1),
    service: ContinuityService = Depends(get_continuity_service),
) -> SceneContinuityView:
    if payload.id != group_id:
        raise HTTPException(status_code=400, detail="group id in body does not match path")
    if payload.scene_id != scene_id:
        raise HTTPException(status_code=400, detail="scene id in body does not match path")
    return _apply_edit(
        service, video_id, scene_id, lambda engine: engine.edit_group(scene_id, payload)
    )


@app.post(
    "/api/v1/videos/{video_id}/scenes/{scene_id}/continuity/connections/approve",
    response_model=SceneContinuityView,
)
async def approve_connection_endpoint(
    payload: ConnectionPayload,
    video_id: str = Path(..., min_length=1),
    scene_id: str = Path(..., min_length=1),
    service: ContinuityService = Depends(get_continuity_service),
) -> SceneContinuityView:
    return _apply_edit(
        service,
        video_id,
        scene_id,
        lambda engine: engine.approve_connection(scene_id, payload.shot_a, payload.shot_b),
    )


@app.post(
    "/api/v1/videos/{video_id}/scenes/{scene_id}/continuity/connections/decline",
    response_model=SceneContinuityView,
)
async def decline_connection_endpoint(
    payload: ConnectionPayload,
    video_id: str = Path(..., min_length=1),
    scene_id: str = Path(..., min_length=1),
    service: ContinuityService = Depends(get_continuity_service),
) -> SceneContinuityView:
    return _apply_edit(
        service,
        video_id,
        scene_id,
        lambda engine: engine.decline_connection(scene_id, payload.shot_a, payload.shot_b),
    )


@app.post(
    "/api/v1/videos/{video_id}/scenes/{scene_id}/continuity/migrate",
    response_model=SceneContinuityView,
)
async def migrate_legacy_links_endpoint(
    payload: MigratePayload,
    video_id: str = Path(..., min_length=1),
    scene_id: str = Path(..., min_length=1),
    service: ContinuityService = Depends(get_continuity_service),
) -> SceneContinuityView:
    return _apply_edit(
        service,
        video_id,
        scene_id,
        lambda engine: engine.migrate_legacy_links(
            scene_id, payload.shots, status=payload.status
        ),
    )


@app.post(
    "/api/v1/videos/{video_id}/scenes/{scene_id}/continuity/lock",
    response_model=SceneContinuityView,
)
async def lock_scene_endpoint(
    video_id: str = Path(..., min_length=1),
    scene_id: str = Path(..., min_length=1),
    service: ContinuityService = Depends(get_continuity_service),
) -> SceneContinuityView:
    return _apply_edit(service, video_id, scene_id, lambda engine: engine.lock(scene_id))


@app.post(
    "/api/v1/videos/{video_id}/scenes/{scene_id}/continuity/unlock",
    response_model=SceneContinuityView,
)
async def unlock_scene_endpoint(
    video_id: str = Path(..., min_length=1),
    scene_id: str = Path(..., min_length=1),
    service: ContinuityService = Depends(get_continuity_service),
) -> SceneContinuityView:
    return _apply_edit(service, video_id, scene_id, lambda engine: engine.unlock(scene_id))


@app.post("/api/v1/videos/{video_id}/continuity/flush", response_model=FlushResult)
async def flush_continuity_endpoint(
    video_id: str = Path(..., min_length=1),
    service: ContinuityService = Depends(get_continuity_service),
) -> FlushResult:
    service.engine(video_id)
    ok = service.syncer.flush(video_id)
    return FlushResult(
        video_id=video_id,
        ok=ok,
        pending=service.syncer.pending(),
        warnings=service.syncer.warnings(video_id),
    )


@app.get("/api/v1/scenes/{video_id}/continuity")
async def get_continuity_payload_endpoint(
    video_id: str = Path(..., min_length=1),
    service: ContinuityService = Depends(get_continuity_service),
) -> dict[str, Any]:
    raw = service.stored_payload(video_id)
    if raw is None:
        raise HTTPException(status_code=404, detail=f"Continuity not found: video_id={video_id}")
    return dump_payload(load_payload(raw))


@app.patch("/api/v1/scenes/{video_id}/continuity")
async def patch_continuity_endpoint(
    video_id: str = Path(..., min_length=1),
    payload: dict[str, Any] = Body(...),
    service: ContinuityService = Depends(get_continuity_service),
) -> dict[str, Any]:
    try:
        parsed = load_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    service.overwrite(video_id, parsed)
    return {
        "ok": True,
        "videoId": video_id,
        "scenes": len(parsed.continuity_groups),
        "locked": parsed.locked,
    }
