"""持久化载荷的序列化：日期统一走 ISO-8601 字符串。"""

from __future__ import annotations

from typing import Any, Mapping

from shotlink.continuity.migration import normalize_status
from shotlink.models import ContinuityGroup, ContinuityPayload


def dump_payload(payload: ContinuityPayload) -> dict[str, Any]:
    return payload.model_dump(mode="json", by_alias=True)


def load_payload(raw: Mapping[str, Any]) -> ContinuityPayload:
    """解析 PATCH/存储中的原始载荷；分组状态在这里统一迁移一次。"""
    groups_raw = raw.get("continuityGroups", raw.get("continuity_groups")) or {}
    if not isinstance(groups_raw, Mapping):
        raise ValueError("continuityGroups must be an object keyed by scene id")
    continuity_groups: dict[str, list[ContinuityGroup]] = {}
    for scene_id, groups in groups_raw.items():
        if not isinstance(groups, list):
            raise ValueError(f"continuityGroups[{scene_id}] must be a list")
        continuity_groups[scene_id] = [
            ContinuityGroup.model_validate(normalize_status(group)) for group in groups
        ]
    locked_scene_ids = raw.get("lockedSceneIds", raw.get("locked_scene_ids"))
    locked = bool(raw.get("locked", False))
    if locked_scene_ids is None:
        locked_scene_ids = list(continuity_groups) if locked else []
    return ContinuityPayload(
        continuity_groups=continuity_groups,
        locked=locked,
        locked_scene_ids=list(locked_scene_ids),
    )
