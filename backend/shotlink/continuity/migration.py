"""旧数据迁移：状态字段补全与 isLinkedToPrevious 标记转分组。"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Sequence

from shotlink.models import ContinuityGroup, ContinuityStatus, LegacyShot, new_group_id

DEFAULT_GROUP_STATUS = ContinuityStatus.APPROVED
LEGACY_TRANSITION_TYPE = "flow"


def normalize_status(raw: Mapping[str, Any]) -> dict[str, Any]:
    """加载时唯一一次的状态迁移：缺失/空状态视为 approved（早于 status 字段的数据）。"""
    data = dict(raw)
    status = data.get("status")
    if status is None or (isinstance(status, str) and not status.strip()):
        data["status"] = DEFAULT_GROUP_STATUS.value
    elif isinstance(status, str):
        data["status"] = ContinuityStatus(status.strip().lower()).value
    return data


def legacy_link_pairs(shots: Sequence[LegacyShot]) -> list[tuple[str, str]]:
    """按 position 遍历，每个 linked 镜头与其前一个镜头组成一对；首个镜头的标记忽略。"""
    ordered = sorted(shots, key=lambda shot: shot.position)
    pairs: list[tuple[str, str]] = []
    for previous, current in zip(ordered, ordered[1:]):
        if current.is_linked_to_previous:
            pairs.append((previous.id, current.id))
    return pairs


def migrate_legacy_links(
    scene_id: str,
    shots: Sequence[LegacyShot],
    *,
    status: ContinuityStatus,
    now: datetime,
    first_group_number: int = 1,
) -> list[ContinuityGroup]:
    """每个相邻 linked 对生成一个 2 镜头分组，而不是一条长链。"""
    if status == ContinuityStatus.DECLINED:
        raise ValueError("legacy links can only migrate to approved or proposed")
    groups: list[ContinuityGroup] = []
    for offset, (shot_a, shot_b) in enumerate(legacy_link_pairs(shots)):
        groups.append(
            ContinuityGroup(
                id=new_group_id(),
                scene_id=scene_id,
                group_number=first_group_number + offset,
                shot_ids=[shot_a, shot_b],
                status=status,
                transition_type=LEGACY_TRANSITION_TYPE,
                approved_at=now if status == ContinuityStatus.APPROVED else None,
                created_at=now,
            )
        )
    return groups
