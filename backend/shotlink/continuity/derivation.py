"""连接派生：由三个分区计算每对相邻镜头的有效状态（纯函数，每次读取重算）。"""

from __future__ import annotations

import logging
from typing import Sequence

from shotlink.continuity.shot_index import ShotIndex
from shotlink.models import Connection, ContinuityGroup, ContinuityStatus

logger = logging.getLogger(__name__)


def derive_connections(
    index: ShotIndex,
    approved: Sequence[ContinuityGroup],
    proposed: Sequence[ContinuityGroup],
    declined: Sequence[ContinuityGroup] = (),
    *,
    include_proposed: bool = True,
) -> list[Connection]:
    """每个源镜头最多一条连接；approved 优先，proposed 不覆盖，declined 不产生连接。"""
    _ = declined  # declined 分组只做审计留存
    by_source: dict[str, Connection] = {}

    for group in approved:
        for shot_a, shot_b in group.edges():
            if shot_a in by_source:
                continue
            by_source[shot_a] = Connection(
                shot_a=shot_a,
                shot_b=shot_b,
                status=ContinuityStatus.APPROVED,
                group_id=group.id,
            )

    if include_proposed:
        for group in proposed:
            for shot_a, shot_b in group.edges():
                if shot_a in by_source:
                    continue
                by_source[shot_a] = Connection(
                    shot_a=shot_a,
                    shot_b=shot_b,
                    status=ContinuityStatus.PROPOSED,
                    group_id=group.id,
                )

    connections = [
        by_source[shot_id]
        for shot_id in index.shot_ids
        if shot_id in by_source and index.are_adjacent(shot_id, by_source[shot_id].shot_b)
    ]
    logger.debug(
        "derived %d connections for scene_id=%s", len(connections), index.scene_id
    )
    return connections
