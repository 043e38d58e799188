"""AI 拆解接口：为场景产出初始（未批准）的连续性分组草稿。"""

from __future__ import annotations

from typing import List, Protocol, Sequence

from shotlink.models import ContinuityGroupDraft, Shot

DEFAULT_TRANSITION_TYPE = "flow"


class BreakdownGenerator(Protocol):
    async def generate_breakdown(
        self, scene_id: str, shots: Sequence[Shot]
    ) -> List[ContinuityGroupDraft]:
        ...


class LocalBreakdownGenerator:
    """无外部依赖的本地拆解：整场景作为一条 flow 草稿，供脚本级闭环与测试。"""

    def __init__(self, transition_type: str = DEFAULT_TRANSITION_TYPE):
        self.transition_type = transition_type

    async def generate_breakdown(
        self, scene_id: str, shots: Sequence[Shot]
    ) -> List[ContinuityGroupDraft]:
        ordered = sorted(
            (shot for shot in shots if shot.scene_id == scene_id),
            key=lambda shot: shot.position,
        )
        if len(ordered) < 2:
            return []
        return [
            ContinuityGroupDraft(
                scene_id=scene_id,
                group_number=1,
                shot_ids=[shot.id for shot in ordered],
                transition_type=self.transition_type,
                description=f"Continuity group with {len(ordered)} shots",
            )
        ]
