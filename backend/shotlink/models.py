"""核心领域模型：镜头、连续性分组与派生连接。"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_group_id() -> str:
    return str(uuid4())


class ContinuityStatus(str, Enum):
    PROPOSED = "proposed"
    APPROVED = "approved"
    DECLINED = "declined"


class WireModel(BaseModel):
    """对外 JSON 使用 camelCase，Python 内部保持 snake_case。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Shot(WireModel):
    """场景内的镜头，position 为场景内的稳定序号。"""

    id: str = Field(..., min_length=1)
    scene_id: str = Field(..., min_length=1)
    position: int = Field(..., ge=0)


class LegacyShot(Shot):
    """旧数据：每个镜头上的 isLinkedToPrevious 布尔标记。"""

    is_linked_to_previous: bool = False


class ContinuityGroupDraft(WireModel):
    """AI 拆解产出的草稿分组，状态固定为 proposed。"""

    id: str = Field(default_factory=new_group_id)
    scene_id: str = Field(..., min_length=1)
    group_number: int = Field(default=0, ge=0)
    shot_ids: List[str] = Field(..., min_length=2)
    status: ContinuityStatus = ContinuityStatus.PROPOSED
    transition_type: Optional[str] = None
    description: Optional[str] = None

    @field_validator("status")
    @classmethod
    def ensure_proposed(cls, value: ContinuityStatus) -> ContinuityStatus:
        if value != ContinuityStatus.PROPOSED:
            raise ValueError("breakdown drafts must have status=proposed")
        return value


class ContinuityGroup(WireModel):
    """连续性分组：同一场景内 >=2 个相邻镜头组成的连续片段。

    实例不可变，所有修改都通过 model_copy 生成新对象。
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    id: str = Field(default_factory=new_group_id)
    scene_id: str = Field(..., min_length=1)
    group_number: int = Field(default=0, ge=0)
    shot_ids: List[str] = Field(..., min_length=2)
    status: ContinuityStatus
    transition_type: Optional[str] = None
    description: Optional[str] = None
    edited_by: Optional[str] = None
    edited_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    def edges(self) -> list[tuple[str, str]]:
        return list(zip(self.shot_ids, self.shot_ids[1:]))

    def has_edge(self, shot_a: str, shot_b: str) -> bool:
        return (shot_a, shot_b) in self.edges()

    @classmethod
    def from_draft(
        cls, draft: ContinuityGroupDraft, *, created_at: datetime | None = None
    ) -> "ContinuityGroup":
        return cls(
            id=draft.id,
            scene_id=draft.scene_id,
            group_number=draft.group_number,
            shot_ids=list(draft.shot_ids),
            status=ContinuityStatus.PROPOSED,
            transition_type=draft.transition_type,
            description=draft.description,
            created_at=created_at or utc_now(),
        )


class Connection(WireModel):
    """派生出的相邻镜头连接，从不落盘。"""

    shot_a: str
    shot_b: str
    status: ContinuityStatus
    group_id: str


class ContinuityPayload(WireModel):
    """持久化契约：按场景聚合的分组（approved ++ proposed ++ declined）与锁定标记。"""

    continuity_groups: Dict[str, List[ContinuityGroup]] = Field(default_factory=dict)
    locked: bool = False
    locked_scene_ids: List[str] = Field(default_factory=list)
