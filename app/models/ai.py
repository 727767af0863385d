from __future__ import annotations

from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.plans import PlanItem

MAX_IDS_PER_CATEGORY = 5


class PlanCategory(str, Enum):
    navigation = "navigation"
    sub_line = "sub_line"
    tablet = "tablet"
    kids_senior = "kids_senior"
    business = "business"
    promotion = "promotion"
    lifetime = "lifetime"


CATEGORY_LABELS_KO: Dict[PlanCategory, str] = {
    PlanCategory.navigation: "네비게이션용",
    PlanCategory.sub_line: "서브회선/세컨드폰용",
    PlanCategory.tablet: "태블릿/스마트기기 전용",
    PlanCategory.kids_senior: "어린이/시니어 특화",
    PlanCategory.business: "업무/비즈니스 전용",
    PlanCategory.promotion: "프로모션 한정",
    PlanCategory.lifetime: "평생형/상시할인",
}


class ChunkClassification(BaseModel):
    """Model output for one chunk: up to five plan ids per category."""

    model_config = ConfigDict(extra="forbid")

    navigation: List[int] = Field(default_factory=list, max_length=MAX_IDS_PER_CATEGORY)
    sub_line: List[int] = Field(default_factory=list, max_length=MAX_IDS_PER_CATEGORY)
    tablet: List[int] = Field(default_factory=list, max_length=MAX_IDS_PER_CATEGORY)
    kids_senior: List[int] = Field(default_factory=list, max_length=MAX_IDS_PER_CATEGORY)
    business: List[int] = Field(default_factory=list, max_length=MAX_IDS_PER_CATEGORY)
    promotion: List[int] = Field(default_factory=list, max_length=MAX_IDS_PER_CATEGORY)
    lifetime: List[int] = Field(default_factory=list, max_length=MAX_IDS_PER_CATEGORY)

    def ids_for(self, category: PlanCategory) -> List[int]:
        return list(getattr(self, category.value))


class ClassifiedGroups(BaseModel):
    groups: Dict[PlanCategory, List[PlanItem]] = Field(default_factory=dict)

    def plans_for(self, category: PlanCategory) -> List[PlanItem]:
        return self.groups.get(category, [])

    @property
    def is_empty(self) -> bool:
        return not any(self.groups.values())


class GeneratedPost(BaseModel):
    title: str = Field(..., min_length=1)
    html_body: str = Field(..., min_length=1)
    tags: List[str] = Field(default_factory=list, max_length=10)
    description: str = ""

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, value: List[str]) -> List[str]:
        return [t.strip() for t in value if t and t.strip()]
