from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class RelationshipHealthRequest(BaseModel):
    history: str = Field(min_length=1)


class RelationshipHealthRead(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    health_score: float = Field(alias="healthScore")
    summary: str
    trends: list[str]
    recommendations: list[str]
    risk_indicators: list[str] = Field(alias="riskIndicators")
    strength_areas: list[str] = Field(alias="strengthAreas")


class ActivityLogInput(BaseModel):
    content: str
    date: str | None = None
    type: str | None = None


class AdviceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    logs: list[ActivityLogInput] = Field(default_factory=list)
    account_name: str | None = Field(default=None, alias="accountName")


class AdviceRead(BaseModel):
    advice: str
    source: str
