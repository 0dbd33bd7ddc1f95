# kbase/core/billing/schemas.py
"""Usage report models shared by the billing service, task and API."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class TokenUsageItem(BaseModel):
    tier: Literal["t1", "t2"]
    model_provider: str
    model_name: str
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class SkillMeta(BaseModel):
    skill_id: Optional[str] = None
    tpl_name: Optional[str] = None
    display_name: Optional[str] = None


class TokenUsageReport(BaseModel):
    """One unit of paid work, reported once it completes."""

    uid: str
    usage: TokenUsageItem
    timestamp: datetime
    conv_id: Optional[str] = None
    job_id: Optional[str] = None
    span_id: Optional[str] = None
    skill: Optional[SkillMeta] = None
