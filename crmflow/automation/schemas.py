from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from crmflow.automation.rules import AutomationTrigger
from crmflow.side_effects import SideEffectOutcome


class AutomationRequest(BaseModel):
    trigger: AutomationTrigger
    related_entity: dict[str, Any] | None = None


class AutomationResult(BaseModel):
    updated: bool
    reason: str
    from_stage: str | None = None
    to_stage: str | None = None
    side_effects: list[SideEffectOutcome] = Field(default_factory=list)


class BatchAutomationItem(BaseModel):
    deal_id: str = Field(min_length=1)
    trigger: AutomationTrigger
    related_entity: dict[str, Any] | None = None


class BatchAutomationRequest(BaseModel):
    items: list[BatchAutomationItem]


class BatchItemResult(BaseModel):
    deal_id: str
    trigger: AutomationTrigger
    result: AutomationResult | None = None
    error: str | None = None


class BatchAutomationResult(BaseModel):
    success: int
    failed: int
    results: list[BatchItemResult]
