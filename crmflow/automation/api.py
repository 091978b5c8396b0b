from __future__ import annotations

from fastapi import APIRouter, Depends

from crmflow.api.deps import get_automation_service, http_errors
from crmflow.automation.schemas import (
    AutomationRequest,
    AutomationResult,
    BatchAutomationRequest,
    BatchAutomationResult,
)
from crmflow.automation.service import DealStageAutomationService

router = APIRouter(tags=["automation"])


@router.post("/deals/{deal_id}/automation", response_model=AutomationResult)
def automate_deal_stage(
    deal_id: str,
    payload: AutomationRequest,
    service: DealStageAutomationService = Depends(get_automation_service),
) -> AutomationResult:
    with http_errors():
        return service.automate_deal_stage(payload.trigger, deal_id, payload.related_entity)


@router.post("/automation/batch", response_model=BatchAutomationResult)
def batch_automate(
    payload: BatchAutomationRequest,
    service: DealStageAutomationService = Depends(get_automation_service),
) -> BatchAutomationResult:
    return service.batch_automate_deal_stages(payload.items)
