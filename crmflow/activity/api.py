from __future__ import annotations

from fastapi import APIRouter, Depends

from crmflow.activity.schemas import ActivityRead
from crmflow.activity.service import ActivityLogService
from crmflow.api.deps import get_activity_log, http_errors

router = APIRouter(prefix="/deals", tags=["activities"])


@router.get("/{deal_id}/activities", response_model=list[ActivityRead])
def list_deal_activities(deal_id: str, activity_log: ActivityLogService = Depends(get_activity_log)) -> list[ActivityRead]:
    with http_errors():
        return activity_log.list_activities(deal_id)
