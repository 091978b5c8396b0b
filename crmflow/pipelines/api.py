from __future__ import annotations

from fastapi import APIRouter, Depends

from crmflow.api.deps import get_stage_resolver, http_errors
from crmflow.pipelines.schemas import StageRead
from crmflow.pipelines.service import StageResolver

router = APIRouter(prefix="/pipelines", tags=["pipelines"])


@router.get("/{pipeline_id}/stages", response_model=list[StageRead])
def list_stages(pipeline_id: str, resolver: StageResolver = Depends(get_stage_resolver)) -> list[StageRead]:
    with http_errors():
        return resolver.list_stages(pipeline_id)
