from __future__ import annotations

import logging
from typing import Any

from crmflow.automation.schemas import BatchAutomationItem
from crmflow.automation.service import DealStageAutomationService
from crmflow.context import bound_context
from crmflow.core.celery_app import celery_app
from crmflow.core.config import get_settings
from crmflow.core.database import SessionLocal
from crmflow.store.client import PostgrestEntityStore
from crmflow.store.factory import create_entity_store


logger = logging.getLogger("crmflow.automation")


@celery_app.task(name="crmflow.automation.batch_backfill")
def batch_backfill_task(
    items: list[dict[str, Any]],
    correlation_id: str | None = None,
    user_id: str | None = None,
) -> dict[str, Any]:
    """Run batch stage automation in a worker; one failing deal never stops the rest.

    ``correlation_id`` and ``user_id`` carry the enqueuing request's context so worker log
    lines and activity rows trace back to it.
    """
    with bound_context(correlation_id, user_id):
        session = SessionLocal()
        store = create_entity_store(get_settings(), session)
        try:
            service = DealStageAutomationService.from_store(store)
            parsed = [BatchAutomationItem.model_validate(item) for item in items]
            logger.info("automation.backfill_started", extra={"batch_size": len(parsed)})
            result = service.batch_automate_deal_stages(parsed)
            return result.model_dump(mode="json")
        finally:
            if isinstance(store, PostgrestEntityStore):
                store.close()
            session.close()
