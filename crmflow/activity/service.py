from __future__ import annotations

import logging
from typing import Any

from crmflow.activity.schemas import ActivityRead
from crmflow.context import get_current_user_id
from crmflow.errors import StoreError
from crmflow.store.client import EntityStore, eq, follow_location


logger = logging.getLogger("crmflow.activity")


class ActivityLogService:
    """Append-only per-deal activity records.

    Write failures are logged and re-raised; every caller in the automation and
    conversion flows runs this through ``run_side_effect`` so they never surface.
    """

    def __init__(self, store: EntityStore) -> None:
        self.store = store

    def log_activity(self, type: str, deal_id: str | None, meta: dict[str, Any] | None = None) -> ActivityRead | None:
        row = {"type": type, "deal_id": deal_id, "user_id": get_current_user_id(), "meta": meta or {}}
        try:
            result = self.store.insert("activities", row)
        except StoreError as exc:
            logger.warning("activity.write_failed", extra={"deal_id": deal_id, "status": type, "error": str(exc)})
            raise

        created = result.row
        if created is None and result.location:
            created = follow_location(self.store, "activities", result.location)
        logger.info("activity.logged", extra={"deal_id": deal_id, "status": type})
        return None if created is None else ActivityRead.model_validate(created)

    def list_activities(self, deal_id: str) -> list[ActivityRead]:
        rows = self.store.select("activities", {"deal_id": eq(deal_id)}, order="created_at.desc")
        return [ActivityRead.model_validate(row) for row in rows]
