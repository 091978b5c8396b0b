from __future__ import annotations

import logging

from crmflow.projects.schemas import ProjectRead, ProjectStatus
from crmflow.store.client import EntityStore, eq, first_or_none
from crmflow.store.models import utcnow


logger = logging.getLogger("crmflow.projects")


class ProjectService:
    def __init__(self, store: EntityStore) -> None:
        self.store = store

    def get_by_deal_id(self, deal_id: str) -> ProjectRead | None:
        row = first_or_none(self.store.select("projects", {"deal_id": eq(deal_id)}, limit=1))
        return None if row is None else ProjectRead.model_validate(row)

    def update_status_by_deal_id(self, deal_id: str, status: ProjectStatus) -> ProjectRead | None:
        """Set the status of the deal's project; a deal without a project is a no-op."""
        project = self.get_by_deal_id(deal_id)
        if project is None:
            return None
        if project.status == status:
            return project

        rows = self.store.update(
            "projects",
            {"id": eq(project.id)},
            {"status": status, "updated_at": utcnow().isoformat()},
        )
        logger.info("project.status_changed", extra={"deal_id": deal_id, "status": status})
        if rows:
            return ProjectRead.model_validate(rows[0])
        return project.model_copy(update={"status": status})
