from __future__ import annotations

import logging

from crmflow.errors import StoreError
from crmflow.pipelines.schemas import StageRead
from crmflow.store.client import EntityStore, eq, first_or_none


logger = logging.getLogger("crmflow.pipelines")


class StageResolver:
    """Translates stage names to ids within a pipeline and back.

    Names are compared with ``str.casefold`` on the client side rather than through an
    ``ilike`` filter, so stage names containing ``%`` or ``_`` still match literally.
    When a pipeline holds two stages with the same name the first one in store order wins.
    Store failures are logged and reported as ``None``; callers treat that as "not applicable".
    """

    def __init__(self, store: EntityStore) -> None:
        self.store = store

    def resolve_stage_id(self, name: str, pipeline_id: str | None = None) -> str | None:
        wanted = name.strip().casefold()
        if not wanted:
            return None
        try:
            if pipeline_id is not None:
                rows = self.store.select("stages", {"pipeline_id": eq(pipeline_id)}, columns="id,name", order="position.asc")
            else:
                rows = self.store.select("stages", columns="id,name")
        except StoreError as exc:
            logger.warning("stage.resolve_failed", extra={"to_stage": name, "error": str(exc)})
            return None

        for row in rows:
            if str(row.get("name") or "").strip().casefold() == wanted:
                return str(row["id"])
        return None

    def resolve_stage_name(self, stage_id: str) -> str | None:
        row = self._stage_row(stage_id, "id,name")
        return None if row is None else row.get("name")

    def resolve_pipeline_id(self, stage_id: str) -> str | None:
        row = self._stage_row(stage_id, "id,pipeline_id")
        return None if row is None else row.get("pipeline_id")

    def list_stages(self, pipeline_id: str) -> list[StageRead]:
        rows = self.store.select("stages", {"pipeline_id": eq(pipeline_id)}, order="position.asc")
        return [StageRead.model_validate(row) for row in rows]

    def _stage_row(self, stage_id: str, columns: str) -> dict | None:
        try:
            return first_or_none(self.store.select("stages", {"id": eq(stage_id)}, columns=columns, limit=1))
        except StoreError as exc:
            logger.warning("stage.lookup_failed", extra={"error": str(exc)})
            return None
