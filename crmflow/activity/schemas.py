from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict


class ActivityRead(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    deal_id: str | None = None
    user_id: str | None = None
    meta: dict[str, Any] | None = None
    created_at: datetime | None = None
