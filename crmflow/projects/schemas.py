from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


ProjectStatus = Literal["active", "on_hold", "completed", "cancelled"]


class ProjectRead(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    deal_id: str
    name: str
    status: ProjectStatus
