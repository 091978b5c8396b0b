from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class StageRead(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    pipeline_id: str
    name: str
    position: int = 0
