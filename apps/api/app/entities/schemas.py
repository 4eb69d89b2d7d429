from __future__ import annotations

from pydantic import BaseModel, Field


class StageMoveRequest(BaseModel):
    stage: str = Field(min_length=1)
