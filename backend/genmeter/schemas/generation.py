from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class TransportMessageOut(BaseModel):
    kind: Literal["text", "image", "video"]
    content: str


class GenerateRequest(BaseModel):
    prompt: str = Field(default="", max_length=4000)
    inputs: list[str] = Field(default_factory=list)
    units: int | None = None
    command_name: str = Field(default="generate", min_length=1, max_length=64)
    mode: Literal["single", "multiple"] = "single"

    @field_validator("inputs")
    @staticmethod
    def _ensure_inputs(value: list[str]) -> list[str]:
        cleaned = [v.strip() for v in value if v and v.strip()]
        if not cleaned:
            raise ValueError("at least one input is required")
        return cleaned


class GenerateResponse(BaseModel):
    outcome: str
    requested: int
    delivered: int
    charged_units: int
    messages: list[TransportMessageOut]


class JobSubmitRequest(BaseModel):
    prompt: str = Field(default="", max_length=4000)
    input_url: str = Field(..., min_length=1)
    units: int = 1
    command_name: str = Field(default="video", min_length=1, max_length=64)
    duration: int | None = Field(default=None, gt=0)
    aspect_ratio: str | None = None


class JobSubmitResponse(BaseModel):
    outcome: str
    job_id: str | None
    credit_cost: int
    messages: list[TransportMessageOut]


class JobReconcileOut(BaseModel):
    job_id: str
    outcome: str
    status: str | None = None
    progress: int | None = None


class JobQueryResponse(BaseModel):
    results: list[JobReconcileOut]
    messages: list[TransportMessageOut]


class PendingJobOut(BaseModel):
    job_id: str
    command_name: str
    credit_cost: int
    created_at: datetime
    charged: bool
