from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from narrator.describe.errors import ErrorKind
from narrator.util.ids import new_uuid
from narrator.util.time import now_utc

CaptureStatus = Literal["pending", "queued", "processing", "described", "failed"]
CaptureSource = Literal["scheduled", "manual", "offline_replay"]
SchedulerPhase = Literal["idle", "armed", "running", "completed", "stopped"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"described", "failed"})


class CaptureRecord(BaseModel):
    id: str = Field(default_factory=new_uuid)
    image_ref: str
    captured_at: datetime = Field(default_factory=now_utc)
    source: CaptureSource = "scheduled"
    status: CaptureStatus = "pending"
    description: str | None = None
    attempt: int = Field(default=0, ge=0)
    last_error: ErrorKind | None = None
    used_fallback: bool = False

    @model_validator(mode="after")
    def _description_only_when_described(self) -> "CaptureRecord":
        if self.status != "described" and self.description is not None:
            raise ValueError("description is only set on described records")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SchedulerState(BaseModel):
    enabled: bool
    interval_seconds: float
    target_count: int
    current_count: int = 0
    active: bool = False
    remaining_seconds: float = 0.0
    progress_percent: float = 0.0
    phase: SchedulerPhase = "idle"


class OfflineDescribeRequest(BaseModel):
    record_id: str | None = None
    image_ref: str = Field(min_length=1)


class OfflineEntry(BaseModel):
    id: str = Field(default_factory=new_uuid)
    kind: Literal["describe"] = "describe"
    payload: OfflineDescribeRequest
    queued_at: datetime = Field(default_factory=now_utc)


class PipelineConfig(BaseModel):
    """Configuration surface read when the queue and scheduler are constructed."""

    enabled: bool = True
    capture_interval_seconds: float = Field(default=5.0, gt=0)
    capture_count: int = Field(default=10, ge=1)
    max_concurrent: int = Field(default=1, ge=1)
    retry_limit: int = Field(default=3, ge=1)
    rate_limit_delay_ms: int = Field(default=1000, ge=0)
    prompt: str = Field(min_length=1)
    quota_escalate_after: int | None = Field(default=None, ge=1)
    fallback_enabled: bool = False

    @classmethod
    def from_settings(cls, s) -> "PipelineConfig":
        return cls(
            enabled=s.CAPTURE_ENABLED,
            capture_interval_seconds=s.CAPTURE_INTERVAL_SECONDS,
            capture_count=s.CAPTURE_COUNT,
            max_concurrent=s.DESCRIBE_MAX_CONCURRENT,
            retry_limit=s.DESCRIBE_RETRY_LIMIT,
            rate_limit_delay_ms=s.DESCRIBE_RATE_LIMIT_DELAY_MS,
            prompt=s.DESCRIBE_PROMPT,
            quota_escalate_after=s.DESCRIBE_QUOTA_ESCALATE_AFTER,
            fallback_enabled=s.DESCRIBE_FALLBACK_ENABLED,
        )
