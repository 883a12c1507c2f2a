from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class TriggerTransferAccepted(BaseModel):
    success: bool = True
    run_id: UUID
    external_run_id: str
    message: str
    estimated_duration: str
    cooldown_until: datetime


class CooldownStatusRead(BaseModel):
    within_cooldown: bool
    cooldown_minutes_remaining: int
    cooldown_until: datetime | None
    last_run_id: UUID | None


class RunStatusRead(BaseModel):
    run_id: UUID
    external_run_id: str | None
    state: str
    is_complete: bool
    success: bool
    cache_invalidated: bool
    triggered_at: datetime
    finished_at: datetime | None
    error_message: str | None


class CronTriggerResult(BaseModel):
    success: bool
    message: str
    run_id: UUID | None = None
    cooldown_minutes_remaining: int | None = None


class CacheRefreshResult(BaseModel):
    success: bool = True
    message: str
    removed: dict[str, int]
