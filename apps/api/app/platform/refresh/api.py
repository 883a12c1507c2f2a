from __future__ import annotations

import hmac
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from app import audit
from app.core.config import get_settings
from app.core.database import get_db
from app.core.errors import CooldownActive
from app.platform.cache.gateway import get_cache_gateway
from app.platform.refresh.models import RunState
from app.platform.refresh.schemas import (
    CacheRefreshResult,
    CooldownStatusRead,
    CronTriggerResult,
    RunStatusRead,
    TriggerTransferAccepted,
)
from app.platform.refresh.service import (
    RunNotFound,
    RunStatus,
    TriggerRejected,
    get_refresh_coordinator,
)
from app.platform.security.context import Permissions
from app.platform.security.guards import role_guard
from app.platform.security.roles import Role


logger = logging.getLogger("app.refresh")

admin_router = APIRouter(prefix="/api/admin", tags=["admin"])
cron_router = APIRouter(prefix="/api/cron", tags=["cron"])

TRANSFER_ROLES = (Role.ADMIN, Role.MANAGER)


def _to_run_status_read(run: RunStatus) -> RunStatusRead:
    return RunStatusRead(
        run_id=run.run_id,
        external_run_id=run.external_run_id,
        state=run.state.value,
        is_complete=run.is_complete,
        success=run.state == RunState.SUCCEEDED,
        cache_invalidated=run.cache_invalidated,
        triggered_at=run.triggered_at,
        finished_at=run.finished_at,
        error_message=run.error_message,
    )


def verify_cron_secret(request: Request) -> None:
    secret = get_settings().cron_secret
    if not secret:
        logger.error("cron.not_configured")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="cron not configured")

    auth_header = request.headers.get("authorization", "")
    if not hmac.compare_digest(auth_header.encode("utf-8"), f"Bearer {secret}".encode("utf-8")):
        logger.warning("cron.unauthorized", extra={"path": request.url.path})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@admin_router.post(
    "/trigger-transfer",
    response_model=TriggerTransferAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
def trigger_transfer(
    db: Session = Depends(get_db),
    permissions: Permissions = Depends(role_guard(TRANSFER_ROLES)),
) -> TriggerTransferAccepted:
    outcome = get_refresh_coordinator().trigger(db, actor=permissions.email)
    if isinstance(outcome, TriggerRejected):
        raise CooldownActive(outcome.minutes_remaining)

    return TriggerTransferAccepted(
        run_id=outcome.run_id,
        external_run_id=outcome.external_run_id,
        message=f"Data transfer started successfully. This typically takes {outcome.estimated_duration}.",
        estimated_duration=outcome.estimated_duration,
        cooldown_until=outcome.cooldown_until,
    )


@admin_router.get("/trigger-transfer", response_model=RunStatusRead | CooldownStatusRead)
def transfer_status(
    run_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    permissions: Permissions = Depends(role_guard(TRANSFER_ROLES)),
) -> RunStatusRead | CooldownStatusRead:
    coordinator = get_refresh_coordinator()
    if run_id is None:
        cooldown = coordinator.cooldown_status(db)
        return CooldownStatusRead(
            within_cooldown=cooldown.active,
            cooldown_minutes_remaining=cooldown.minutes_remaining,
            cooldown_until=cooldown.cooldown_until,
            last_run_id=cooldown.last_run_id,
        )

    try:
        run = coordinator.poll_status(db, run_id)
    except RunNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="run not found") from exc
    return _to_run_status_read(run)


@admin_router.get("/transfer-runs", response_model=list[RunStatusRead])
def list_transfer_runs(
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
    permissions: Permissions = Depends(role_guard(TRANSFER_ROLES)),
) -> list[RunStatusRead]:
    return [_to_run_status_read(run) for run in get_refresh_coordinator().recent_runs(db, limit=limit)]


@admin_router.post("/refresh-cache", response_model=CacheRefreshResult)
def refresh_cache(permissions: Permissions = Depends(role_guard((Role.ADMIN,)))) -> CacheRefreshResult:
    removed = get_cache_gateway().invalidate_all(source="admin")
    audit.record(
        actor=permissions.email,
        entity_type="cache",
        entity_id="all",
        action="cache.invalidate",
        details={"removed": removed},
    )
    return CacheRefreshResult(message="Cache invalidated successfully", removed=removed)


@cron_router.get("/trigger-transfer", response_model=CronTriggerResult, dependencies=[Depends(verify_cron_secret)])
def cron_trigger_transfer(db: Session = Depends(get_db)) -> CronTriggerResult:
    outcome = get_refresh_coordinator().scheduled_trigger(db)
    if isinstance(outcome, TriggerRejected):
        return CronTriggerResult(
            success=False,
            message=f"Cooldown active, {outcome.minutes_remaining} minute(s) remaining",
            cooldown_minutes_remaining=outcome.minutes_remaining,
        )
    return CronTriggerResult(success=True, message="Data transfer started", run_id=outcome.run_id)


@cron_router.get("/refresh-cache", response_model=CacheRefreshResult, dependencies=[Depends(verify_cron_secret)])
def cron_refresh_cache() -> CacheRefreshResult:
    removed = get_cache_gateway().invalidate_all(source="scheduled")
    return CacheRefreshResult(message="Cache invalidated successfully", removed=removed)
