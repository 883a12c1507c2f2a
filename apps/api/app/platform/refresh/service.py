from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import Lock

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit
from app.core.config import get_settings
from app.core.errors import UpstreamQueryFailed
from app.metrics import observe_refresh_finished, observe_refresh_trigger
from app.platform.cache.gateway import CacheGateway, get_cache_gateway
from app.platform.refresh.models import (
    COOLDOWN_ROW_ID,
    TERMINAL_RUN_STATES,
    RefreshCooldown,
    RefreshRun,
    RunState,
    TriggerSource,
    as_utc,
    utcnow,
)
from app.platform.refresh.pipeline import (
    DataTransferPipeline,
    ExternalRunState,
    PipelineRun,
    RefreshPipeline,
    StubRefreshPipeline,
)


logger = logging.getLogger("app.refresh")

_EXTERNAL_TO_RUN_STATE: dict[ExternalRunState, RunState] = {
    ExternalRunState.PENDING: RunState.PENDING,
    ExternalRunState.RUNNING: RunState.RUNNING,
    ExternalRunState.SUCCEEDED: RunState.SUCCEEDED,
    ExternalRunState.FAILED: RunState.FAILED,
    ExternalRunState.CANCELLED: RunState.FAILED,
}


class RunNotFound(Exception):
    def __init__(self, run_id: uuid.UUID) -> None:
        self.run_id = run_id
        super().__init__(f"refresh run {run_id} not found")


@dataclass(frozen=True, slots=True)
class TriggerAccepted:
    run_id: uuid.UUID
    external_run_id: str
    cooldown_until: datetime
    estimated_duration: str


@dataclass(frozen=True, slots=True)
class TriggerRejected:
    minutes_remaining: int
    cooldown_until: datetime


@dataclass(frozen=True, slots=True)
class CooldownStatus:
    active: bool
    minutes_remaining: int
    cooldown_until: datetime | None
    last_run_id: uuid.UUID | None


@dataclass(frozen=True, slots=True)
class RunStatus:
    run_id: uuid.UUID
    external_run_id: str | None
    state: RunState
    is_complete: bool
    cache_invalidated: bool
    triggered_at: datetime
    finished_at: datetime | None
    error_message: str | None


def minutes_remaining(cooldown_until: datetime, now: datetime) -> int:
    remaining = (cooldown_until - now).total_seconds()
    if remaining <= 0:
        return 0
    return math.ceil(remaining / 60)


@dataclass(slots=True)
class RefreshCoordinator:
    """Cooldown-limited trigger for the external warehouse refresh.

    The cooldown lives in a single ``refresh_cooldown`` row and is claimed
    with one conditional UPDATE, so any number of processes sharing the
    database agree on who won. The process lock only serializes callers
    inside one process.
    """

    pipeline: RefreshPipeline
    cache_gateway: CacheGateway | None = None
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def trigger(
        self,
        session: Session,
        actor: str,
        source: TriggerSource = TriggerSource.MANUAL,
    ) -> TriggerAccepted | TriggerRejected:
        settings = get_settings()
        run_id = uuid.uuid4()

        with self._lock:
            now = utcnow()
            cooldown_until = now + timedelta(minutes=settings.refresh_cooldown_minutes)
            if not self._claim_cooldown(session, run_id=run_id, now=now, cooldown_until=cooldown_until):
                current_until = self._current_cooldown_until(session) or now
                rejected = TriggerRejected(
                    minutes_remaining=max(1, minutes_remaining(current_until, now)),
                    cooldown_until=current_until,
                )
                observe_refresh_trigger(source=source.value, outcome="cooldown")
                logger.info(
                    "refresh.cooldown_active",
                    extra={
                        "principal": actor,
                        "trigger_source": source.value,
                        "minutes_remaining": rejected.minutes_remaining,
                    },
                )
                return rejected

        run = RefreshRun(
            id=run_id,
            triggered_at=now,
            triggered_by=actor,
            trigger_source=source.value,
            state=RunState.PENDING.value,
            cooldown_until=cooldown_until,
        )
        session.add(run)
        session.commit()

        try:
            pipeline_run = self.pipeline.start(settings.refresh_transfer_config_id)
        except Exception as exc:
            self._fail_start(session, run, exc)
            observe_refresh_trigger(source=source.value, outcome="failed")
            if isinstance(exc, UpstreamQueryFailed):
                raise
            raise UpstreamQueryFailed("refresh.start", str(exc)) from exc

        run.external_run_id = pipeline_run.run_id
        run.state = _EXTERNAL_TO_RUN_STATE[pipeline_run.state].value
        if run.state == RunState.PENDING.value:
            run.state = RunState.RUNNING.value
        session.commit()

        observe_refresh_trigger(source=source.value, outcome="accepted")
        logger.info(
            "refresh.triggered",
            extra={
                "principal": actor,
                "run_id": str(run.id),
                "external_run_id": pipeline_run.run_id,
                "trigger_source": source.value,
            },
        )
        audit.record(
            actor=actor,
            entity_type="refresh.run",
            entity_id=str(run.id),
            action="refresh.trigger",
            details={"trigger_source": source.value, "external_run_id": pipeline_run.run_id},
        )
        return TriggerAccepted(
            run_id=run.id,
            external_run_id=pipeline_run.run_id,
            cooldown_until=cooldown_until,
            estimated_duration=settings.refresh_estimated_duration,
        )

    def scheduled_trigger(self, session: Session) -> TriggerAccepted | TriggerRejected:
        return self.trigger(session, actor="scheduler", source=TriggerSource.SCHEDULED)

    def poll_status(self, session: Session, run_id: uuid.UUID) -> RunStatus:
        run = session.get(RefreshRun, run_id)
        if run is None:
            raise RunNotFound(run_id)

        if RunState(run.state) in TERMINAL_RUN_STATES or not run.external_run_id:
            return _to_run_status(run)

        pipeline_run = self.pipeline.get_run(run.external_run_id)
        new_state = _EXTERNAL_TO_RUN_STATE[pipeline_run.state]

        if new_state in TERMINAL_RUN_STATES:
            self._finish(session, run, new_state, pipeline_run)
        elif new_state == RunState.RUNNING and run.state == RunState.PENDING.value:
            session.execute(
                update(RefreshRun)
                .where(RefreshRun.id == run.id, RefreshRun.state == RunState.PENDING.value)
                .values(state=RunState.RUNNING.value)
                .execution_options(synchronize_session=False)
            )
            session.commit()

        session.refresh(run)
        return _to_run_status(run)

    def cooldown_status(self, session: Session) -> CooldownStatus:
        now = utcnow()
        row = session.get(RefreshCooldown, COOLDOWN_ROW_ID)
        if row is None or row.cooldown_until is None:
            return CooldownStatus(active=False, minutes_remaining=0, cooldown_until=None, last_run_id=None)
        until = as_utc(row.cooldown_until)
        remaining = minutes_remaining(until, now)
        return CooldownStatus(
            active=remaining > 0,
            minutes_remaining=remaining,
            cooldown_until=until,
            last_run_id=row.run_id,
        )

    def recent_runs(self, session: Session, limit: int = 10) -> list[RunStatus]:
        rows = session.scalars(select(RefreshRun).order_by(RefreshRun.triggered_at.desc()).limit(limit)).all()
        return [_to_run_status(row) for row in rows]

    def _claim_cooldown(self, session: Session, *, run_id: uuid.UUID, now: datetime, cooldown_until: datetime) -> bool:
        if self._conditional_claim(session, run_id=run_id, now=now, cooldown_until=cooldown_until):
            return True

        if session.get(RefreshCooldown, COOLDOWN_ROW_ID) is not None:
            session.rollback()
            return False

        session.add(RefreshCooldown(id=COOLDOWN_ROW_ID, cooldown_until=cooldown_until, run_id=run_id, updated_at=now))
        try:
            session.commit()
            return True
        except IntegrityError:
            # Another process created the row first; fall back to the conditional claim.
            session.rollback()
            return self._conditional_claim(session, run_id=run_id, now=now, cooldown_until=cooldown_until)

    def _conditional_claim(self, session: Session, *, run_id: uuid.UUID, now: datetime, cooldown_until: datetime) -> bool:
        result = session.execute(
            update(RefreshCooldown)
            .where(
                RefreshCooldown.id == COOLDOWN_ROW_ID,
                or_(RefreshCooldown.cooldown_until.is_(None), RefreshCooldown.cooldown_until <= now),
            )
            .values(cooldown_until=cooldown_until, run_id=run_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            session.commit()
            return True
        return False

    def _current_cooldown_until(self, session: Session) -> datetime | None:
        session.expire_all()
        row = session.get(RefreshCooldown, COOLDOWN_ROW_ID)
        return as_utc(row.cooldown_until) if row is not None else None

    def _fail_start(self, session: Session, run: RefreshRun, exc: Exception) -> None:
        now = utcnow()
        run.state = RunState.FAILED.value
        run.finished_at = now
        run.error_message = str(exc)[:2000]
        session.execute(
            update(RefreshCooldown)
            .where(RefreshCooldown.id == COOLDOWN_ROW_ID, RefreshCooldown.run_id == run.id)
            .values(cooldown_until=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        observe_refresh_finished(state=RunState.FAILED.value)
        logger.exception(
            "refresh.start_failed",
            extra={"run_id": str(run.id), "trigger_source": run.trigger_source, "error": str(exc)},
        )

    def _finish(self, session: Session, run: RefreshRun, new_state: RunState, pipeline_run: PipelineRun) -> None:
        now = utcnow()
        result = session.execute(
            update(RefreshRun)
            .where(
                RefreshRun.id == run.id,
                RefreshRun.state.in_([RunState.PENDING.value, RunState.RUNNING.value]),
            )
            .values(
                state=new_state.value,
                finished_at=pipeline_run.finished_at or now,
                error_message=pipeline_run.error_message,
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()
        if result.rowcount != 1:
            return

        observe_refresh_finished(state=new_state.value)
        logger.info(
            "refresh.finished",
            extra={"run_id": str(run.id), "external_run_id": run.external_run_id, "state": new_state.value},
        )
        if new_state != RunState.SUCCEEDED:
            return

        gateway = self.cache_gateway or get_cache_gateway()
        removed = gateway.invalidate_all(source="refresh")
        session.execute(
            update(RefreshRun)
            .where(RefreshRun.id == run.id)
            .values(cache_invalidated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        session.commit()
        audit.record(
            actor=run.triggered_by,
            entity_type="refresh.run",
            entity_id=str(run.id),
            action="refresh.cache_invalidated",
            details={"removed": removed},
        )


def _to_run_status(run: RefreshRun) -> RunStatus:
    state = RunState(run.state)
    return RunStatus(
        run_id=run.id,
        external_run_id=run.external_run_id,
        state=state,
        is_complete=state in TERMINAL_RUN_STATES,
        cache_invalidated=run.cache_invalidated_at is not None,
        triggered_at=as_utc(run.triggered_at),
        finished_at=as_utc(run.finished_at),
        error_message=run.error_message,
    )


def build_refresh_pipeline() -> RefreshPipeline:
    settings = get_settings()
    if settings.refresh_pipeline_backend.lower() == "datatransfer":
        return DataTransferPipeline(timeout_seconds=settings.upstream_timeout_seconds)
    return StubRefreshPipeline()


_REFRESH_COORDINATOR: RefreshCoordinator | None = None
_REFRESH_LOCK = Lock()


def get_refresh_coordinator() -> RefreshCoordinator:
    global _REFRESH_COORDINATOR
    with _REFRESH_LOCK:
        if _REFRESH_COORDINATOR is None:
            _REFRESH_COORDINATOR = RefreshCoordinator(pipeline=build_refresh_pipeline())
        return _REFRESH_COORDINATOR


def set_refresh_coordinator(coordinator: RefreshCoordinator | None) -> None:
    global _REFRESH_COORDINATOR
    with _REFRESH_LOCK:
        _REFRESH_COORDINATOR = coordinator
