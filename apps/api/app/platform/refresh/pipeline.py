from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from threading import Lock
from typing import Any, Protocol

from google.cloud import bigquery_datatransfer
from google.protobuf.timestamp_pb2 import Timestamp
from opentelemetry import trace

from app.context import get_correlation_id
from app.core.errors import UpstreamQueryFailed


tracer = trace.get_tracer("app.platform.refresh.pipeline")


class ExternalRunState(StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True, slots=True)
class PipelineRun:
    run_id: str
    state: ExternalRunState
    error_message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class RefreshPipeline(Protocol):
    """External data pipeline that copies source records into the warehouse."""

    def start(self, config_id: str) -> PipelineRun: ...

    def get_run(self, run_id: str) -> PipelineRun: ...


class StubRefreshPipeline:
    """In-process pipeline for local runs and tests. Runs stay RUNNING until finished explicitly."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._runs: dict[str, PipelineRun] = {}
        self.start_calls = 0

    def start(self, config_id: str) -> PipelineRun:
        with tracer.start_as_current_span("refresh.pipeline.start") as span:
            span.set_attribute("config_id", config_id)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            run = PipelineRun(
                run_id=f"{config_id}/runs/{uuid.uuid4()}",
                state=ExternalRunState.RUNNING,
                started_at=datetime.now(timezone.utc),
            )
            with self._lock:
                self._runs[run.run_id] = run
                self.start_calls += 1
            span.set_attribute("external_run_id", run.run_id)
            return run

    def get_run(self, run_id: str) -> PipelineRun:
        with tracer.start_as_current_span("refresh.pipeline.get_run") as span:
            span.set_attribute("external_run_id", run_id)
            with self._lock:
                run = self._runs.get(run_id)
            if run is None:
                raise UpstreamQueryFailed("refresh.get_run", f"unknown run {run_id}")
            span.set_attribute("state", run.state.value)
            return run

    def finish(self, run_id: str, state: ExternalRunState, error_message: str | None = None) -> None:
        with self._lock:
            current = self._runs[run_id]
            self._runs[run_id] = PipelineRun(
                run_id=run_id,
                state=state,
                error_message=error_message,
                started_at=current.started_at,
                finished_at=datetime.now(timezone.utc),
            )


class DataTransferPipeline:
    """BigQuery Data Transfer Service backed pipeline."""

    def __init__(self, *, timeout_seconds: float, client: Any | None = None) -> None:
        self._timeout_seconds = timeout_seconds
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = bigquery_datatransfer.DataTransferServiceClient()
        return self._client

    def start(self, config_id: str) -> PipelineRun:
        with tracer.start_as_current_span("refresh.pipeline.start") as span:
            span.set_attribute("config_id", config_id)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            requested = Timestamp()
            requested.GetCurrentTime()
            try:
                response = self._get_client().start_manual_transfer_runs(
                    request={"parent": config_id, "requested_run_time": requested},
                    timeout=self._timeout_seconds,
                )
            except Exception as exc:
                raise UpstreamQueryFailed("refresh.start", str(exc)) from exc

            if not response.runs:
                raise UpstreamQueryFailed("refresh.start", "transfer triggered but no run id returned")
            run = self._to_pipeline_run(response.runs[0])
            span.set_attribute("external_run_id", run.run_id)
            return run

    def get_run(self, run_id: str) -> PipelineRun:
        with tracer.start_as_current_span("refresh.pipeline.get_run") as span:
            span.set_attribute("external_run_id", run_id)
            try:
                transfer_run = self._get_client().get_transfer_run(name=run_id, timeout=self._timeout_seconds)
            except Exception as exc:
                raise UpstreamQueryFailed("refresh.get_run", str(exc)) from exc
            run = self._to_pipeline_run(transfer_run)
            span.set_attribute("state", run.state.value)
            return run

    def _to_pipeline_run(self, transfer_run: Any) -> PipelineRun:
        state_name = getattr(transfer_run.state, "name", str(transfer_run.state))
        try:
            state = ExternalRunState(state_name)
        except ValueError:
            state = ExternalRunState.PENDING
        error_status = getattr(transfer_run, "error_status", None)
        error_message = getattr(error_status, "message", None) or None
        return PipelineRun(
            run_id=transfer_run.name,
            state=state,
            error_message=error_message,
            started_at=_timestamp_or_none(getattr(transfer_run, "run_time", None)),
            finished_at=_timestamp_or_none(getattr(transfer_run, "end_time", None)),
        )


def _timestamp_or_none(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    seconds = getattr(value, "seconds", 0)
    if not seconds:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
