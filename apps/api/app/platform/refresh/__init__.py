from app.platform.refresh.models import RefreshCooldown, RefreshRun, RunState, TriggerSource
from app.platform.refresh.pipeline import DataTransferPipeline, ExternalRunState, RefreshPipeline, StubRefreshPipeline
from app.platform.refresh.service import (
    RefreshCoordinator,
    RunNotFound,
    TriggerAccepted,
    TriggerRejected,
    get_refresh_coordinator,
    set_refresh_coordinator,
)

__all__ = [
    "RefreshCooldown",
    "RefreshRun",
    "RunState",
    "TriggerSource",
    "DataTransferPipeline",
    "ExternalRunState",
    "RefreshPipeline",
    "StubRefreshPipeline",
    "RefreshCoordinator",
    "RunNotFound",
    "TriggerAccepted",
    "TriggerRejected",
    "get_refresh_coordinator",
    "set_refresh_coordinator",
]
