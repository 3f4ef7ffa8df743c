"""Core primitives for print-relay."""

from .models import (
    ControlResult,
    DiscoveryResult,
    DispatchResult,
    JobId,
    LastSuccess,
    QueueState,
    RemoteJob,
    SpoolEntry,
    WatchOutcome,
    mask_url,
)
from .protocols import (
    ConfigurationError,
    PrintDispatcher,
    RemoteQueueClient,
    RemoteQueueError,
    SpoolerProbe,
    SpoolerQueryError,
)

__all__ = [
    "ConfigurationError",
    "ControlResult",
    "DiscoveryResult",
    "DispatchResult",
    "JobId",
    "LastSuccess",
    "PrintDispatcher",
    "QueueState",
    "RemoteJob",
    "RemoteQueueClient",
    "RemoteQueueError",
    "SpoolEntry",
    "SpoolerProbe",
    "SpoolerQueryError",
    "WatchOutcome",
    "mask_url",
]
