"""Domain models for queued jobs, spool entries and control results."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union
from urllib.parse import urlparse

JobId = Union[int, str]


class QueueState(str, Enum):
    """Externally observable lifecycle of the queue orchestrator."""

    IDLE = "idle"
    LISTENING = "listening"
    DISPATCHING = "dispatching"
    TRACKING = "tracking"
    PAUSED_TRACKING = "paused-tracking"
    STOPPING = "stopping"
    STOPPED = "stopped"


class WatchOutcome(str, Enum):
    """How a watch session ended.

    Only ``PRINTED`` and ``DELETED`` are job outcomes. ``CANCELLED`` means the
    watch was stopped from outside and ``FAILED`` means the spooler could not
    be queried for too long.
    """

    PRINTED = "printed"
    DELETED = "deleted"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class RemoteJob:
    url: str
    id: Optional[JobId] = None
    filename: Optional[str] = None

    @property
    def label(self) -> str:
        return self.filename or mask_url(self.url)


@dataclass(slots=True, frozen=True)
class SpoolEntry:
    """Read-only snapshot of a job held by the host spooler."""

    id: int
    document: str = ""
    owner: str = ""
    raw_status: str = ""
    pages_printed: int = 0
    total_pages: int = 0

    @classmethod
    def from_mapping(cls, payload: Dict[str, Any]) -> "SpoolEntry":
        """Build an entry from a spooler record using its usual key spellings."""

        job_id = _first(payload, "Id", "ID", "id", "JobId")
        if job_id is None:
            raise ValueError("Spool record has no job id")

        raw_status = _first(payload, "JobStatusText", "JobStatus", "jobStatus", "Status")
        if isinstance(raw_status, (list, tuple)):
            raw_status = ", ".join(str(item) for item in raw_status)

        return cls(
            id=int(job_id),
            document=str(_first(payload, "Document", "DocumentName") or ""),
            owner=str(_first(payload, "UserName", "Owner") or ""),
            raw_status=str(raw_status or ""),
            pages_printed=_as_int(_first(payload, "PagesPrinted")),
            total_pages=_as_int(_first(payload, "TotalPages")),
        )


@dataclass(slots=True, frozen=True)
class LastSuccess:
    url: str
    filename: Optional[str] = None
    remote_id: Optional[JobId] = None


@dataclass(slots=True, frozen=True)
class DispatchResult:
    success: bool
    message: str = ""


@dataclass(slots=True, frozen=True)
class DiscoveryResult:
    """Result of locating the spool entry for a freshly dispatched job.

    ``success`` with no ``entry`` means the job never showed up, which the
    orchestrator reads as an instant print.
    """

    success: bool
    entry: Optional[SpoolEntry] = None
    message: Optional[str] = None


@dataclass(slots=True, frozen=True)
class ControlResult:
    success: bool
    state: Optional[str] = None
    message: Optional[str] = None

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"success": self.success}
        if self.state is not None:
            payload["state"] = self.state
        if self.message is not None:
            payload["message"] = self.message
        return payload


def mask_url(url: Optional[str], limit: int = 72) -> str:
    """Shorten a (presigned) URL to ``host/filename`` for log lines."""

    text = url or ""
    try:
        parsed = urlparse(text)
    except ValueError:
        parsed = None

    if parsed is not None and parsed.hostname:
        filename = parsed.path.rsplit("/", 1)[-1]
        short = f"{parsed.hostname}/{filename}"
    else:
        short = text

    if len(short) > limit:
        return short[:limit] + "…"
    return short


def _first(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
