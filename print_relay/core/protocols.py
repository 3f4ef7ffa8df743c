"""Protocol definitions for the relay's external collaborators."""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from .models import DispatchResult, JobId, RemoteJob, SpoolEntry


class SpoolerQueryError(RuntimeError):
    """Raised when the host spooler could not be queried.

    A job that is simply absent from the spooler is not an error; probes
    return ``None`` for that case.
    """


class RemoteQueueError(RuntimeError):
    """Raised when the remote print queue API call fails."""


class ConfigurationError(RuntimeError):
    """Raised when the configured backends cannot be used on this host."""


@runtime_checkable
class SpoolerProbe(Protocol):
    """Read-only view of the host print spooler."""

    async def latest(self, printer_name: str) -> Optional[SpoolEntry]:
        """Return the most recently submitted job on ``printer_name``.

        Raises:
            SpoolerQueryError: If the spooler could not be queried.
        """
        ...

    async def by_id(self, printer_name: str, job_id: int) -> Optional[SpoolEntry]:
        """Return the job ``job_id`` on ``printer_name`` if it is still spooled.

        Raises:
            SpoolerQueryError: If the spooler could not be queried.
        """
        ...


@runtime_checkable
class PrintDispatcher(Protocol):
    """Submits documents to a printer without waiting for completion."""

    async def submit(self, printer_name: str, document_ref: str) -> DispatchResult:
        """Enqueue ``document_ref`` (URL or path) on ``printer_name``."""
        ...


@runtime_checkable
class RemoteQueueClient(Protocol):
    """Remote API handing out pending jobs and receiving completions."""

    async def fetch_next(self, token: Optional[str] = None) -> Optional[RemoteJob]:
        """Return the next pending job or ``None`` when the queue is empty.

        Raises:
            RemoteQueueError: If the API could not be reached or answered
                with an error.
        """
        ...

    async def report_printed(self, job_id: JobId, token: Optional[str] = None) -> bool:
        """Mark ``job_id`` as printed. Returns ``False`` when the update failed."""
        ...


__all__ = [
    "ConfigurationError",
    "PrintDispatcher",
    "RemoteQueueClient",
    "RemoteQueueError",
    "SpoolerProbe",
    "SpoolerQueryError",
]
