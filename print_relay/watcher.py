"""Tracking of a single spooled job until it leaves the spooler.

A watch polls the spooler for one job id at a fixed interval. The job's
status is only observed, never acted on: a paused job keeps being polled
because pauses are transient printer conditions (out of paper, door open).
The watch resolves only when the job disappears, and the outcome is inferred
from the last status seen before it vanished (see
:func:`resolve_disappearance`).

Alongside the primary poll, an optional forwarder task polls the same job to
push intermediate status ticks to observers. The forwarder never influences
the outcome and is torn down together with the watch.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from .core.models import WatchOutcome
from .core.protocols import SpoolerProbe, SpoolerQueryError
from .status import CanonicalStatus, normalize_status

LOGGER = logging.getLogger(__name__)

StatusListener = Callable[[int, CanonicalStatus], Awaitable[None]]

DELETED_ON_DISAPPEAR = frozenset(
    {CanonicalStatus.DELETING, CanonicalStatus.PAUSED, CanonicalStatus.WAITING}
)


def resolve_disappearance(last_status: Optional[CanonicalStatus]) -> WatchOutcome:
    """Infer the outcome of a job that is no longer spooled.

    A job last seen deleting, paused or still queued was removed before it
    could print. Anything else, including a job that was never observed,
    counts as printed.
    """
    if last_status in DELETED_ON_DISAPPEAR:
        return WatchOutcome.DELETED
    return WatchOutcome.PRINTED


@dataclass
class WatchSession:
    printer_name: str
    job_id: int
    last_known_status: Optional[CanonicalStatus] = None
    last_reported_status: Optional[CanonicalStatus] = None
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class JobWatcher:
    """Owns at most one :class:`WatchSession` at a time."""

    def __init__(
        self,
        probe: SpoolerProbe,
        *,
        poll_interval: float = 1.0,
        forward_interval: Optional[float] = 1.0,
        max_query_errors: int = 30,
        on_status: Optional[StatusListener] = None,
    ) -> None:
        """Initialize the watcher.

        Args:
            probe: Spooler used for by-id lookups.
            poll_interval: Seconds between primary polls.
            forward_interval: Seconds between forwarder polls; ``None``
                disables the forwarder.
            max_query_errors: Consecutive failed queries after which the
                watch gives up with ``WatchOutcome.FAILED``.
            on_status: Awaited with ``(job_id, status)`` whenever the
                observer-facing status of the job changes.
        """
        self._probe = probe
        self._poll_interval = max(poll_interval, 0.0)
        self._forward_interval = forward_interval
        self._max_query_errors = max(1, max_query_errors)
        self._on_status = on_status
        self._session: Optional[WatchSession] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def session(self) -> Optional[WatchSession]:
        return self._session

    @property
    def active_task_count(self) -> int:
        """Number of live polling tasks (primary plus forwarder)."""
        return sum(1 for task in self._tasks if not task.done())

    def set_status_listener(self, listener: Optional[StatusListener]) -> None:
        self._on_status = listener

    async def watch(
        self,
        printer_name: str,
        job_id: int,
        *,
        reported_status: Optional[CanonicalStatus] = None,
    ) -> WatchOutcome:
        """Poll ``job_id`` until it leaves the spooler or the watch is cancelled.

        Any session still running is fully torn down first. ``reported_status``
        is the status observers already received for this job; it is not
        reported again. It does not count as a sighting for the
        disappearance heuristic.
        """
        await self.cancel()

        session = WatchSession(
            printer_name=printer_name,
            job_id=int(job_id),
            last_reported_status=reported_status,
        )
        self._session = session

        poll_task = asyncio.create_task(self._poll_loop(session))
        self._tasks.add(poll_task)

        forward_task: Optional[asyncio.Task] = None
        if self._forward_interval is not None:
            forward_task = asyncio.create_task(self._forward_loop(session))
            self._tasks.add(forward_task)

        try:
            return await poll_task
        finally:
            session.stop_event.set()
            if not poll_task.done():
                poll_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await poll_task
            if forward_task is not None:
                forward_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await forward_task
            self._tasks.discard(poll_task)
            if forward_task is not None:
                self._tasks.discard(forward_task)
            if self._session is session:
                self._session = None

    async def cancel(self) -> None:
        """Stop the active session and wait until its tasks have exited."""

        session = self._session
        if session is not None:
            session.stop_event.set()

        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self._tasks = {task for task in self._tasks if not task.done()}
        if self._session is session:
            self._session = None

    async def _poll_loop(self, session: WatchSession) -> WatchOutcome:
        failures = 0

        while not session.stop_event.is_set():
            try:
                entry = await self._probe.by_id(session.printer_name, session.job_id)
            except SpoolerQueryError as exc:
                failures += 1
                LOGGER.warning(
                    "Spooler query for job #%s failed (%d/%d): %s",
                    session.job_id,
                    failures,
                    self._max_query_errors,
                    exc,
                )
                if failures >= self._max_query_errors:
                    return WatchOutcome.FAILED
            else:
                failures = 0
                if entry is None:
                    outcome = resolve_disappearance(session.last_known_status)
                    LOGGER.info(
                        "Job #%s left the spooler (last=%s) -> %s",
                        session.job_id,
                        session.last_known_status.value
                        if session.last_known_status
                        else "never seen",
                        outcome.value,
                    )
                    return outcome

                status = normalize_status(entry.raw_status)
                if status != session.last_known_status:
                    session.last_known_status = status
                    await self._report(session, status)

            if await self._wait(session, self._poll_interval):
                break

        return WatchOutcome.CANCELLED

    async def _forward_loop(self, session: WatchSession) -> None:
        interval = self._forward_interval or self._poll_interval

        # Let the primary poll take the first look.
        if await self._wait(session, interval):
            return

        while not session.stop_event.is_set():
            try:
                entry = await self._probe.by_id(session.printer_name, session.job_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.debug("Forwarder poll for job #%s failed: %s", session.job_id, exc)
            else:
                if entry is not None:
                    await self._report(session, normalize_status(entry.raw_status))

            if await self._wait(session, interval):
                return

    async def _report(self, session: WatchSession, status: CanonicalStatus) -> None:
        async with session.lock:
            if status == session.last_reported_status:
                return
            session.last_reported_status = status

        if session.stop_event.is_set() or self._on_status is None:
            return

        try:
            await self._on_status(session.job_id, status)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Status listener failed for job #%s", session.job_id)

    @staticmethod
    async def _wait(session: WatchSession, seconds: float) -> bool:
        """Sleep ``seconds`` unless stopped first. Returns True when stopped."""
        try:
            await asyncio.wait_for(session.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True
