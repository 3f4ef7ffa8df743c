"""Queue orchestration: fetch, dispatch, discover, watch, report.

The orchestrator runs one sequential loop task per instance::

    listening -> dispatching -> tracking / paused-tracking -> listening
                                         \\-> stopping -> stopped

Each iteration fetches the next remote job, submits it to the printer,
locates the resulting spool entry and watches it until it leaves the
spooler. A printed job is reported back and the loop moves on; a deleted
job is an operator abort and stops the loop. Every stop, whether requested
from outside or caused by a failure, passes through ``stopping`` and ends
with a single ``stopped`` event carrying the reason.

Dispatch policy: submission races a short deadline. Some print backends do
not return until long after the job was spooled, so when the deadline wins
the job is assumed spooled and discovery starts while the submission keeps
running in the background.

Instant completion: when discovery never sees a spool entry and the spooler
answered normally, the job is treated as printed. A job that was never
spooled cannot be told apart from one that printed between two polls.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .config import QueueConfig
from .core.models import (
    ControlResult,
    DiscoveryResult,
    DispatchResult,
    JobId,
    LastSuccess,
    QueueState,
    RemoteJob,
    WatchOutcome,
    mask_url,
)
from .core.protocols import (
    PrintDispatcher,
    RemoteQueueClient,
    SpoolerProbe,
    SpoolerQueryError,
)
from .events import EventBus, JobStatusTick, QueueLog, QueueStateChanged
from .status import CanonicalStatus, normalize_status
from .watcher import JobWatcher

LOGGER = logging.getLogger(__name__)

EXPIRED_LINK_PATTERN = re.compile(r"403|AccessDenied|Expired|Signature", re.IGNORECASE)

RACE_TIMEOUT_MESSAGE = "spool assumed (race timeout)"

_ALWAYS_EMIT_STATES = frozenset({QueueState.STOPPING, QueueState.STOPPED})


def is_expired_link_error(message: Optional[str]) -> bool:
    """Return True when a dispatch failure points at an expired document link."""
    return bool(EXPIRED_LINK_PATTERN.search(message or ""))


@dataclass(slots=True, frozen=True)
class PipelineResult:
    outcome: Optional[WatchOutcome] = None
    stop_reason: Optional[str] = None
    message: Optional[str] = None
    spool_id: Optional[int] = None


class QueueOrchestrator:
    """Drives the remote queue through the local printer, one job at a time."""

    def __init__(
        self,
        *,
        remote: RemoteQueueClient,
        dispatcher: PrintDispatcher,
        probe: SpoolerProbe,
        events: Optional[EventBus] = None,
        config: Optional[QueueConfig] = None,
        watcher: Optional[JobWatcher] = None,
    ) -> None:
        self._config = config or QueueConfig()
        self._remote = remote
        self._dispatcher = dispatcher
        self._probe = probe
        self._events = events or EventBus()
        self._watcher = watcher or JobWatcher(
            probe,
            poll_interval=self._config.watch_poll_seconds,
            forward_interval=(
                self._config.forward_poll_seconds
                if self._config.forwarder_enabled
                else None
            ),
            max_query_errors=self._config.max_watch_query_errors,
        )
        self._watcher.set_status_listener(self._handle_status_change)

        self._state = QueueState.IDLE
        self._state_signature: Optional[tuple] = None
        self._printer_name: Optional[str] = None
        self._token: Optional[str] = None
        self._last_success: Optional[LastSuccess] = None
        self._stop_reason: Optional[str] = None
        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._control_lock = asyncio.Lock()
        self._pending_dispatches: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def printer_name(self) -> Optional[str]:
        return self._printer_name

    @property
    def last_success(self) -> Optional[LastSuccess]:
        return self._last_success

    @property
    def stop_reason(self) -> Optional[str]:
        return self._stop_reason

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def watcher(self) -> JobWatcher:
        return self._watcher

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def wait_stopped(self) -> Optional[str]:
        """Wait for the current loop to finish and return its stop reason."""

        task = self._loop_task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.shield(task)
        return self._stop_reason

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------
    async def start(self, printer_name: str, token: Optional[str] = None) -> ControlResult:
        """Start listening for remote jobs on ``printer_name``.

        A loop that is already running is stopped first (reason
        ``retry-start``).
        """
        if not printer_name:
            return ControlResult(False, message="No printer selected.")

        async with self._control_lock:
            await self._ensure_stopped("retry-start")

            self._printer_name = printer_name
            self._token = token or None
            self._stop_reason = None
            self._stop_event = asyncio.Event()

            self._set_state(QueueState.LISTENING, detail={"printerName": printer_name})
            self._loop_task = asyncio.create_task(self._run_loop(printer_name))

        return ControlResult(True, state=QueueState.LISTENING.value)

    async def stop(self, reason: str = "stop") -> ControlResult:
        """Stop the loop and any active watch. Safe to call repeatedly."""

        async with self._control_lock:
            await self._ensure_stopped(reason)
        return ControlResult(True, state=QueueState.STOPPED.value)

    async def reprint_last(self, printer_name: Optional[str] = None) -> ControlResult:
        """Print the last successfully printed document once more.

        Any running loop is stopped first. The reprint runs dispatch,
        discovery and watch a single time and does not resume the loop.
        """
        async with self._control_lock:
            await self._ensure_stopped("reprint-last")

            last = self._last_success
            if last is None:
                return ControlResult(
                    False, message="No previous document available to reprint."
                )

            target = printer_name or self._printer_name
            if not target:
                return ControlResult(False, message="No printer selected.")

            self._stop_reason = None
            self._stop_event = asyncio.Event()
            task = asyncio.create_task(self._run_reprint(last, target))
            self._loop_task = task

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return ControlResult(False, message="Reprint cancelled.")
            raise

    async def aclose(self) -> None:
        """Stop the loop and abandon submissions still running past their race."""

        await self.stop("shutdown")

        pending = list(self._pending_dispatches)
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._pending_dispatches.clear()

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------
    async def _ensure_stopped(self, reason: str) -> None:
        self._stop_reason = reason
        self._set_state(QueueState.STOPPING, reason=reason)
        self._stop_event.set()

        await self._watcher.cancel()

        task = self._loop_task
        if task is not None and not task.done():
            done, _ = await asyncio.wait(
                {task}, timeout=self._config.stop_grace_seconds
            )
            if not done:
                LOGGER.warning(
                    "Queue loop did not stop within %.1fs; cancelling",
                    self._config.stop_grace_seconds,
                )
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            # The loop task emits the final stopped state itself.
        else:
            self._set_state(QueueState.STOPPED, reason=reason)

        self._loop_task = None

    def _halt(self, reason: str) -> None:
        """Stop from inside the loop task."""
        self._stop_reason = reason
        self._stop_event.set()
        self._set_state(QueueState.STOPPING, reason=reason)

    def _set_state(
        self,
        state: QueueState,
        *,
        reason: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        detail = dict(detail or {})
        signature = (state, reason, tuple(sorted(detail.items())))
        if state not in _ALWAYS_EMIT_STATES and signature == self._state_signature:
            return

        previous = self._state
        self._state = state
        self._state_signature = signature

        if previous != state:
            LOGGER.info(
                "Queue state transition %s -> %s%s",
                previous.value,
                state.value,
                f" ({reason})" if reason else "",
            )
        self._events.publish(QueueStateChanged(state=state, reason=reason, detail=detail))

    def _log(self, message: str) -> None:
        self._events.publish(QueueLog(message=message))

    def _tick(self, job_id: JobId, status: str) -> None:
        self._events.publish(JobStatusTick(job_id=job_id, status=status))

    async def _wait(self, seconds: float) -> bool:
        """Sleep ``seconds`` unless a stop is requested. Returns True when stopped."""
        if self._stop_event.is_set():
            return True
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _handle_status_change(self, job_id: int, status: CanonicalStatus) -> None:
        if self._stop_event.is_set():
            return
        self._tick(job_id, status.value)
        if status == CanonicalStatus.PAUSED:
            self._set_state(QueueState.PAUSED_TRACKING, detail={"jobId": job_id})
        else:
            self._set_state(QueueState.TRACKING, detail={"jobId": job_id})

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------
    async def _run_loop(self, printer_name: str) -> None:
        try:
            while not self._stop_event.is_set():
                job = await self._fetch_next()
                if self._stop_event.is_set():
                    break

                if job is None:
                    self._set_state(
                        QueueState.LISTENING, detail={"printerName": printer_name}
                    )
                    if await self._wait(self._config.idle_poll_seconds):
                        break
                    continue

                api_id = job.id if job.id is not None else "n/a"
                self._set_state(QueueState.DISPATCHING, detail={"apiId": job.id})
                self._log(f"[Queue] Printing {job.label} (apiId: {api_id})")

                result = await self._run_pipeline(
                    printer_name, job.url, instant_tick_id="instant"
                )

                if result.stop_reason is not None:
                    self._halt(result.stop_reason)
                    break

                if result.outcome == WatchOutcome.PRINTED:
                    self._last_success = LastSuccess(
                        url=job.url, filename=job.filename, remote_id=job.id
                    )
                    await self._report_printed(job)
                    self._log("[Queue] Printed successfully, requesting next.")
                    if not self._stop_event.is_set():
                        self._set_state(
                            QueueState.LISTENING, detail={"printerName": printer_name}
                        )
                    continue

                if result.outcome == WatchOutcome.DELETED:
                    self._log("[Queue] Job deleted, stopping queue.")
                    self._halt("deleted")
                    break

                # Cancelled: a stop was requested while the job was in flight.
                break
        except asyncio.CancelledError:
            if self._stop_reason is None:
                self._stop_reason = "cancelled"
            raise
        except Exception as exc:
            LOGGER.exception("Queue loop failed")
            self._log(f"[Queue] Unexpected error: {exc}")
            self._halt("loop-error")
        finally:
            self._stop_event.set()
            await self._watcher.cancel()
            self._set_state(QueueState.STOPPED, reason=self._stop_reason or "done")

    async def _run_reprint(self, last: LastSuccess, printer_name: str) -> ControlResult:
        api_id = last.remote_id if last.remote_id is not None else "n/a"
        result = ControlResult(False, message="Reprint failed.")

        try:
            self._set_state(
                QueueState.DISPATCHING, detail={"apiId": last.remote_id, "reprint": True}
            )
            self._log(
                f"[Queue] Reprinting previous document: "
                f"{last.filename or mask_url(last.url)} (apiId: {api_id})"
            )

            pipeline = await self._run_pipeline(
                printer_name, last.url, instant_tick_id="reprint"
            )

            if pipeline.stop_reason is not None:
                self._stop_reason = f"reprint-{pipeline.stop_reason}"
                result = ControlResult(
                    False, message=pipeline.message or pipeline.stop_reason
                )
            elif pipeline.outcome == WatchOutcome.PRINTED:
                self._stop_reason = "reprint-printed"
                self._log("[Queue] Reprint completed successfully.")
                result = ControlResult(True, state=WatchOutcome.PRINTED.value)
            elif pipeline.outcome == WatchOutcome.DELETED:
                self._stop_reason = "reprint-deleted"
                self._log("[Queue] Reprint ended: deleted.")
                result = ControlResult(True, state=WatchOutcome.DELETED.value)
            else:
                result = ControlResult(True, state=WatchOutcome.CANCELLED.value)
        except asyncio.CancelledError:
            if self._stop_reason is None:
                self._stop_reason = "cancelled"
            raise
        except Exception as exc:
            LOGGER.exception("Reprint failed")
            self._log(f"[Queue] Reprint exception: {exc}")
            self._stop_reason = "reprint-error"
            result = ControlResult(False, message=str(exc) or "Reprint failed.")
        finally:
            self._stop_event.set()
            await self._watcher.cancel()
            self._set_state(QueueState.STOPPED, reason=self._stop_reason or "reprint-done")

        return result

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------
    async def _run_pipeline(
        self, printer_name: str, document_ref: str, *, instant_tick_id: str
    ) -> PipelineResult:
        sent = await self._dispatch(printer_name, document_ref)
        self._log(
            f"[Queue] Spool step done: {'ok' if sent.success else 'err'} ({sent.message})"
        )

        if not sent.success:
            expired = is_expired_link_error(sent.message)
            hint = " (likely expired presigned URL)" if expired else ""
            self._log(f"[Queue] Print error: {sent.message}{hint}")
            return PipelineResult(
                stop_reason="url-expired" if expired else "print-error",
                message=sent.message,
            )

        found = await self._discover(printer_name)
        if found is None:
            return PipelineResult(outcome=WatchOutcome.CANCELLED)

        if not found.success:
            self._log(f"[Queue] Could not fetch latest job: {found.message}")
            return PipelineResult(stop_reason="job-lookup-failed", message=found.message)

        entry = found.entry
        if entry is None:
            self._log("[Queue] Job finished instantly (no queue entry).")
            self._tick(instant_tick_id, WatchOutcome.PRINTED.value)
            return PipelineResult(outcome=WatchOutcome.PRINTED)

        # A stop may have landed while the lookup was in flight.
        if self._stop_event.is_set():
            return PipelineResult(outcome=WatchOutcome.CANCELLED)

        status = normalize_status(entry.raw_status)
        self._log(f"[Queue] Watching job #{entry.id} (now={status.value}).")
        self._tick(entry.id, status.value)
        self._set_state(
            QueueState.PAUSED_TRACKING
            if status == CanonicalStatus.PAUSED
            else QueueState.TRACKING,
            detail={"jobId": entry.id},
        )

        outcome = await self._watcher.watch(
            printer_name, entry.id, reported_status=status
        )

        if outcome == WatchOutcome.FAILED:
            self._log(f"[Queue] Watch error: spooler unreachable for job #{entry.id}.")
            return PipelineResult(
                stop_reason="watch-error",
                message="Spooler could not be queried",
                spool_id=entry.id,
            )

        if outcome in (WatchOutcome.PRINTED, WatchOutcome.DELETED):
            self._tick(entry.id, outcome.value)

        return PipelineResult(outcome=outcome, spool_id=entry.id)

    async def _fetch_next(self) -> Optional[RemoteJob]:
        try:
            job = await self._remote.fetch_next(self._token)
        except Exception as exc:
            self._log(f"[Queue] API error: {exc}")
            return None

        if job is None or not job.url:
            return None
        return job

    async def _dispatch(self, printer_name: str, document_ref: str) -> DispatchResult:
        """Submit the document, racing the submission against the deadline."""

        task = asyncio.create_task(self._submit(printer_name, document_ref))
        try:
            done, _ = await asyncio.wait(
                {task}, timeout=self._config.dispatch_race_seconds
            )
        except asyncio.CancelledError:
            self._track_late_dispatch(task)
            raise

        if task in done:
            return task.result()

        self._track_late_dispatch(task)
        return DispatchResult(True, RACE_TIMEOUT_MESSAGE)

    async def _submit(self, printer_name: str, document_ref: str) -> DispatchResult:
        try:
            return await self._dispatcher.submit(printer_name, document_ref)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Dispatch raised: %s", exc, exc_info=True)
            return DispatchResult(False, str(exc) or "print error")

    def _track_late_dispatch(self, task: asyncio.Task) -> None:
        self._pending_dispatches.add(task)
        task.add_done_callback(self._on_late_dispatch_done)

    def _on_late_dispatch_done(self, task: asyncio.Task) -> None:
        self._pending_dispatches.discard(task)
        if task.cancelled():
            return
        result = task.result()
        if result.success:
            LOGGER.debug("Late dispatch completed: %s", result.message)
        else:
            LOGGER.warning(
                "Dispatch failed after the race deadline: %s", result.message
            )

    async def _discover(self, printer_name: str) -> Optional[DiscoveryResult]:
        """Locate the spool entry of the job just dispatched.

        Returns ``None`` when a stop was requested meanwhile.
        """
        if await self._wait(self._config.discovery_settle_seconds):
            return None

        attempts = max(1, self._config.discovery_attempts)
        for attempt in range(1, attempts + 1):
            try:
                entry = await self._probe.latest(printer_name)
            except SpoolerQueryError as exc:
                if self._stop_event.is_set():
                    return None
                LOGGER.warning(
                    "Latest job lookup failed (try %d/%d): %s", attempt, attempts, exc
                )
                if attempt >= attempts:
                    return DiscoveryResult(
                        False, message=str(exc) or "latest lookup failed"
                    )
            else:
                if self._stop_event.is_set():
                    return None
                if entry is not None:
                    status = normalize_status(entry.raw_status)
                    self._log(
                        f"[Queue] Latest job found (try {attempt}/{attempts}): "
                        f'#{entry.id}, raw="{entry.raw_status}", now="{status.value}"'
                    )
                    return DiscoveryResult(True, entry=entry)

            if attempt < attempts and await self._wait(
                self._config.discovery_interval_seconds
            ):
                return None

        return DiscoveryResult(True)

    async def _report_printed(self, job: RemoteJob) -> None:
        if job.id is None:
            return

        try:
            updated = await self._remote.report_printed(job.id, self._token)
        except Exception as exc:
            self._log(f"[Queue] Failed to update status (id={job.id}): {exc}")
            return

        if updated:
            self._log(f"[Queue] Status updated to printed (id={job.id}).")
        else:
            self._log(f"[Queue] Failed to update status (id={job.id}).")
