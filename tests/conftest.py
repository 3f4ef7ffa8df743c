import asyncio
from typing import Any, Callable, List, Optional

import pytest

from print_relay.config import QueueConfig
from print_relay.core import DispatchResult, RemoteJob, SpoolEntry
from print_relay.events import (
    EventBus,
    JobStatusTick,
    QueueEvent,
    QueueLog,
    QueueStateChanged,
)


def entry(job_id: int, raw_status: str, document: str = "doc.pdf") -> SpoolEntry:
    return SpoolEntry(id=job_id, document=document, owner="relay", raw_status=raw_status)


def _next_item(script: List[Any]) -> Any:
    # The last scripted item repeats forever.
    if not script:
        return None
    item = script.pop(0) if len(script) > 1 else script[0]
    if isinstance(item, BaseException):
        raise item
    return item


class ScriptedProbe:
    """Spooler probe answering from per-method scripts."""

    def __init__(
        self,
        *,
        latest: Optional[List[Any]] = None,
        by_id: Optional[List[Any]] = None,
        latest_delay: float = 0.0,
    ) -> None:
        self.latest_script = list(latest or [])
        self.latest_delay = latest_delay
        self.by_id_script = list(by_id or [])
        self.latest_calls = 0
        self.by_id_calls = 0

    async def latest(self, printer_name: str) -> Optional[SpoolEntry]:
        self.latest_calls += 1
        if self.latest_delay:
            await asyncio.sleep(self.latest_delay)
        return _next_item(self.latest_script)

    async def by_id(self, printer_name: str, job_id: int) -> Optional[SpoolEntry]:
        self.by_id_calls += 1
        return _next_item(self.by_id_script)


class FakeDispatcher:
    def __init__(
        self,
        result: Optional[DispatchResult] = None,
        *,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ) -> None:
        self.result = result or DispatchResult(True, "sent")
        self.delay = delay
        self.error = error
        self.calls: List[tuple[str, str]] = []
        self.cancelled = False
        self.completed = False

    async def submit(self, printer_name: str, document_ref: str) -> DispatchResult:
        self.calls.append((printer_name, document_ref))
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        self.completed = True
        if self.error is not None:
            raise self.error
        return self.result


class FakeRemote:
    """Remote queue handing out scripted jobs once, then nothing."""

    def __init__(self, jobs: Optional[List[Any]] = None, *, report_ok: bool = True) -> None:
        self.jobs = list(jobs or [])
        self.report_ok = report_ok
        self.reported: List[Any] = []
        self.tokens: List[Optional[str]] = []

    async def fetch_next(self, token: Optional[str] = None) -> Optional[RemoteJob]:
        self.tokens.append(token)
        if not self.jobs:
            return None
        item = self.jobs.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def report_printed(self, job_id: Any, token: Optional[str] = None) -> bool:
        self.reported.append(job_id)
        return self.report_ok


class EventRecorder:
    def __init__(self, bus: EventBus) -> None:
        self.events: List[QueueEvent] = []
        bus.subscribe(self.events.append)

    def states(self) -> List[tuple[str, Optional[str]]]:
        return [
            (event.state.value, event.reason)
            for event in self.events
            if isinstance(event, QueueStateChanged)
        ]

    def ticks(self) -> List[tuple[Any, str]]:
        return [
            (event.job_id, event.status)
            for event in self.events
            if isinstance(event, JobStatusTick)
        ]

    def logs(self) -> List[str]:
        return [event.message for event in self.events if isinstance(event, QueueLog)]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig(
        idle_poll_seconds=0.01,
        dispatch_race_seconds=0.5,
        discovery_settle_seconds=0.0,
        discovery_attempts=3,
        discovery_interval_seconds=0.01,
        watch_poll_seconds=0.01,
        forwarder_enabled=False,
        forward_poll_seconds=0.01,
        max_watch_query_errors=3,
        stop_grace_seconds=1.0,
    )
