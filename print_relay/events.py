"""Observer channel for queue lifecycle, log lines and job status ticks.

The orchestrator publishes events without awaiting delivery: ``publish`` only
appends to an ``asyncio.Queue`` and a background task hands each event to the
registered subscribers in order. A slow or failing subscriber therefore never
stalls the polling loop.

Event kinds:

- ``queue-state-changed``: :class:`QueueStateChanged`
- ``queue-log``: :class:`QueueLog`
- ``job-status-tick``: :class:`JobStatusTick`
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Optional, Union

from .core.models import JobId, QueueState

LOGGER = logging.getLogger(__name__)


def _now() -> float:
    return time.time()


@dataclass(slots=True, frozen=True)
class QueueStateChanged:
    kind: ClassVar[str] = "queue-state-changed"

    state: QueueState
    reason: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=_now)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"state": self.state.value, **self.detail}
        if self.reason is not None:
            payload["reason"] = self.reason
        return payload


@dataclass(slots=True, frozen=True)
class QueueLog:
    kind: ClassVar[str] = "queue-log"

    message: str
    ts: float = field(default_factory=_now)

    def as_dict(self) -> Dict[str, Any]:
        return {"msg": self.message, "ts": int(self.ts * 1000)}


@dataclass(slots=True, frozen=True)
class JobStatusTick:
    """Status of the tracked job.

    ``status`` is a canonical status value while the job is spooled and
    ``"printed"`` or ``"deleted"`` once it resolved.
    """

    kind: ClassVar[str] = "job-status-tick"

    job_id: JobId
    status: str
    ts: float = field(default_factory=_now)

    def as_dict(self) -> Dict[str, Any]:
        return {"jobId": self.job_id, "status": self.status}


QueueEvent = Union[QueueStateChanged, QueueLog, JobStatusTick]
Subscriber = Callable[[QueueEvent], Union[Awaitable[None], None]]


class EventBus:
    """Fan-out of queue events to subscribers on a dedicated task."""

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._queue: Optional[asyncio.Queue[QueueEvent]] = None
        self._task: Optional[asyncio.Task[None]] = None

    def subscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            raise ValueError("Subscriber already registered")
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove(subscriber)

    def publish(self, event: QueueEvent) -> None:
        """Queue ``event`` for delivery. Never blocks."""

        if isinstance(event, QueueLog):
            LOGGER.info("%s", event.message)
        else:
            LOGGER.debug("Event %s %s", event.kind, event.as_dict())

        queue = self._ensure_running()
        queue.put_nowait(event)

    async def join(self) -> None:
        """Wait until every published event has been delivered."""

        if self._queue is not None:
            await self._queue.join()

    async def aclose(self) -> None:
        """Deliver pending events and stop the delivery task."""

        if self._task is None:
            return

        if not self._task.done():
            await self.join()
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

        self._task = None
        self._queue = None

    def _ensure_running(self) -> asyncio.Queue[QueueEvent]:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._deliver_loop(self._queue))
        return self._queue

    async def _deliver_loop(self, queue: asyncio.Queue[QueueEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                for subscriber in list(self._subscribers):
                    await self._notify(subscriber, event)
            finally:
                queue.task_done()

    async def _notify(self, subscriber: Subscriber, event: QueueEvent) -> None:
        try:
            result = subscriber(event)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Event subscriber failed handling %s", event.kind)
