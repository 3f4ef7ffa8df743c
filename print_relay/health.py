"""Health reporting utilities for print-relay."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from aiohttp import web

from .core.models import QueueState
from .events import JobStatusTick, QueueEvent, QueueLog, QueueStateChanged

LOGGER = logging.getLogger(__name__)

HEALTHY_STATES = frozenset(
    {
        QueueState.LISTENING,
        QueueState.DISPATCHING,
        QueueState.TRACKING,
        QueueState.PAUSED_TRACKING,
    }
)


def _timestamp(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="seconds")


@dataclass(slots=True)
class ComponentHealth:
    """Health of an auxiliary component such as the ``/healthz`` endpoint.

    ``since`` marks the last flip between healthy and unhealthy, so a
    component failing repeatedly keeps its original failure time.
    """

    name: str
    healthy: bool
    detail: Optional[str] = None
    since: float = field(default_factory=time.time)

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "since": _timestamp(self.since),
        }


class HealthReporter:
    """Mirrors queue events into a snapshot served by :class:`HealthServer`.

    Register :meth:`handle_event` on the event bus. Auxiliary components
    (the endpoint itself, for instance) are recorded with :meth:`update`.
    """

    def __init__(self) -> None:
        self._status: Dict[str, ComponentHealth] = {}
        self._queue_state: QueueState = QueueState.IDLE
        self._queue_reason: Optional[str] = None
        self._queue_updated: Optional[float] = None
        self._last_tick: Optional[JobStatusTick] = None
        self._last_log: Optional[QueueLog] = None
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            previous = self._status.get(name)
            component = ComponentHealth(name=name, healthy=healthy, detail=detail)
            if previous is not None and previous.healthy == healthy:
                component.since = previous.since
            self._status[name] = component

    async def handle_event(self, event: QueueEvent) -> None:
        async with self._lock:
            if isinstance(event, QueueStateChanged):
                self._queue_state = event.state
                self._queue_reason = event.reason
                self._queue_updated = event.ts
            elif isinstance(event, JobStatusTick):
                self._last_tick = event
            elif isinstance(event, QueueLog):
                self._last_log = event

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components = [status.as_dict() for status in self._status.values()]
            state = self._queue_state
            queue: Dict[str, Any] = {"state": state.value}
            if self._queue_reason is not None:
                queue["reason"] = self._queue_reason
            if self._queue_updated is not None:
                queue["updatedAt"] = _timestamp(self._queue_updated)
            tick = self._last_tick
            log = self._last_log

        healthy = state in HEALTHY_STATES and all(
            item["healthy"] for item in components
        )

        payload: Dict[str, object] = {
            "status": "ok" if healthy else "degraded",
            "queue": queue,
            "components": components,
        }
        if tick is not None:
            payload["lastJob"] = {**tick.as_dict(), "updatedAt": _timestamp(tick.ts)}
        if log is not None:
            payload["lastLog"] = {"message": log.message, "updatedAt": _timestamp(log.ts)}
        return payload


class HealthServer:
    """Serves :meth:`HealthReporter.snapshot` on ``GET /healthz``.

    The endpoint answers 200 while the queue is working and 503 once it has
    stopped or a component is unhealthy, so a service manager can restart
    the relay.
    """

    path = "/healthz"

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    @property
    def url(self) -> Optional[str]:
        """Address actually bound, or ``None`` before :meth:`start`."""
        if self._runner is None or not self._runner.addresses:
            return None
        host, port = self._runner.addresses[0][:2]
        return f"http://{host}:{port}{self.path}"

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get(self.path, self._handle_health)

        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        self._site = site
        LOGGER.info("Health endpoint listening on %s", self.url)

    async def stop(self) -> None:
        runner, self._runner, self._site = self._runner, None, None
        if runner is not None:
            await runner.cleanup()

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(
            snapshot, status=status, headers={"Cache-Control": "no-store"}
        )
