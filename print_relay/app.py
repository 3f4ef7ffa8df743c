"""Main application entry-point for print-relay."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from typing import Optional

import aiohttp

from .adapters import (
    CommandPrintDispatcher,
    HttpRemoteQueueClient,
    LpqSpoolerProbe,
    PowerShellSpoolerProbe,
)
from .config import PrinterConfig, RelayConfig, load_config
from .core import (
    ConfigurationError,
    PrintDispatcher,
    RemoteQueueClient,
    SpoolerProbe,
)
from .events import EventBus
from .health import HealthReporter, HealthServer
from .logging import configure_logging
from .orchestrator import QueueOrchestrator

LOGGER = logging.getLogger(__name__)

# Stops requested by a person rather than caused by a failure.
OPERATOR_STOP_REASONS = frozenset({"deleted", "stop", "shutdown", "cancelled"})


def build_probe(config: PrinterConfig) -> SpoolerProbe:
    """Create the spooler probe selected by ``printer.backend``."""

    backend = config.backend
    if backend == "auto":
        if os.name == "nt":
            backend = "powershell"
        elif shutil.which("lpq"):
            backend = "lpq"
        else:
            raise ConfigurationError(
                "No spooler backend available: set printer.backend explicitly"
            )

    if backend == "powershell":
        return PowerShellSpoolerProbe(
            executable=config.powershell_path,
            timeout=config.query_timeout_seconds,
        )
    if backend == "lpq":
        return LpqSpoolerProbe(timeout=config.query_timeout_seconds)

    raise ConfigurationError(f"Unsupported spooler backend: {backend}")


class PrintRelayApp:
    """Wires the queue orchestrator to the remote API and the local printer.

    Collaborators can be injected for testing; anything left out is built
    from the configuration when :meth:`run` starts.
    """

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        *,
        remote: Optional[RemoteQueueClient] = None,
        dispatcher: Optional[PrintDispatcher] = None,
        probe: Optional[SpoolerProbe] = None,
    ) -> None:
        self._config = config or load_config()
        self._remote = remote
        self._dispatcher = dispatcher
        self._probe = probe
        self._session: Optional[aiohttp.ClientSession] = None
        self._events = EventBus()
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._orchestrator: Optional[QueueOrchestrator] = None

    @property
    def orchestrator(self) -> Optional[QueueOrchestrator]:
        return self._orchestrator

    @property
    def health(self) -> HealthReporter:
        return self._health

    async def run(
        self, printer_name: Optional[str] = None, token: Optional[str] = None
    ) -> Optional[str]:
        """Run the queue until it stops and return the stop reason."""

        printer = printer_name or self._config.printer.name
        if not printer:
            raise ConfigurationError(
                "No printer selected: pass --printer or set printer.name"
            )

        LOGGER.info("print-relay starting with config: %s", self._config.path)
        self._build_components()
        assert self._orchestrator is not None

        try:
            await self._start_health_server()
            result = await self._orchestrator.start(
                printer, token or self._config.api.token
            )
            if not result.success:
                raise ConfigurationError(result.message or "Queue failed to start")
            return await self._orchestrator.wait_stopped()
        except asyncio.CancelledError:
            LOGGER.info("print-relay received shutdown signal")
            raise
        finally:
            await self._stop_services()

    @classmethod
    def start(
        cls,
        config: Optional[RelayConfig] = None,
        *,
        printer_name: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Optional[str]:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
            max_bytes=instance._config.logging.max_bytes,
            backup_count=instance._config.logging.backup_count,
        )
        try:
            return asyncio.run(instance.run(printer_name, token))
        except KeyboardInterrupt:
            LOGGER.info("print-relay received shutdown signal")
            return "shutdown"

    def _build_components(self) -> None:
        api = self._config.api
        if self._remote is None or self._dispatcher is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=api.timeout_seconds)
            )
        if self._remote is None:
            self._remote = HttpRemoteQueueClient(api, session=self._session)
        if self._dispatcher is None:
            self._dispatcher = CommandPrintDispatcher(
                self._config.printer,
                session=self._session,
                download_timeout=api.timeout_seconds,
            )
        if self._probe is None:
            self._probe = build_probe(self._config.printer)

        self._events.subscribe(self._health.handle_event)
        self._orchestrator = QueueOrchestrator(
            remote=self._remote,
            dispatcher=self._dispatcher,
            probe=self._probe,
            events=self._events,
            config=self._config.queue,
        )

    async def _start_health_server(self) -> None:
        health = self._config.health
        if not health.enabled or health.port <= 0:
            return

        server = HealthServer(self._health, health.host, health.port)
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self._health.update("health-endpoint", True, server.url)

    async def _stop_services(self) -> None:
        if self._orchestrator is not None:
            await self._orchestrator.aclose()

        await self._events.aclose()
        self._events.unsubscribe(self._health.handle_event)

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        if self._session is not None:
            await self._session.close()
            self._session = None
