"""Document dispatch to a local printer through an external print command.

Remote documents (usually presigned object-store URLs) are downloaded into
the spool download directory and handed to a print command. The command is
a template with ``{printer}`` and ``{path}`` placeholders; the default is
``lp -d {printer} {path}`` on POSIX hosts and the shell ``PrintTo`` verb
on Windows.

Failures are returned as :class:`DispatchResult` messages. Download
failures keep the HTTP status and the server's error text so that expired
links (``403``/``AccessDenied``) can be recognised by the caller.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
import time
import uuid
from pathlib import Path
from typing import List, Optional, Sequence
from urllib.parse import unquote, urlparse

import aiohttp

from ..config import PrinterConfig
from ..core import DispatchResult, PrintDispatcher
from .process import CommandError, run_command
from .spooler import escape_ps_string, resolve_powershell

LOGGER = logging.getLogger(__name__)

POSIX_PRINT_COMMAND = ("lp", "-d", "{printer}", "{path}")


class DocumentFetchError(RuntimeError):
    """Raised when a remote document cannot be downloaded."""


def default_print_command(powershell: Optional[str] = None) -> List[str]:
    if os.name != "nt":
        return list(POSIX_PRINT_COMMAND)
    return [
        resolve_powershell(powershell),
        "-NoProfile",
        "-NonInteractive",
        "-Command",
        'Start-Process -FilePath "{path}" -Verb PrintTo '
        "-ArgumentList '\"{printer}\"' -WindowStyle Hidden -Wait",
    ]


def build_print_argv(
    template: Sequence[str], printer_name: str, path: Path
) -> List[str]:
    """Substitute ``{printer}`` and ``{path}`` in every template token."""

    windows_shell = any(token.lower() == "-command" for token in template)
    # The printer sits in a single-quoted literal, the path in a double-quoted one.
    printer = printer_name.replace("'", "''") if windows_shell else printer_name
    path_text = escape_ps_string(str(path)) if windows_shell else str(path)

    return [
        token.replace("{printer}", printer).replace("{path}", path_text)
        for token in template
    ]


class CommandPrintDispatcher(PrintDispatcher):
    """Downloads a document and submits it with the configured print command."""

    def __init__(
        self,
        config: PrinterConfig,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        download_timeout: float = 15.0,
    ) -> None:
        self.config = config
        self._session = session
        self._owns_session = session is None
        self._download_timeout = aiohttp.ClientTimeout(total=download_timeout)
        if config.dispatch_command:
            self._template = shlex.split(config.dispatch_command, posix=os.name != "nt")
        else:
            self._template = default_print_command(config.powershell_path)

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def submit(self, printer_name: str, document_ref: str) -> DispatchResult:
        try:
            path = await self._materialize(document_ref)
        except DocumentFetchError as exc:
            return DispatchResult(False, str(exc))

        argv = build_print_argv(self._template, printer_name, path)
        LOGGER.debug("Dispatching %s to %s", path.name, printer_name)

        try:
            code, stdout, stderr = await run_command(
                argv, timeout=self.config.dispatch_timeout_seconds
            )
        except CommandError as exc:
            return DispatchResult(False, str(exc))

        if code != 0:
            detail = stderr or stdout or f"print command exited with code {code}"
            return DispatchResult(False, detail)

        return DispatchResult(True, f"Print sent to spooler ({path.name})")

    async def _materialize(self, document_ref: str) -> Path:
        parsed = urlparse(document_ref)
        if parsed.scheme not in ("http", "https"):
            local = Path(document_ref).expanduser()
            if not local.is_file():
                raise DocumentFetchError(f"Document not found: {document_ref}")
            return local

        target_dir = self.config.download_dir
        target_dir.mkdir(parents=True, exist_ok=True)
        self._prune_downloads(target_dir)

        name = Path(unquote(parsed.path)).name or "document.pdf"
        target = target_dir / f"{uuid.uuid4().hex[:12]}-{name}"

        session = self._ensure_session()
        try:
            async with session.get(document_ref, timeout=self._download_timeout) as response:
                if response.status >= 400:
                    detail = (await response.text()).strip()
                    raise DocumentFetchError(
                        f"Fetch {response.status}: {detail[:300] or response.reason}"
                    )
                with target.open("wb") as stream:
                    async for chunk in response.content.iter_chunked(64 * 1024):
                        stream.write(chunk)
        except asyncio.TimeoutError as exc:
            with contextlib.suppress(OSError):
                target.unlink()
            raise DocumentFetchError("Fetch timed out") from exc
        except aiohttp.ClientError as exc:
            with contextlib.suppress(OSError):
                target.unlink()
            raise DocumentFetchError(f"Fetch failed: {exc}") from exc

        return target

    def _prune_downloads(self, directory: Path) -> None:
        retention = self.config.download_retention_seconds
        if retention <= 0:
            return
        cutoff = time.time() - retention
        for candidate in directory.iterdir():
            with contextlib.suppress(OSError):
                if candidate.is_file() and candidate.stat().st_mtime < cutoff:
                    candidate.unlink()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._download_timeout)
        return self._session
