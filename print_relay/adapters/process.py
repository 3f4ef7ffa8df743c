"""Subprocess helper shared by the spooler and dispatch backends."""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from typing import Optional, Sequence


class CommandError(RuntimeError):
    """Raised when a helper process cannot be started or overruns its timeout."""


async def run_command(
    argv: Sequence[str],
    *,
    timeout: float,
    stdin: Optional[bytes] = None,
) -> tuple[int, str, str]:
    """Run ``argv`` and return ``(returncode, stdout, stderr)``.

    Raises:
        CommandError: If the process cannot be started or exceeds ``timeout``.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise CommandError(f"Could not start {argv[0]}: {exc}") from exc

    try:
        async with asyncio.timeout(timeout):
            stdout, stderr = await process.communicate(stdin)
    except asyncio.TimeoutError as exc:
        await _reap(process)
        raise CommandError(
            f"{Path(argv[0]).name} timed out after {timeout:.1f}s"
        ) from exc
    except asyncio.CancelledError:
        await _reap(process)
        raise

    return (
        process.returncode or 0,
        stdout.decode("utf-8", errors="replace").strip(),
        stderr.decode("utf-8", errors="replace").strip(),
    )


async def _reap(process: asyncio.subprocess.Process) -> None:
    # The child may exit between the timeout firing and the kill.
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    await process.wait()

