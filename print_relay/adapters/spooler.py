"""Host print spooler probes.

Two backends are provided:

- :class:`PowerShellSpoolerProbe` for Windows. It queries the
  PrintManagement cmdlets (``Get-PrintJob``) first and falls back to WMI
  (``Win32_PrintJob``) when they are unavailable or return nothing. Both
  scripts fold multi-flag job status into one comma-separated string.
- :class:`LpqSpoolerProbe` for CUPS hosts, based on ``lpq`` output.

Both also list the host's printers (``Get-Printer`` and ``lpstat -a``).

A job missing from the spooler yields ``None``. A query that could not be
carried out raises :class:`SpoolerQueryError`.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from ..core import SpoolEntry, SpoolerProbe, SpoolerQueryError
from .process import CommandError, run_command

LOGGER = logging.getLogger(__name__)

POWERSHELL_ARGS = ("-NoLogo", "-NoProfile", "-NonInteractive", "-Command")


def resolve_powershell(configured: Optional[str] = None) -> str:
    """Pick a PowerShell executable.

    Order: explicit configuration, PowerShell 7, Windows PowerShell 5.1
    (through ``Sysnative`` for 32-bit interpreters on 64-bit Windows), and
    finally ``powershell.exe`` from ``PATH``.
    """
    if configured:
        return configured

    pwsh7 = Path(r"C:\Program Files\PowerShell\7\pwsh.exe")
    if pwsh7.exists():
        return str(pwsh7)

    system_root = Path(os.environ.get("SystemRoot", r"C:\Windows"))
    wow64 = bool(os.environ.get("PROCESSOR_ARCHITEW6432"))
    system_dir = system_root / ("Sysnative" if wow64 else "System32")
    ps51 = system_dir / "WindowsPowerShell" / "v1.0" / "powershell.exe"
    if ps51.exists():
        return str(ps51)

    return "powershell.exe"


def escape_ps_string(value: str) -> str:
    """Escape ``value`` for a double-quoted PowerShell string literal."""
    return str(value or "").replace("`", "``").replace('"', '""').replace("$", "`$")


# Placeholders: __PRINTER__ (escaped printer name) and __JOB_ID__.
_STATUS_TEXT = """
    $status = $j.__STATUS_FIELD__
    if ($status -is [array]) { $status = ($status -join ", ") }
    elseif ($status) { $status = [string]$status }
    else { $status = "" }
"""

_FAIL = """
} Catch {
  [Console]::Error.WriteLine($_.Exception.Message)
  exit 2
}
"""

_PM_OUTPUT = (
    _STATUS_TEXT.replace("__STATUS_FIELD__", "JobStatus")
    + """
    Add-Member -InputObject $j -NotePropertyName JobStatusText -NotePropertyValue $status -Force
    $j | Select-Object Id, DocumentName, UserName, JobStatusText, PagesPrinted, TotalPages | ConvertTo-Json -Compress -Depth 4
  }"""
)

_WMI_OUTPUT = (
    _STATUS_TEXT.replace("__STATUS_FIELD__", "Status")
    + """
    [pscustomobject]@{
      Id            = $j.JobId
      Document      = $j.Document
      UserName      = $j.Owner
      JobStatusText = $status
      PagesPrinted  = $j.PagesPrinted
      TotalPages    = $j.TotalPages
    } | ConvertTo-Json -Compress -Depth 4
  }"""
)

PM_LATEST_SCRIPT = (
    """
Try {
  $p = "__PRINTER__"
  $j = Get-PrintJob -PrinterName $p -ErrorAction Stop | Sort-Object -Property SubmittedTime -Descending | Select-Object -First 1
  if ($j) {"""
    + _PM_OUTPUT
    + _FAIL
)

PM_BY_ID_SCRIPT = (
    """
Try {
  $p = "__PRINTER__"
  $id = __JOB_ID__
  $j = Get-PrintJob -PrinterName $p -ErrorAction Stop | Where-Object { $_.Id -eq $id } | Select-Object -First 1
  if ($j) {"""
    + _PM_OUTPUT
    + _FAIL
)

WMI_LATEST_SCRIPT = (
    """
Try {
  $p = "__PRINTER__"
  $j = Get-CimInstance -ClassName Win32_PrintJob -ErrorAction Stop | Where-Object { $_.Name -like "$p,*" } | Sort-Object -Property TimeSubmitted -Descending | Select-Object -First 1
  if ($j) {"""
    + _WMI_OUTPUT
    + _FAIL
)

WMI_BY_ID_SCRIPT = (
    """
Try {
  $p = "__PRINTER__"
  $id = __JOB_ID__
  $j = Get-CimInstance -ClassName Win32_PrintJob -ErrorAction Stop | Where-Object { $_.JobId -eq $id -and $_.Name -like "$p,*" } | Select-Object -First 1
  if ($j) {"""
    + _WMI_OUTPUT
    + _FAIL
)


PRINTERS_SCRIPT = (
    """
Try {
  Get-Printer -ErrorAction Stop | Select-Object -ExpandProperty Name"""
    + _FAIL
).strip()


def render_script(template: str, printer_name: str, job_id: Optional[int] = None) -> str:
    script = template.replace("__PRINTER__", escape_ps_string(printer_name))
    if job_id is not None:
        script = script.replace("__JOB_ID__", str(int(job_id)))
    return script.strip()


class PowerShellSpoolerProbe(SpoolerProbe):
    """Windows spooler probe backed by PowerShell."""

    def __init__(
        self,
        *,
        executable: Optional[str] = None,
        timeout: float = 8.0,
        runner: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self._executable = resolve_powershell(executable)
        self._timeout = timeout
        self._runner = runner or self._run_script

    async def latest(self, printer_name: str) -> Optional[SpoolEntry]:
        return await self._query(
            render_script(PM_LATEST_SCRIPT, printer_name),
            render_script(WMI_LATEST_SCRIPT, printer_name),
        )

    async def by_id(self, printer_name: str, job_id: int) -> Optional[SpoolEntry]:
        return await self._query(
            render_script(PM_BY_ID_SCRIPT, printer_name, job_id),
            render_script(WMI_BY_ID_SCRIPT, printer_name, job_id),
        )

    async def printers(self) -> List[str]:
        """Names of the printers installed on this host."""
        return parse_printer_names(await self._runner(PRINTERS_SCRIPT))

    async def _query(self, primary: str, fallback: str) -> Optional[SpoolEntry]:
        primary_error: Optional[SpoolerQueryError] = None
        try:
            entry = parse_spool_json(await self._runner(primary))
        except SpoolerQueryError as exc:
            primary_error = exc
            LOGGER.debug("Get-PrintJob query failed, trying WMI: %s", exc)
        else:
            if entry is not None:
                return entry

        try:
            return parse_spool_json(await self._runner(fallback))
        except SpoolerQueryError as exc:
            if primary_error is None:
                # Get-PrintJob answered; its empty result stands.
                LOGGER.debug("WMI fallback failed after empty Get-PrintJob: %s", exc)
                return None
            raise SpoolerQueryError(f"{primary_error}; WMI: {exc}") from exc

    async def _run_script(self, script: str) -> str:
        try:
            code, stdout, stderr = await run_command(
                [self._executable, *POWERSHELL_ARGS, script], timeout=self._timeout
            )
        except CommandError as exc:
            raise SpoolerQueryError(str(exc)) from exc
        if code == 0:
            return stdout
        # Some providers write to stderr on success; JSON on stdout wins.
        if stdout:
            return stdout
        raise SpoolerQueryError(stderr or f"PowerShell exited with code {code}")


def parse_spool_json(raw: str) -> Optional[SpoolEntry]:
    """Parse PowerShell ``ConvertTo-Json`` output into a :class:`SpoolEntry`."""

    text = (raw or "").strip()
    if not text or text == '""':
        return None

    try:
        data = json.loads(text)
    except ValueError as exc:
        raise SpoolerQueryError(f"Unreadable spooler output: {text[:80]}") from exc

    if isinstance(data, list):
        data = data[0] if data else None
    if not isinstance(data, dict):
        return None

    try:
        return SpoolEntry.from_mapping(data)
    except (TypeError, ValueError) as exc:
        raise SpoolerQueryError(f"Unexpected spooler record: {exc}") from exc


_LPQ_ROW = re.compile(
    r"^(?P<rank>active|\d+\w*)\s+(?P<owner>\S+)\s+(?P<job>\d+)\s+(?P<files>.+?)\s+(?P<size>\d+)\s+bytes\s*$"
)


class LpqSpoolerProbe(SpoolerProbe):
    """CUPS spooler probe built on ``lpq -P <printer>``.

    ``lpq`` lists pending jobs by rank. The active job maps to ``Printing``
    and queued ones to ``Normal``; a stopped queue marks every job
    ``Paused``.
    """

    def __init__(
        self,
        *,
        executable: str = "lpq",
        lister: str = "lpstat",
        timeout: float = 8.0,
        runner: Optional[Callable[[Sequence[str]], Any]] = None,
    ) -> None:
        self._executable = executable
        self._lister = lister
        self._timeout = timeout
        self._runner = runner or self._run_lpq

    async def latest(self, printer_name: str) -> Optional[SpoolEntry]:
        entries = await self._list(printer_name)
        if not entries:
            return None
        return max(entries, key=lambda entry: entry.id)

    async def by_id(self, printer_name: str, job_id: int) -> Optional[SpoolEntry]:
        for entry in await self._list(printer_name):
            if entry.id == int(job_id):
                return entry
        return None

    async def printers(self) -> List[str]:
        """Names of the CUPS destinations accepting jobs (``lpstat -a``)."""
        return parse_lpstat_output(await self._runner([self._lister, "-a"]))

    async def _list(self, printer_name: str) -> List[SpoolEntry]:
        output = await self._runner([self._executable, "-P", printer_name])
        return parse_lpq_output(output)

    async def _run_lpq(self, argv: Sequence[str]) -> str:
        try:
            code, stdout, stderr = await run_command(argv, timeout=self._timeout)
        except CommandError as exc:
            raise SpoolerQueryError(str(exc)) from exc
        if code != 0:
            name = Path(argv[0]).name
            raise SpoolerQueryError(stderr or f"{name} exited with code {code}")
        return stdout


def parse_lpq_output(output: str) -> List[SpoolEntry]:
    lines = (output or "").splitlines()
    paused = bool(lines) and "not ready" in lines[0].lower()

    entries: List[SpoolEntry] = []
    for line in lines:
        match = _LPQ_ROW.match(line.strip())
        if match is None:
            continue
        if paused:
            status = "Paused"
        elif match["rank"] == "active":
            status = "Printing"
        else:
            status = "Normal"
        entries.append(
            SpoolEntry(
                id=int(match["job"]),
                document=match["files"].strip(),
                owner=match["owner"],
                raw_status=status,
            )
        )
    return entries

def parse_printer_names(output: str) -> List[str]:
    return [line.strip() for line in (output or "").splitlines() if line.strip()]


def parse_lpstat_output(output: str) -> List[str]:
    """First token of each ``lpstat -a`` line, e.g. ``Office accepting requests since ...``."""
    return [line.split()[0] for line in (output or "").splitlines() if line.strip()]

