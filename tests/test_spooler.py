"""Tests for the spooler probes and their output parsers."""

import json

import pytest

from print_relay.adapters import (
    LpqSpoolerProbe,
    PowerShellSpoolerProbe,
    parse_lpq_output,
    parse_spool_json,
)
from print_relay.adapters.spooler import (
    PM_BY_ID_SCRIPT,
    PM_LATEST_SCRIPT,
    PRINTERS_SCRIPT,
    escape_ps_string,
    parse_lpstat_output,
    render_script,
)
from print_relay.core import SpoolEntry, SpoolerQueryError


class ScriptRunner:
    """Answers PowerShell scripts by source: Get-PrintJob or WMI."""

    def __init__(self, print_management, wmi):
        self.print_management = print_management
        self.wmi = wmi
        self.scripts = []

    async def __call__(self, script):
        self.scripts.append(script)
        answer = self.print_management if "Get-PrintJob" in script else self.wmi
        if isinstance(answer, Exception):
            raise answer
        return answer


def pm_record(job_id=12, status="Printing, Retained"):
    return json.dumps(
        {
            "Id": job_id,
            "DocumentName": "invoice.pdf",
            "UserName": "relay",
            "JobStatusText": status,
            "PagesPrinted": 1,
            "TotalPages": 3,
        }
    )


def test_escape_ps_string():
    assert escape_ps_string('HP "Laser" $1 `x') == 'HP ""Laser"" `$1 ``x'


def test_render_script_embeds_printer_and_job_id():
    script = render_script(PM_BY_ID_SCRIPT, 'Office "A"', 17)

    assert '$p = "Office ""A"""' in script
    assert "$id = 17" in script
    assert "__PRINTER__" not in script
    assert "__JOB_ID__" not in script


def test_latest_script_sorts_by_submission_time():
    script = render_script(PM_LATEST_SCRIPT, "P1")

    assert "Sort-Object -Property SubmittedTime -Descending" in script


@pytest.mark.asyncio
async def test_print_management_result_is_used_directly():
    runner = ScriptRunner(pm_record(), SpoolerQueryError("unused"))
    probe = PowerShellSpoolerProbe(executable="pwsh", runner=runner)

    found = await probe.latest("P1")

    assert found == SpoolEntry(
        id=12,
        document="invoice.pdf",
        owner="relay",
        raw_status="Printing, Retained",
        pages_printed=1,
        total_pages=3,
    )
    assert len(runner.scripts) == 1


@pytest.mark.asyncio
async def test_falls_back_to_wmi_when_print_management_fails():
    wmi = json.dumps({"Id": 5, "Document": "a.pdf", "UserName": "x", "JobStatusText": "Paused"})
    runner = ScriptRunner(SpoolerQueryError("module missing"), wmi)
    probe = PowerShellSpoolerProbe(executable="pwsh", runner=runner)

    found = await probe.by_id("P1", 5)

    assert found is not None
    assert found.id == 5
    assert found.raw_status == "Paused"
    assert "Win32_PrintJob" in runner.scripts[1]


@pytest.mark.asyncio
async def test_falls_back_to_wmi_when_print_management_is_empty():
    runner = ScriptRunner("", pm_record(job_id=8, status="Spooling"))
    probe = PowerShellSpoolerProbe(executable="pwsh", runner=runner)

    found = await probe.latest("P1")

    assert found is not None and found.id == 8


@pytest.mark.asyncio
async def test_missing_job_returns_none_when_wmi_fails_after_empty_result():
    runner = ScriptRunner("", SpoolerQueryError("access denied"))
    probe = PowerShellSpoolerProbe(executable="pwsh", runner=runner)

    assert await probe.by_id("P1", 99) is None


@pytest.mark.asyncio
async def test_both_sources_failing_raises():
    runner = ScriptRunner(SpoolerQueryError("pm down"), SpoolerQueryError("wmi down"))
    probe = PowerShellSpoolerProbe(executable="pwsh", runner=runner)

    with pytest.raises(SpoolerQueryError, match="pm down; WMI: wmi down"):
        await probe.latest("P1")


def test_parse_spool_json_handles_lists_and_status_arrays():
    raw = json.dumps([{"ID": "3", "JobStatus": ["Printing", "Retained"]}])

    parsed = parse_spool_json(raw)

    assert parsed is not None
    assert parsed.id == 3
    assert parsed.raw_status == "Printing, Retained"


@pytest.mark.parametrize("raw", ["", "  ", '""', "[]", "null"])
def test_parse_spool_json_empty_output(raw):
    assert parse_spool_json(raw) is None


def test_parse_spool_json_rejects_garbage():
    with pytest.raises(SpoolerQueryError):
        parse_spool_json("Get-PrintJob : The spooler service is not reachable")


def test_parse_spool_json_rejects_record_without_id():
    with pytest.raises(SpoolerQueryError):
        parse_spool_json('{"DocumentName": "a.pdf"}')


LPQ_OUTPUT = """office is ready and printing
Rank    Owner   Job     File(s)                         Total Size
active  alice   14      invoice.pdf                     10240 bytes
1st     bob     15      report final.pdf                2048 bytes
"""


def test_parse_lpq_output_maps_ranks():
    entries = parse_lpq_output(LPQ_OUTPUT)

    assert [(item.id, item.raw_status, item.owner) for item in entries] == [
        (14, "Printing", "alice"),
        (15, "Normal", "bob"),
    ]
    assert entries[1].document == "report final.pdf"


def test_parse_lpq_output_stopped_queue_marks_jobs_paused():
    output = LPQ_OUTPUT.replace("is ready and printing", "is not ready")

    assert {item.raw_status for item in parse_lpq_output(output)} == {"Paused"}


def test_parse_lpq_output_empty_queue():
    assert parse_lpq_output("office is ready\nno entries\n") == []


@pytest.mark.asyncio
async def test_lpq_probe_latest_and_by_id():
    calls = []

    async def runner(argv):
        calls.append(list(argv))
        return LPQ_OUTPUT

    probe = LpqSpoolerProbe(runner=runner)

    latest = await probe.latest("office")
    found = await probe.by_id("office", 14)
    missing = await probe.by_id("office", 99)

    assert latest is not None and latest.id == 15
    assert found is not None and found.raw_status == "Printing"
    assert missing is None
    assert calls[0] == ["lpq", "-P", "office"]


@pytest.mark.asyncio
async def test_lpq_probe_propagates_query_errors():
    async def runner(argv):
        raise SpoolerQueryError("lpq: Unknown destination")

    probe = LpqSpoolerProbe(runner=runner)

    with pytest.raises(SpoolerQueryError):
        await probe.latest("nope")


@pytest.mark.asyncio
async def test_powershell_printers_lists_names():
    scripts = []

    async def runner(script):
        scripts.append(script)
        return "Office Laser\r\n\r\nMicrosoft Print to PDF\r\n"

    probe = PowerShellSpoolerProbe(executable="pwsh", runner=runner)

    assert await probe.printers() == ["Office Laser", "Microsoft Print to PDF"]
    assert scripts == [PRINTERS_SCRIPT]
    assert "Get-Printer" in scripts[0]


@pytest.mark.asyncio
async def test_powershell_printers_propagates_query_errors():
    async def runner(script):
        raise SpoolerQueryError("Get-Printer is not recognized")

    probe = PowerShellSpoolerProbe(executable="pwsh", runner=runner)

    with pytest.raises(SpoolerQueryError):
        await probe.printers()


LPSTAT_OUTPUT = """\
office accepting requests since Mon 19 Oct 2026 09:12:01 AM UTC
label_printer accepting requests since Mon 19 Oct 2026 09:12:05 AM UTC
"""


def test_parse_lpstat_output_takes_first_token():
    assert parse_lpstat_output(LPSTAT_OUTPUT) == ["office", "label_printer"]
    assert parse_lpstat_output("") == []


@pytest.mark.asyncio
async def test_lpq_probe_lists_printers_with_lpstat():
    calls = []

    async def runner(argv):
        calls.append(list(argv))
        return LPSTAT_OUTPUT

    probe = LpqSpoolerProbe(runner=runner)

    assert await probe.printers() == ["office", "label_printer"]
    assert calls == [["lpstat", "-a"]]
