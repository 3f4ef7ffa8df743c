"""Adapter modules for external integrations."""

from .dispatcher import CommandPrintDispatcher, DocumentFetchError
from .process import CommandError, run_command
from .remote_queue import HttpRemoteQueueClient, parse_remote_job
from .spooler import (
    LpqSpoolerProbe,
    PowerShellSpoolerProbe,
    parse_lpq_output,
    parse_spool_json,
)

__all__ = [
    "CommandError",
    "CommandPrintDispatcher",
    "DocumentFetchError",
    "HttpRemoteQueueClient",
    "LpqSpoolerProbe",
    "PowerShellSpoolerProbe",
    "parse_lpq_output",
    "parse_remote_job",
    "parse_spool_json",
    "run_command",
]
