"""Constants used across the print-relay package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "print-relay"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_HOME = Path.home() / ".print-relay"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / DEFAULT_CONFIG_FILENAME
DEFAULT_LOG_PATH = DEFAULT_HOME / "logs" / f"{APP_NAME}.log"
DEFAULT_DOWNLOAD_DIR = DEFAULT_HOME / "spool"

DEFAULT_API_BASE_URL = "https://www.apinfautprd.com"
DEFAULT_NEXT_JOB_PATH = "/api/printQueue"
DEFAULT_REPORT_PATH = "/api/updatePdfStatus"
DEFAULT_PRINTED_STATUS = "printed"

DEFAULT_API_TIMEOUT_SECONDS = 15.0
DEFAULT_QUERY_TIMEOUT_SECONDS = 8.0
DEFAULT_DISPATCH_RACE_SECONDS = 2.5
