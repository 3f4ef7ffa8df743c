"""Command-line interface for print-relay."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .app import OPERATOR_STOP_REASONS, PrintRelayApp, build_probe
from .config import RelayConfig, load_config, save_config
from .core import ConfigurationError, SpoolerQueryError
from .status import normalize_status

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="print-relay",
        description="Relay a remote print queue to a local printer",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    start_parser = subparsers.add_parser("start", help="Run the print queue")
    start_parser.add_argument("--printer", help="Printer name (overrides printer.name)")
    start_parser.add_argument("--token", help="Bearer token for the queue API")

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    probe_parser = subparsers.add_parser(
        "probe", help="Show the newest (or a given) spool entry"
    )
    probe_parser.add_argument("--printer", help="Printer name (overrides printer.name)")
    probe_parser.add_argument("--job-id", type=int, help="Spool job id to look up")

    subparsers.add_parser(
        "printers", help="List the printers installed on this host"
    )

    configure_parser = subparsers.add_parser(
        "configure", help="Update the configuration file"
    )
    configure_parser.add_argument("--printer", help="Default printer name")
    configure_parser.add_argument("--base-url", help="Queue API base URL")
    configure_parser.add_argument("--token", help="Bearer token for the queue API")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "start":
        try:
            reason = PrintRelayApp.start(
                config, printer_name=args.printer, token=args.token
            )
        except ConfigurationError as exc:
            LOGGER.error("Cannot start: %s", exc)
            return 1
        LOGGER.info("Queue stopped (%s)", reason or "done")
        return 0 if reason in OPERATOR_STOP_REASONS else 1

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key == "token" and value:
                    value = "***"
                print(f"{key} = {value}")
            print()
        return 0

    if args.command == "probe":
        return _run_probe(config, args.printer, args.job_id)

    if args.command == "printers":
        return _run_printers(config)

    if args.command == "configure":
        return _run_configure(config, args)

    LOGGER.error("Unknown command: %s", args.command)
    return 1


def _run_probe(
    config: RelayConfig, printer_name: Optional[str], job_id: Optional[int]
) -> int:
    printer = printer_name or config.printer.name
    if not printer:
        print("No printer selected: pass --printer or set printer.name", file=sys.stderr)
        return 1

    try:
        probe = build_probe(config.printer)
    except ConfigurationError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    async def _query():
        if job_id is None:
            return await probe.latest(printer)
        return await probe.by_id(printer, job_id)

    try:
        entry = asyncio.run(_query())
    except SpoolerQueryError as exc:
        print(f"Spooler query failed: {exc}", file=sys.stderr)
        return 1

    if entry is None:
        print(f"No spool entry found on {printer}.")
        return 0

    status = normalize_status(entry.raw_status)
    print(f"#{entry.id} {status.value} (raw: {entry.raw_status or '-'})")
    print(f"  document: {entry.document or '-'}")
    print(f"  owner:    {entry.owner or '-'}")
    if entry.total_pages:
        print(f"  pages:    {entry.pages_printed}/{entry.total_pages}")
    return 0


def _run_printers(config: RelayConfig) -> int:
    try:
        probe = build_probe(config.printer)
        names = asyncio.run(probe.printers())
    except ConfigurationError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except SpoolerQueryError as exc:
        print(f"Could not list printers: {exc}", file=sys.stderr)
        return 1

    if not names:
        print("No printers found.")
        return 0

    for name in names:
        marker = "*" if name == config.printer.name else " "
        print(f"{marker} {name}")
    return 0


def _run_configure(config: RelayConfig, args: argparse.Namespace) -> int:
    updates = {
        ("printer", "name"): args.printer,
        ("api", "base_url"): args.base_url,
        ("api", "token"): args.token,
    }
    changed = False
    for (section, option), value in updates.items():
        if value is None:
            continue
        config.raw.set(section, option, value)
        changed = True

    if not changed:
        print("Nothing to update.", file=sys.stderr)
        return 1

    save_config(config)
    print(f"Configuration written to {config.path!s}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
