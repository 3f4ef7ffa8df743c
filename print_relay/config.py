"""Configuration loader for print-relay."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from . import constants


@dataclass(slots=True)
class ApiConfig:
    base_url: str = constants.DEFAULT_API_BASE_URL
    next_job_path: str = constants.DEFAULT_NEXT_JOB_PATH
    report_path: str = constants.DEFAULT_REPORT_PATH
    printed_status: str = constants.DEFAULT_PRINTED_STATUS
    token: Optional[str] = None
    timeout_seconds: float = constants.DEFAULT_API_TIMEOUT_SECONDS

    @property
    def next_job_url(self) -> str:
        return _join_url(self.base_url, self.next_job_path)

    @property
    def report_url(self) -> str:
        return _join_url(self.base_url, self.report_path)


@dataclass(slots=True)
class PrinterConfig:
    name: Optional[str] = None
    backend: str = "auto"  # auto | powershell | lpq
    powershell_path: Optional[str] = None
    query_timeout_seconds: float = constants.DEFAULT_QUERY_TIMEOUT_SECONDS
    dispatch_command: Optional[str] = None  # Template with {printer} and {path}
    dispatch_timeout_seconds: float = 120.0
    download_dir: Path = field(default_factory=lambda: constants.DEFAULT_DOWNLOAD_DIR)
    download_retention_seconds: float = 3600.0


@dataclass(slots=True)
class QueueConfig:
    idle_poll_seconds: float = 2.0
    dispatch_race_seconds: float = constants.DEFAULT_DISPATCH_RACE_SECONDS
    discovery_settle_seconds: float = 0.6
    discovery_attempts: int = 6
    discovery_interval_seconds: float = 0.7
    watch_poll_seconds: float = 1.0
    forwarder_enabled: bool = True
    forward_poll_seconds: float = 1.0
    max_watch_query_errors: int = 30
    stop_grace_seconds: float = 5.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False
    max_bytes: int = 5 * 1024 * 1024
    backup_count: int = 3


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class RelayConfig:
    api: ApiConfig
    printer: PrinterConfig
    queue: QueueConfig
    logging: LoggingConfig
    health: HealthConfig
    raw: ConfigParser
    path: Path


def _join_url(base_url: str, path: str) -> str:
    if path.startswith(("http://", "https://")):
        return path
    return base_url.rstrip("/") + "/" + path.lstrip("/")


def _optional(parser: ConfigParser, section: str, option: str) -> Optional[str]:
    value = parser.get(section, option, fallback="")
    value = value.strip() if value else ""
    return value or None


def load_config(path: Optional[Path] = None) -> RelayConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    queue_defaults = QueueConfig()
    logging_defaults = LoggingConfig()
    parser = ConfigParser(interpolation=None)
    parser.read_dict(
        {
            "api": {
                "base_url": constants.DEFAULT_API_BASE_URL,
                "next_job_path": constants.DEFAULT_NEXT_JOB_PATH,
                "report_path": constants.DEFAULT_REPORT_PATH,
                "printed_status": constants.DEFAULT_PRINTED_STATUS,
                "timeout_seconds": str(constants.DEFAULT_API_TIMEOUT_SECONDS),
            },
            "printer": {
                "backend": "auto",
                "query_timeout_seconds": str(constants.DEFAULT_QUERY_TIMEOUT_SECONDS),
                "dispatch_timeout_seconds": "120",
                "download_dir": str(constants.DEFAULT_DOWNLOAD_DIR),
                "download_retention_seconds": "3600",
            },
            "queue": {
                "idle_poll_seconds": str(queue_defaults.idle_poll_seconds),
                "dispatch_race_seconds": str(queue_defaults.dispatch_race_seconds),
                "discovery_settle_seconds": str(queue_defaults.discovery_settle_seconds),
                "discovery_attempts": str(queue_defaults.discovery_attempts),
                "discovery_interval_seconds": str(
                    queue_defaults.discovery_interval_seconds
                ),
                "watch_poll_seconds": str(queue_defaults.watch_poll_seconds),
                "forwarder_enabled": "true",
                "forward_poll_seconds": str(queue_defaults.forward_poll_seconds),
                "max_watch_query_errors": str(queue_defaults.max_watch_query_errors),
                "stop_grace_seconds": str(queue_defaults.stop_grace_seconds),
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
                "max_bytes": str(logging_defaults.max_bytes),
                "backup_count": str(logging_defaults.backup_count),
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path, encoding="utf-8")

    api = ApiConfig(
        base_url=parser.get("api", "base_url").rstrip("/"),
        next_job_path=parser.get("api", "next_job_path"),
        report_path=parser.get("api", "report_path"),
        printed_status=parser.get("api", "printed_status"),
        token=_optional(parser, "api", "token"),
        timeout_seconds=max(
            1.0,
            parser.getfloat(
                "api",
                "timeout_seconds",
                fallback=constants.DEFAULT_API_TIMEOUT_SECONDS,
            ),
        ),
    )

    backend = parser.get("printer", "backend", fallback="auto").strip().lower()
    if backend not in ("auto", "powershell", "lpq"):
        backend = "auto"

    printer = PrinterConfig(
        name=_optional(parser, "printer", "name"),
        backend=backend,
        powershell_path=_optional(parser, "printer", "powershell_path"),
        query_timeout_seconds=max(
            0.5,
            parser.getfloat(
                "printer",
                "query_timeout_seconds",
                fallback=constants.DEFAULT_QUERY_TIMEOUT_SECONDS,
            ),
        ),
        dispatch_command=_optional(parser, "printer", "dispatch_command"),
        dispatch_timeout_seconds=max(
            1.0,
            parser.getfloat("printer", "dispatch_timeout_seconds", fallback=120.0),
        ),
        download_dir=Path(
            parser.get(
                "printer",
                "download_dir",
                fallback=str(constants.DEFAULT_DOWNLOAD_DIR),
            )
        ).expanduser(),
        download_retention_seconds=max(
            0.0,
            parser.getfloat("printer", "download_retention_seconds", fallback=3600.0),
        ),
    )

    queue = QueueConfig(
        idle_poll_seconds=max(
            0.1,
            parser.getfloat(
                "queue", "idle_poll_seconds", fallback=queue_defaults.idle_poll_seconds
            ),
        ),
        dispatch_race_seconds=max(
            0.0,
            parser.getfloat(
                "queue",
                "dispatch_race_seconds",
                fallback=queue_defaults.dispatch_race_seconds,
            ),
        ),
        discovery_settle_seconds=max(
            0.0,
            parser.getfloat(
                "queue",
                "discovery_settle_seconds",
                fallback=queue_defaults.discovery_settle_seconds,
            ),
        ),
        discovery_attempts=max(
            1,
            parser.getint(
                "queue",
                "discovery_attempts",
                fallback=queue_defaults.discovery_attempts,
            ),
        ),
        discovery_interval_seconds=max(
            0.0,
            parser.getfloat(
                "queue",
                "discovery_interval_seconds",
                fallback=queue_defaults.discovery_interval_seconds,
            ),
        ),
        watch_poll_seconds=max(
            0.1,
            parser.getfloat(
                "queue",
                "watch_poll_seconds",
                fallback=queue_defaults.watch_poll_seconds,
            ),
        ),
        forwarder_enabled=parser.getboolean("queue", "forwarder_enabled", fallback=True),
        forward_poll_seconds=max(
            0.1,
            parser.getfloat(
                "queue",
                "forward_poll_seconds",
                fallback=queue_defaults.forward_poll_seconds,
            ),
        ),
        max_watch_query_errors=max(
            1,
            parser.getint(
                "queue",
                "max_watch_query_errors",
                fallback=queue_defaults.max_watch_query_errors,
            ),
        ),
        stop_grace_seconds=max(
            0.0,
            parser.getfloat(
                "queue",
                "stop_grace_seconds",
                fallback=queue_defaults.stop_grace_seconds,
            ),
        ),
    )

    log_path_value = _optional(parser, "logging", "path")
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
        max_bytes=max(
            0, parser.getint("logging", "max_bytes", fallback=logging_defaults.max_bytes)
        ),
        backup_count=max(
            0,
            parser.getint("logging", "backup_count", fallback=logging_defaults.backup_count),
        ),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=parser.getint("health", "port", fallback=0),
    )

    return RelayConfig(
        api=api,
        printer=printer,
        queue=queue,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
    )


def save_config(config: RelayConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
