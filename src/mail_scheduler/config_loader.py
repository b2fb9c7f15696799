# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the mail scheduler.

Settings are read from an INI file (default ``config.ini``, overridable with
``MSCHED_CONFIG``) with environment variables as fallbacks and built-in
defaults last.

Example:
    Configuration file format (config.ini)::

        [storage]
        db_path = /data/mail_scheduler.db

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = secret

        [worker]
        concurrency = 5
        min_spacing_ms = 2000
        max_per_second = 10
        poll_interval = 1.0
        shutdown_grace = 5

        [limits]
        per_hour = 100
        max_attempts = 3
        backoff_cap_seconds = 60

        [recovery]
        missed_schedule_grace = 3600
        stale_in_progress_after = 300

        [smtp]
        host = smtp.ethereal.email
        port = 587
        user = mailer
        password = secret
        use_tls = true

        [owner_limits]
        sender-vip = 500

Environment variables (all prefixed with ``MSCHED_``):
    MSCHED_CONFIG, MSCHED_DB_PATH, MSCHED_HOST, MSCHED_PORT,
    MSCHED_API_TOKEN, MSCHED_WORKER_CONCURRENCY, MSCHED_MIN_SPACING_MS,
    MSCHED_MAX_PER_SECOND, MSCHED_POLL_INTERVAL, MSCHED_SHUTDOWN_GRACE,
    MSCHED_LIMIT_PER_HOUR, MSCHED_MAX_ATTEMPTS, MSCHED_BACKOFF_CAP_SECONDS,
    MSCHED_MISSED_SCHEDULE_GRACE, MSCHED_STALE_IN_PROGRESS_AFTER,
    MSCHED_SMTP_HOST, MSCHED_SMTP_PORT, MSCHED_SMTP_USER,
    MSCHED_SMTP_PASSWORD, MSCHED_SMTP_USE_TLS, MSCHED_LOG_LEVEL
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .logger import get_logger

logger = get_logger("Config")

ENV_PREFIX = "MSCHED_"


@dataclass
class DispatchSettings:
    """Named, overridable parameters of the dispatch engine.

    Attributes:
        db_path: SQLite database path.
        http_host: API bind address.
        http_port: API port.
        api_token: Token expected in ``X-API-Token``; None disables auth.
        concurrency: Maximum concurrent delivery attempts.
        min_spacing_ms: Delay before each delivery call, in milliseconds.
        max_per_second: Global ceiling of attempts started per second.
        poll_interval: Idle wait of the queue loop, in seconds.
        shutdown_grace: Seconds granted to in-flight attempts on shutdown.
        limit_per_hour: Default hourly send limit per owner.
        owner_limits: Per-owner overrides of ``limit_per_hour``.
        max_attempts: Delivery attempts before a transient failure is terminal.
        backoff_cap_seconds: Upper bound of the exponential backoff.
        missed_schedule_grace: Overdue seconds after which recovery fails an
            item instead of sending it; 0 disables the policy.
        stale_in_progress_after: Age after which an IN_PROGRESS item is
            treated as abandoned.
        smtp_host: SMTP server, None when no transport is configured.
        smtp_port: SMTP port.
        smtp_user: SMTP login.
        smtp_password: SMTP password.
        smtp_use_tls: TLS flag; None derives it from the port.
        log_level: Logging level name.
    """

    db_path: str = "/data/mail_scheduler.db"
    http_host: str = "0.0.0.0"
    http_port: int = 8000
    api_token: str | None = None
    concurrency: int = 5
    min_spacing_ms: int = 2000
    max_per_second: int = 10
    poll_interval: float = 1.0
    shutdown_grace: float = 5.0
    limit_per_hour: int = 100
    owner_limits: dict[str, int] = field(default_factory=dict)
    max_attempts: int = 3
    backoff_cap_seconds: float = 60.0
    missed_schedule_grace: float = 3600.0
    stale_in_progress_after: float = 300.0
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool | None = None
    log_level: str = "INFO"

    @property
    def min_spacing(self) -> float:
        return self.min_spacing_ms / 1000.0


def _parse_bool(value: str | None) -> bool | None:
    if value is None:
        return None
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def load_settings(
    config_path: str | os.PathLike | None = None,
    environ: Mapping[str, str] | None = None,
) -> DispatchSettings:
    """Build settings from an INI file and ``MSCHED_*`` environment variables.

    Args:
        config_path: INI file to read; defaults to ``$MSCHED_CONFIG`` or
            ``config.ini``. A missing file is not an error.
        environ: Environment mapping, ``os.environ`` when omitted.

    Raises:
        ValueError: If a numeric option cannot be parsed.
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get(f"{ENV_PREFIX}CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
        logger.debug("Loaded configuration from %s", path)

    defaults = DispatchSettings()

    def get(section: str, option: str, env_name: str) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return env.get(f"{ENV_PREFIX}{env_name}")

    def get_int(section: str, option: str, env_name: str, default: int) -> int:
        value = get(section, option, env_name)
        return default if value in (None, "") else int(value)

    def get_float(section: str, option: str, env_name: str, default: float) -> float:
        value = get(section, option, env_name)
        return default if value in (None, "") else float(value)

    owner_limits: dict[str, int] = {}
    if parser.has_section("owner_limits"):
        for owner_id, value in parser.items("owner_limits"):
            owner_limits[owner_id] = int(value)

    return DispatchSettings(
        db_path=get("storage", "db_path", "DB_PATH") or defaults.db_path,
        http_host=get("server", "host", "HOST") or defaults.http_host,
        http_port=get_int("server", "port", "PORT", defaults.http_port),
        api_token=get("server", "api_token", "API_TOKEN") or None,
        concurrency=get_int("worker", "concurrency", "WORKER_CONCURRENCY", defaults.concurrency),
        min_spacing_ms=get_int("worker", "min_spacing_ms", "MIN_SPACING_MS", defaults.min_spacing_ms),
        max_per_second=get_int("worker", "max_per_second", "MAX_PER_SECOND", defaults.max_per_second),
        poll_interval=get_float("worker", "poll_interval", "POLL_INTERVAL", defaults.poll_interval),
        shutdown_grace=get_float("worker", "shutdown_grace", "SHUTDOWN_GRACE", defaults.shutdown_grace),
        limit_per_hour=get_int("limits", "per_hour", "LIMIT_PER_HOUR", defaults.limit_per_hour),
        owner_limits=owner_limits,
        max_attempts=get_int("limits", "max_attempts", "MAX_ATTEMPTS", defaults.max_attempts),
        backoff_cap_seconds=get_float(
            "limits", "backoff_cap_seconds", "BACKOFF_CAP_SECONDS", defaults.backoff_cap_seconds
        ),
        missed_schedule_grace=get_float(
            "recovery", "missed_schedule_grace", "MISSED_SCHEDULE_GRACE", defaults.missed_schedule_grace
        ),
        stale_in_progress_after=get_float(
            "recovery", "stale_in_progress_after", "STALE_IN_PROGRESS_AFTER", defaults.stale_in_progress_after
        ),
        smtp_host=get("smtp", "host", "SMTP_HOST") or None,
        smtp_port=get_int("smtp", "port", "SMTP_PORT", defaults.smtp_port),
        smtp_user=get("smtp", "user", "SMTP_USER") or None,
        smtp_password=get("smtp", "password", "SMTP_PASSWORD") or None,
        smtp_use_tls=_parse_bool(get("smtp", "use_tls", "SMTP_USE_TLS")),
        log_level=(get("logging", "level", "LOG_LEVEL") or defaults.log_level).upper(),
    )
