"""Tests for settings loading from config.ini and the environment."""

import pytest

from mail_scheduler.config_loader import DispatchSettings, load_settings


def test_defaults_without_file_or_environment(tmp_path):
    settings = load_settings(tmp_path / "missing.ini", environ={})
    assert settings == DispatchSettings()
    assert settings.min_spacing == 2.0
    assert settings.smtp_use_tls is None


def test_ini_values_are_read(tmp_path):
    config_file = tmp_path / "config.ini"
    config_file.write_text(
        """
[storage]
db_path = /tmp/sched.db

[server]
port = 9000
api_token = s3cret

[worker]
concurrency = 2
min_spacing_ms = 500

[limits]
per_hour = 20
max_attempts = 5

[smtp]
host = smtp.example.com
use_tls = yes

[owner_limits]
Sender-VIP = 500
"""
    )

    settings = load_settings(config_file, environ={})

    assert settings.db_path == "/tmp/sched.db"
    assert settings.http_port == 9000
    assert settings.api_token == "s3cret"
    assert settings.concurrency == 2
    assert settings.min_spacing == 0.5
    assert settings.limit_per_hour == 20
    assert settings.max_attempts == 5
    assert settings.smtp_host == "smtp.example.com"
    assert settings.smtp_use_tls is True
    # configparser lower-cases option names.
    assert settings.owner_limits == {"sender-vip": 500}


def test_environment_fills_missing_options(tmp_path):
    config_file = tmp_path / "config.ini"
    config_file.write_text("[limits]\nper_hour = 20\n")
    env = {
        "MSCHED_LIMIT_PER_HOUR": "99",
        "MSCHED_DB_PATH": "/var/lib/sched.db",
        "MSCHED_SMTP_USE_TLS": "off",
        "MSCHED_LOG_LEVEL": "debug",
        "MSCHED_MISSED_SCHEDULE_GRACE": "0",
    }

    settings = load_settings(config_file, environ=env)

    assert settings.limit_per_hour == 20
    assert settings.db_path == "/var/lib/sched.db"
    assert settings.smtp_use_tls is False
    assert settings.log_level == "DEBUG"
    assert settings.missed_schedule_grace == 0.0


def test_config_path_from_environment(tmp_path):
    config_file = tmp_path / "other.ini"
    config_file.write_text("[worker]\npoll_interval = 0.25\n")
    settings = load_settings(environ={"MSCHED_CONFIG": str(config_file)})
    assert settings.poll_interval == 0.25


def test_invalid_number_raises(tmp_path):
    with pytest.raises(ValueError):
        load_settings(tmp_path / "missing.ini", environ={"MSCHED_PORT": "eighty"})
