"""Tests for CLI commands and helper functions."""

import json

import pytest
from click.testing import CliRunner

from mail_scheduler.cli import _format_ts, _status_cell, main, run_async
from mail_scheduler.models import WorkItemStatus

MAIL = {"from": "a@example.com", "to": "b@example.com", "subject": "Hi", "body": "Hello"}


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text(
        f"""
[storage]
db_path = {tmp_path / "cli.db"}

[limits]
per_hour = 7

[smtp]
host = localhost
"""
    )
    return path


@pytest.fixture
def payload_file(tmp_path):
    path = tmp_path / "mail.json"
    path.write_text(json.dumps(MAIL))
    return path


@pytest.fixture
def cli(config_file):
    runner = CliRunner()

    def invoke(*args, **kwargs):
        return runner.invoke(main, ["--config", str(config_file), *args], **kwargs)

    return invoke


def submit(cli, payload_file, *extra):
    return cli("items", "submit", "sender-1", "--at", "2099-01-01T09:00:00Z", "--payload", str(payload_file), *extra)


def listed(cli, *args):
    result = cli("items", "list", "--json", *args)
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


class TestHelperFunctions:
    """Tests for CLI helper functions."""

    def test_run_async(self):
        async def async_func():
            return 42

        assert run_async(async_func()) == 42

    def test_format_ts(self):
        assert _format_ts(None) == "-"

    def test_status_cell_is_styled(self):
        assert _status_cell(WorkItemStatus.FAILED) == "[red]FAILED[/red]"


class TestItemsCommands:
    """Tests for the items command group."""

    def test_submit_then_list_and_show(self, cli, payload_file):
        result = submit(cli, payload_file)
        assert result.exit_code == 0, result.output
        assert "scheduled" in result.output

        items = listed(cli)
        assert len(items) == 1
        assert items[0]["owner_id"] == "sender-1"
        assert items[0]["status"] == "PENDING"
        assert items[0]["payload"] == MAIL

        shown = cli("items", "show", items[0]["id"], "--json")
        assert shown.exit_code == 0
        assert json.loads(shown.output)["id"] == items[0]["id"]

        table = cli("items", "list")
        assert "Work items (1)" in table.output

    def test_list_filters(self, cli, payload_file):
        submit(cli, payload_file)
        assert listed(cli, "--status", "pending", "--owner", "sender-1")
        assert listed(cli, "--status", "DONE") == []
        assert listed(cli, "--owner", "other") == []

    def test_duplicate_dedupe_key(self, cli, payload_file):
        submit(cli, payload_file, "--dedupe-key", "order-9")
        result = submit(cli, payload_file, "--dedupe-key", "order-9")
        assert result.exit_code == 0
        assert "Dedupe key already used" in result.output
        assert len(listed(cli)) == 1

    def test_invalid_submission(self, cli, payload_file):
        result = cli("items", "submit", "sender-1", "--at", "next tuesday", "--payload", str(payload_file))
        assert result.exit_code == 1
        assert listed(cli) == []

    def test_cancel_and_audit(self, cli, payload_file):
        submit(cli, payload_file)
        item_id = listed(cli)[0]["id"]

        result = cli("items", "cancel", item_id, "--force")
        assert result.exit_code == 0
        assert "cancelled" in result.output
        assert listed(cli)[0]["status"] == "CANCELLED"

        audit = cli("items", "audit", item_id, "--json")
        messages = [entry["message"] for entry in json.loads(audit.output)]
        assert messages == ["Email scheduled", "Cancelled by request"]

        again = cli("items", "cancel", item_id, "--force")
        assert again.exit_code == 1

    def test_cancel_prompt_can_abort(self, cli, payload_file):
        submit(cli, payload_file)
        item_id = listed(cli)[0]["id"]
        result = cli("items", "cancel", item_id, input="n\n")
        assert "Aborted." in result.output
        assert listed(cli)[0]["status"] == "PENDING"

    def test_unknown_item(self, cli):
        result = cli("items", "show", "missing")
        assert result.exit_code == 1


class TestMaintenanceCommands:
    """Tests for recover and rate commands."""

    def test_recover_is_repeatable(self, cli, payload_file):
        submit(cli, payload_file)
        report = json.loads(cli("recover", "--json").output)
        assert report["ok"] is True
        assert report["already_queued"] == 1
        assert report["requeued"] == 0

        plain = cli("recover")
        assert plain.exit_code == 0
        assert "Recovery complete" in plain.output

    def test_rate_status_uses_configured_limit(self, cli):
        result = cli("rate", "status", "sender-1", "--json")
        assert result.exit_code == 0
        status = json.loads(result.output)
        assert status["owner_id"] == "sender-1"
        assert status["current"] == 0
        assert status["limit"] == 7

    def test_rate_reset_without_counter(self, cli):
        result = cli("rate", "reset", "sender-1")
        assert result.exit_code == 0
        assert "No counter" in result.output
