"""Tests for the typer CLI with the runtime replaced by a mocked service."""

from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from typer.testing import CliRunner

from listingmatch.cli import app
from listingmatch.dedup.records import ScanSummary
from listingmatch.errors import AuthorizationDenied

runner = CliRunner()


@pytest.fixture
def service(monkeypatch) -> AsyncMock:
    service = AsyncMock()

    @asynccontextmanager
    async def fake_runtime(*args, **kwargs):
        yield SimpleNamespace(service=service, authorizer=None)

    monkeypatch.setattr("listingmatch.cli.commands.open_runtime", fake_runtime)
    return service


class TestCli:
    def test_scan_prints_summary(self, service) -> None:
        service.trigger_full_scan.return_value = ScanSummary(records_scanned=12, groups_created=2)

        result = runner.invoke(app, ["scan", "--actor", "moderator"])

        assert result.exit_code == 0
        assert "Records scanned:  12" in result.output
        service.trigger_full_scan.assert_awaited_once_with("moderator")

    def test_actor_from_environment(self, service) -> None:
        service.trigger_full_scan.return_value = ScanSummary()

        result = runner.invoke(app, ["scan"], env={"LISTINGMATCH_ACTOR_ID": "ops-bot"})

        assert result.exit_code == 0
        service.trigger_full_scan.assert_awaited_once_with("ops-bot")

    def test_domain_error_exits_with_one(self, service) -> None:
        service.trigger_full_scan.side_effect = AuthorizationDenied("actor 'intruder' may not scan")

        result = runner.invoke(app, ["scan", "--actor", "intruder"])

        assert result.exit_code == 1
        assert "authorization_denied" in result.output

    def test_evaluate_without_matches(self, service) -> None:
        service.evaluate_record_by_id.return_value = []

        result = runner.invoke(app, ["evaluate", "rec-1"])

        assert result.exit_code == 0
        assert "No likely duplicates for rec-1" in result.output

    def test_false_positive(self, service) -> None:
        service.mark_false_positive.return_value = {"created": True, "dismissed_group_ids": ["g1"]}

        result = runner.invoke(app, ["false-positive", "a", "b", "--actor", "moderator", "--reason", "twins"])

        assert result.exit_code == 0
        assert "dismissed 1 pending group(s)" in result.output
        service.mark_false_positive.assert_awaited_once_with("moderator", "a", "b", "twins")

    def test_grant_scan_needs_casbin(self, service) -> None:
        result = runner.invoke(app, ["grant-scan", "alice", "--resolve"])
        assert result.exit_code != 0
