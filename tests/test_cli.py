"""Tests for the click entry points, with the sync machinery patched out."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from supabase2pipedrive.cli import main
from supabase2pipedrive.config import Settings
from supabase2pipedrive.exceptions import SyncTimeoutError
from supabase2pipedrive.models import Organization, Person, SyncReport, SyncStats
from supabase2pipedrive.pipedrive.fields import FieldMapping


@pytest.fixture
def settings() -> Settings:
    return Settings(
        PIPEDRIVE_API_TOKEN="test-token",
        SUPABASE_URL="https://project.supabase.co",
        SUPABASE_SERVICE_KEY="service-key",
    )


@pytest.fixture
def runner():
    with patch("supabase2pipedrive.cli.configure_logging"):
        yield CliRunner()


class TestSync:
    def test_prints_report(self, runner, settings):
        report = SyncReport(
            organizations=SyncStats(created=2, skipped=3),
            people=SyncStats(updated=4, errors=["Failed to sync person 'Jane': boom"]),
        )
        syncer = MagicMock()
        syncer.run = AsyncMock(return_value=report)

        with (
            patch("supabase2pipedrive.cli.get_settings", return_value=settings),
            patch("supabase2pipedrive.cli.BidirectionalSyncer", return_value=syncer) as syncer_cls,
        ):
            result = runner.invoke(main, ["sync"])

        assert result.exit_code == 0, result.output
        assert "SYNC COMPLETE" in result.output
        assert "Created: 2" in result.output
        assert "Updated: 4" in result.output
        assert "Failed to sync person 'Jane': boom" in result.output
        assert syncer_cls.call_args.kwargs["page_size"] == 100

    def test_run_failure_exits_nonzero(self, runner, settings):
        syncer = MagicMock()
        syncer.run = AsyncMock(side_effect=SyncTimeoutError("Sync run exceeded 7200s"))

        with (
            patch("supabase2pipedrive.cli.get_settings", return_value=settings),
            patch("supabase2pipedrive.cli.BidirectionalSyncer", return_value=syncer),
        ):
            result = runner.invoke(main, ["sync"])

        assert result.exit_code == 1
        assert "Sync run exceeded 7200s" in result.output

    def test_missing_settings(self, runner):
        with patch(
            "supabase2pipedrive.cli.get_settings",
            side_effect=ValueError("PIPEDRIVE_API_TOKEN is required"),
        ):
            result = runner.invoke(main, ["sync"])

        assert result.exit_code == 1
        assert "Error loading settings" in result.output


class TestFields:
    def test_lists_mapping_without_creating(self, runner, settings):
        mapping = FieldMapping(
            keys={"headline": "abc123", "primary contact type": "def456"},
            options={"primary contact type": {"143": "Participant"}},
        )
        mapper = MagicMock()
        mapper.resolve_or_create_fields = AsyncMock(return_value=mapping)

        with (
            patch("supabase2pipedrive.cli.get_settings", return_value=settings),
            patch("supabase2pipedrive.cli.FieldMapper", return_value=mapper),
        ):
            result = runner.invoke(main, ["fields"])

        assert result.exit_code == 0, result.output
        assert "Headline (varchar): abc123" in result.output
        assert "143: Participant" in result.output
        assert "Summary (text): <missing>" in result.output
        mapper.resolve_or_create_fields.assert_awaited_once_with(create_missing=False)


class TestStatus:
    def test_counts_linked_records(self, runner, settings):
        store = MagicMock()
        store.fetch_organizations = AsyncMock(
            return_value=[Organization(id=1, external_id=7), Organization(id=2)]
        )
        store.fetch_people = AsyncMock(return_value=[Person(id=1)])

        with (
            patch("supabase2pipedrive.cli.get_settings", return_value=settings),
            patch("supabase2pipedrive.cli.CRMStore", return_value=store),
        ):
            result = runner.invoke(main, ["status"])

        assert result.exit_code == 0, result.output
        assert "Organizations: 2" in result.output
        assert "Linked to Pipedrive: 1" in result.output
        assert "People: 1" in result.output
