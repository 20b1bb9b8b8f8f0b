"""Integration tests for the CLI commands."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from tradedesk.config.settings import load_settings
from tradedesk.main import app

runner = CliRunner()


@pytest.fixture
def cli_settings(tmp_path):
    """Real default settings with the cache in a temp directory."""
    settings = load_settings("default")
    settings.database.path = str(tmp_path / "cache.db")
    return settings


def _write_backup(tmp_path, document) -> str:
    path = tmp_path / "backup.json"
    path.write_text(json.dumps(document))
    return str(path)


class TestMigrateCommand:
    def test_migrate_runs(self, tmp_path):
        db_path = str(tmp_path / "test.db")
        with patch("tradedesk.config.settings.load_settings") as mock_load:
            mock_settings = MagicMock()
            mock_settings.database.path = db_path
            mock_load.return_value = mock_settings

            with patch("tradedesk.data.migrations.run_migrations", new_callable=AsyncMock) as mock_mig:
                result = runner.invoke(app, ["migrate", "--profile", "default"])
                assert result.exit_code == 0
                assert "Migrations complete" in result.output
                mock_mig.assert_called_once_with(db_path)


class TestBackupCommands:
    def test_import_then_export(self, tmp_path, cli_settings):
        source = _write_backup(
            tmp_path,
            {"wallet": 1000, "positions": [{"id": 1, "symbol": "xpl", "direction": "LONG", "entry": 100}]},
        )
        output = tmp_path / "out" / "futures.json"

        with patch("tradedesk.config.settings.load_settings", return_value=cli_settings):
            imported = runner.invoke(app, ["import", "futures", "-i", source])
            exported = runner.invoke(app, ["export", "futures", "-o", str(output)])

        assert imported.exit_code == 0, imported.output
        assert "Imported futures" in imported.output
        assert exported.exit_code == 0, exported.output
        document = json.loads(output.read_text())
        assert document["lastUpdated"] > 0
        assert document["positions"][0]["symbol"] == "XPL"
        assert document["positions"][0]["sl"] == pytest.approx(95)
        assert document["positions"][0]["tp3"] == pytest.approx(115)

    def test_export_without_cache(self, tmp_path, cli_settings):
        with patch("tradedesk.config.settings.load_settings", return_value=cli_settings):
            result = runner.invoke(app, ["export", "spot", "-o", str(tmp_path / "spot.json")])
        assert result.exit_code == 1
        assert "No cached spot snapshot" in result.output

    def test_import_unreadable_file(self, tmp_path, cli_settings):
        source = _write_backup(tmp_path, [1, 2, 3])
        with patch("tradedesk.config.settings.load_settings", return_value=cli_settings):
            result = runner.invoke(app, ["import", "futures", "-i", source])
        assert result.exit_code == 1
        assert "Cannot read" in result.output

    def test_unknown_namespace(self, tmp_path, cli_settings):
        with patch("tradedesk.config.settings.load_settings", return_value=cli_settings):
            result = runner.invoke(app, ["export", "options", "-o", str(tmp_path / "x.json")])
        assert result.exit_code == 1
        assert "Unknown namespace" in result.output


class TestSummaryCommand:
    def test_futures_summary(self, tmp_path, cli_settings):
        source = _write_backup(tmp_path, {"wallet": 1000, "positions": [{"id": 1, "symbol": "XPL", "entry": 100}]})
        with patch("tradedesk.config.settings.load_settings", return_value=cli_settings):
            runner.invoke(app, ["import", "futures", "-i", source])
            result = runner.invoke(app, ["summary", "futures"])
        assert result.exit_code == 0, result.output
        assert "Futures" in result.output
        assert "Margin level" in result.output

    def test_empty_holdings_summary(self, cli_settings):
        with patch("tradedesk.config.settings.load_settings", return_value=cli_settings):
            result = runner.invoke(app, ["summary", "positionTrading"])
        assert result.exit_code == 0, result.output
        assert "Holdings" in result.output
        assert "Initial capital" in result.output


class TestSyncCommand:
    def test_sync_requires_remote(self, cli_settings):
        cli_settings.sync.remote_url = ""
        with patch("tradedesk.config.settings.load_settings", return_value=cli_settings):
            result = runner.invoke(app, ["sync", "futures", "--user", "u1"])
        assert result.exit_code == 1
        assert "No remote configured" in result.output

    def test_sync_requires_user(self, cli_settings):
        cli_settings.sync.user_id = ""
        with patch("tradedesk.config.settings.load_settings", return_value=cli_settings):
            result = runner.invoke(app, ["sync", "futures"])
        assert result.exit_code == 1
        assert "No user id" in result.output

    def test_sync_invokes_async(self, cli_settings):
        cli_settings.sync.remote_url = "http://localhost:9999"
        with patch("tradedesk.config.settings.load_settings", return_value=cli_settings):
            with patch("asyncio.run", return_value="synced") as mock_run:
                result = runner.invoke(app, ["sync", "spot", "--user", "u1"])
        assert result.exit_code == 0, result.output
        assert "spot: synced" in result.output
        mock_run.assert_called_once()


class TestWatchCommand:
    def test_watch_rejects_position_trading(self, cli_settings):
        with patch("tradedesk.config.settings.load_settings", return_value=cli_settings):
            result = runner.invoke(app, ["watch", "positionTrading"])
        assert result.exit_code == 1
        assert "Only futures and spot" in result.output

    def test_watch_invokes_async(self, cli_settings):
        cli_settings.sync.user_id = ""
        with patch("tradedesk.config.settings.load_settings", return_value=cli_settings):
            with patch("asyncio.run") as mock_run:
                result = runner.invoke(app, ["watch", "futures", "--all"])
        assert result.exit_code == 0, result.output
        assert "Stopped" in result.output
        mock_run.assert_called_once()
