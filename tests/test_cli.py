"""Tests for the command-line interface."""

import logging
from pathlib import Path

from typer.testing import CliRunner

from mdown import __version__
from mdown.cli.app import app
from mdown.exceptions import ConfigurationError, LockHeldError
from mdown.storage.lock import LockManager

runner = CliRunner()


def _invoke(data_dir: Path, *args: str):
    return runner.invoke(app, ["--data-dir", str(data_dir), *args])


class TestCli:
    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_settings_round_trip(self, data_dir: Path) -> None:
        assert _invoke(data_dir, "settings", "stat", "on").exit_code == 0
        assert _invoke(data_dir, "settings", "folder", "Library").exit_code == 0

        result = _invoke(data_dir, "database", "show-settings")

        assert result.exit_code == 0
        assert "stat = true" in result.output
        assert "folder = Library" in result.output

    def test_invalid_concurrency_setting_is_rejected(self, data_dir: Path) -> None:
        result = _invoke(data_dir, "settings", "concurrency", "0")

        assert result.exit_code != 0
        assert isinstance(result.exception, ConfigurationError)

    def test_download_without_target_fails(self, data_dir: Path) -> None:
        result = _invoke(data_dir, "download")
        assert result.exit_code == 1
        assert "No manga given" in result.output

    def test_show_on_empty_ledger(self, data_dir: Path) -> None:
        result = _invoke(data_dir, "database", "show")
        assert result.exit_code == 0
        assert "No manga tracked yet" in result.output

    def test_backup_without_ledger(self, tmp_path: Path) -> None:
        result = _invoke(tmp_path / "fresh", "backup")
        assert result.exit_code == 0
        assert "Nothing to back up yet" in result.output

    def test_reset_clears_settings(self, data_dir: Path, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.chdir(tmp_path)
        _invoke(data_dir, "settings", "stat", "on")

        result = _invoke(data_dir, "reset", "--yes")

        assert result.exit_code == 0
        assert not (tmp_path / ".mdown.lock").exists()
        assert "stat = false" in _invoke(data_dir, "database", "show-settings").output

    def test_reset_respects_a_download_running_elsewhere(
        self, data_dir: Path, tmp_path: Path
    ) -> None:
        work = tmp_path / "library"
        work.mkdir()
        running = LockManager(work / ".mdown.lock")
        running.acquire()
        try:
            result = _invoke(data_dir, "reset", "--yes", "--cwd", str(work))
        finally:
            running.release()

        assert isinstance(result.exception, LockHeldError)
        assert _invoke(data_dir, "reset", "--yes", "--cwd", str(work)).exit_code == 0
        assert not (work / ".mdown.lock").exists()

    def test_verbose_flag_enables_debug_logging(self, data_dir: Path) -> None:
        logger = logging.getLogger("mdown")
        try:
            runner.invoke(app, ["-v", "--data-dir", str(data_dir), "database", "show"])
            assert logger.level == logging.DEBUG
            assert logging.getLogger("aiohttp").level == logging.WARNING

            _invoke(data_dir, "database", "show")
            assert logger.level == logging.INFO
        finally:
            logger.setLevel(logging.INFO)
