"""
Unit tests for the command line interface (housekeeper/cli.py).
"""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from housekeeper.backup.executor import BackupError
from housekeeper.cli import cli
from housekeeper.config import ConfigError
from housekeeper.database import DatabaseError
from housekeeper.health import HealthcheckError


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def no_logging_setup():
    """Keep the test log configuration."""
    with patch('housekeeper.cli.configure_logging'):
        yield


class TestBackupCommand:
    """Test the single run command."""

    def test_backup_success(self, runner, data_dirs, backup_dir):
        a, _ = data_dirs

        result = runner.invoke(cli, ['backup'], env={
            'BACKUP_DATA_DIR': str(a),
            'BACKUP_STORAGE': str(backup_dir),
        })

        assert result.exit_code == 0
        files = list(backup_dir.iterdir())
        assert len(files) == 1
        assert files[0].name.endswith('.zip')

    def test_backup_nothing_enabled(self, runner, backup_dir):
        result = runner.invoke(cli, ['backup'], env={'BACKUP_STORAGE': str(backup_dir)})

        assert result.exit_code == 0
        assert list(backup_dir.iterdir()) == []

    def test_backup_failure_exits_non_zero(self, runner, backup_dir, tmp_path):
        result = runner.invoke(cli, ['backup'], env={
            'BACKUP_DATA_DIR': str(tmp_path / 'missing'),
            'BACKUP_STORAGE': str(backup_dir),
        })

        assert result.exit_code == 1

    def test_backup_invalid_config(self, runner):
        result = runner.invoke(cli, ['backup'], env={'BACKUP_DATABASE': 'maybe'})

        assert result.exit_code == 1

    @patch('housekeeper.cli.Housekeeper')
    def test_backup_skips_healthcheck_server(self, mock_housekeeper, runner):
        housekeeper = mock_housekeeper.from_environment.return_value

        result = runner.invoke(cli, ['backup'])

        assert result.exit_code == 0
        housekeeper.prepare.assert_called_once_with(healthcheck=False)
        housekeeper.backup.assert_called_once()

    @patch('housekeeper.cli.Housekeeper')
    def test_backup_error(self, mock_housekeeper, runner):
        mock_housekeeper.from_environment.return_value.backup.side_effect = BackupError("disk full")

        result = runner.invoke(cli, ['backup'])

        assert result.exit_code == 1


class TestHealthcheckCommand:
    @patch('housekeeper.cli.check_health')
    def test_healthcheck_ready(self, mock_check, runner):
        result = runner.invoke(cli, ['healthcheck'])

        assert result.exit_code == 0
        mock_check.assert_called_once_with()

    @patch('housekeeper.cli.check_health')
    def test_healthcheck_not_ready(self, mock_check, runner):
        mock_check.side_effect = HealthcheckError("housekeeper not ready")

        result = runner.invoke(cli, ['healthcheck'])

        assert result.exit_code == 1
        assert "housekeeper not ready" in result.output


class TestDaemon:
    """Test running without a command."""

    @patch('housekeeper.cli._wait_for_signal')
    @patch('housekeeper.cli.Housekeeper')
    def test_daemon_lifecycle(self, mock_housekeeper, mock_wait, runner):
        housekeeper = mock_housekeeper.from_environment.return_value
        housekeeper.stop_schedule.return_value = True

        result = runner.invoke(cli, [])

        assert result.exit_code == 0
        housekeeper.prepare.assert_called_once_with(healthcheck=True)
        housekeeper.start_schedule.assert_called_once()
        mock_wait.assert_called_once()
        housekeeper.stop_schedule.assert_called_once_with(300)
        housekeeper.shutdown.assert_called_once()

    @patch('housekeeper.cli.logging.shutdown')
    @patch('housekeeper.cli.os._exit')
    @patch('housekeeper.cli._wait_for_signal')
    @patch('housekeeper.cli.Housekeeper')
    def test_daemon_abandons_running_backup(self, mock_housekeeper, mock_wait, mock_exit, mock_shutdown, runner):
        mock_housekeeper.from_environment.return_value.stop_schedule.return_value = False

        runner.invoke(cli, [])

        mock_exit.assert_called_once_with(1)

    @pytest.mark.parametrize("error", [
        ConfigError("database config missing for backup"),
        DatabaseError("timeout while trying to connect to database"),
    ])
    @patch('housekeeper.cli.Housekeeper')
    def test_daemon_startup_error(self, mock_housekeeper, runner, error):
        mock_housekeeper.from_environment.side_effect = error

        result = runner.invoke(cli, [])

        assert result.exit_code == 1

    def test_unknown_command(self, runner):
        result = runner.invoke(cli, ['restore'])

        assert result.exit_code != 0
