"""Tests for the CLI commands."""

import json

import pytest
from click.testing import CliRunner

from calsync_hub.cli import cli


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def env_file(tmp_path):
    """A configuration file with one Google provider."""
    path = tmp_path / 'calsync.env'
    providers = [{'provider': 'google', 'access_token': 'tok'}]
    path.write_text(
        f"DATA_DIR={tmp_path}\n"
        f"DATABASE_URL=sqlite:///{tmp_path}/cli.db\n"
        f"PROVIDERS={json.dumps(providers)}\n"
    )
    return path


class TestConfigCommands:

    def test_validate_ok(self, runner, env_file):
        result = runner.invoke(cli, ['--config', str(env_file), 'config', 'validate'])
        assert result.exit_code == 0, result.output
        assert 'google' in result.output

    def test_validate_missing(self, runner, tmp_path):
        path = tmp_path / 'empty.env'
        path.write_text(f"DATA_DIR={tmp_path}\nPROVIDERS=[]\n")
        result = runner.invoke(cli, ['--config', str(path), 'config', 'validate'])
        assert result.exit_code == 1
        assert 'PROVIDERS or REALTIME_URL' in result.output

    def test_create(self, runner, tmp_path, env_file):
        target = tmp_path / 'example.env'
        result = runner.invoke(cli, ['--config', str(env_file), 'config', 'create', '--path', str(target)])
        assert result.exit_code == 0, result.output
        assert 'PROVIDERS=' in target.read_text()


class TestQueueCommands:

    def test_list_empty(self, runner, env_file):
        result = runner.invoke(cli, ['--config', str(env_file), 'queue', 'list'])
        assert result.exit_code == 0, result.output
        assert 'No queued operations' in result.output

    def test_retry_unknown_seq(self, runner, env_file):
        result = runner.invoke(cli, ['--config', str(env_file), 'queue', 'retry', '42'])
        assert result.exit_code == 1
        assert 'No dead letter with seq 42' in result.output

    def test_discard_unknown_queue(self, runner, env_file):
        result = runner.invoke(cli, ['--config', str(env_file), 'queue', 'discard', '1', '-q', 'nope', '-y'])
        assert result.exit_code == 1
        assert 'Unknown queue' in result.output


def test_status(runner, env_file):
    result = runner.invoke(cli, ['--config', str(env_file), 'status'])
    assert result.exit_code == 0, result.output
    assert 'Sync Status' in result.output
    assert 'google' in result.output
