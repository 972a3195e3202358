"""Tests for the command-line interface"""

import pytest
from click.testing import CliRunner

from filerelay.cli import cli, format_size


@pytest.mark.parametrize("size,expected", [
    (0, "0.0 B"),
    (512, "512.0 B"),
    (2048, "2.0 KB"),
    (5 * 1024 * 1024, "5.0 MB"),
])
def test_format_size(size, expected):
    assert format_size(size) == expected


class TestCommands:
    """Test argument handling without a live node"""

    @pytest.fixture
    def runner(self):
        return CliRunner()

    def test_help_lists_commands(self, runner):
        result = runner.invoke(cli, ['--help'])
        assert result.exit_code == 0
        for command in ('serve', 'send', 'receive', 'status', 'history'):
            assert command in result.output

    def test_seal_needs_password(self, runner, make_file, temp_dir, monkeypatch):
        monkeypatch.delenv('FILERELAY_ENCRYPTION_PASSWORD', raising=False)
        monkeypatch.chdir(temp_dir)
        path, _ = make_file()

        result = runner.invoke(cli, ['--data-dir', str(temp_dir / "data"),
                                     'send', str(path), '--host', '127.0.0.1', '--seal'])
        assert result.exit_code != 0
        assert "--seal needs a password" in result.output

    def test_send_requires_existing_file(self, runner, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)
        result = runner.invoke(cli, ['send', str(temp_dir / "missing.bin"),
                                     '--host', '127.0.0.1'])
        assert result.exit_code != 0

    def test_unreachable_node_exits_cleanly(self, runner, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)
        # Port 9 (discard) on localhost is closed in test environments
        result = runner.invoke(cli, ['status', 'some-id', '--host', '127.0.0.1', '--port', '9'])
        assert result.exit_code == 1
        assert "failed" in result.output
