"""
Tests for the podroom CLI.
"""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from podroom.cli import cli
from podroom.search import NOT_FOUND_ANSWER

URL = "https://example.com/ep1.mp3"


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def patched_service(service):
    with patch("podroom.cli._service", return_value=service):
        yield service


class TestCli:
    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_submit_prints_task_id(self, runner, patched_service):
        result = runner.invoke(cli, ["submit", URL, "--title", "Episode One"])

        assert result.exit_code == 0
        task_id = result.output.strip().splitlines()[-1]
        assert patched_service.queue.get_task_status(task_id).data.title == "Episode One"

    def test_submit_invalid_url(self, runner, patched_service):
        result = runner.invoke(cli, ["submit", "not-a-url"])

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_status_unknown_task(self, runner, patched_service):
        result = runner.invoke(cli, ["status", "missing"])

        assert result.exit_code == 1

    def test_queue_counts(self, runner, patched_service):
        patched_service.submit(URL)

        result = runner.invoke(cli, ["queue"])

        assert result.exit_code == 0
        assert "Pending:   1" in result.output

    def test_process_runs_pipeline(self, runner, patched_service):
        result = runner.invoke(cli, ["process", URL])

        assert result.exit_code == 0, result.output
        assert "Done: episode" in result.output
        assert '"chunks_count"' in result.output

    def test_ask_without_index(self, runner, patched_service):
        result = runner.invoke(cli, ["ask", "What is discussed?"])

        assert result.exit_code == 0
        assert NOT_FOUND_ANSWER in result.output

    def test_ask_after_processing(self, runner, patched_service):
        runner.invoke(cli, ["process", URL, "--title", "Episode One"])

        result = runner.invoke(cli, ["ask", "What was the opening remark?", "-k", "2"])

        assert result.exit_code == 0
        assert "[Episode One " in result.output

    def test_check_missing_episode(self, runner, patched_service):
        result = runner.invoke(cli, ["check", "missing"])

        assert result.exit_code == 1
        assert "- Episode not found" in result.output
