"""Tests for the pipewright command line."""

import json

import pytest
from click.testing import CliRunner

from pipewright.cli import main

from conftest import lines, py, touch

FAST_ENV = {
    "PIPEWRIGHT_POLL_INTERVAL": "0.01",
    "PIPEWRIGHT_TEARDOWN_RETRIES": "0",
    "PIPEWRIGHT_TEARDOWN_BACKOFF_SECONDS": "0",
}


@pytest.fixture
def cli(tmp_path):
    """Invoke the CLI against a state directory under tmp_path."""
    runner = CliRunner()
    state_dir = str(tmp_path / "cli-state")

    def invoke(*args):
        return runner.invoke(main, ["--state-dir", state_dir, *args], env=FAST_ENV)

    return invoke


def _write_pipeline(path, stages):
    path.write_text(json.dumps({"name": "webapp", "stages": stages}))
    return str(path)


def _run_id(output):
    for line in output.splitlines():
        if line.startswith("Running webapp as "):
            return line.split(" as ", 1)[1].rstrip(".")
    raise AssertionError(f"No run id in output:\n{output}")


@pytest.fixture
def passing(tmp_path):
    log = tmp_path / "log"
    teardown_log = tmp_path / "teardown"
    path = _write_pipeline(tmp_path / "pipeline.json", [
        {"name": "build", "command": list(touch(log, "build"))},
        {
            "name": "provision",
            "needs": ["build"],
            "command": list(py("print('instance_id = i-42')")),
            "resource": {
                "kind": "server",
                "id_pattern": r"instance_id = (\S+)",
                "teardown": list(touch(teardown_log, "destroyed")),
            },
        },
    ])
    return path, log, teardown_log


@pytest.fixture
def failing(tmp_path):
    return _write_pipeline(tmp_path / "failing.json", [
        {"name": "build", "command": list(py("import sys; sys.exit(1)"))},
        {"name": "deploy", "needs": ["build"], "command": list(py("pass"))},
    ])


class TestValidate:
    def test_prints_execution_order(self, cli, passing):
        result = cli("validate", passing[0])

        assert result.exit_code == 0
        assert "Pipeline webapp: 2 stage(s)" in result.output
        assert "build" in result.output
        assert "provision" in result.output

    def test_rejects_cycle(self, cli, tmp_path):
        path = _write_pipeline(tmp_path / "cycle.json", [
            {"name": "a", "needs": ["b"], "command": ["true"]},
            {"name": "b", "needs": ["a"], "command": ["true"]},
        ])

        result = cli("validate", path)

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_reports_malformed_field(self, cli, tmp_path):
        path = _write_pipeline(tmp_path / "bad.json", [
            {"name": "a", "command": ["true"], "timeout": "soon"},
        ])

        result = cli("validate", path)

        assert result.exit_code == 1
        assert "Error: Stage 'a': invalid 'timeout'" in result.output


class TestRun:
    def test_successful_run(self, cli, passing):
        path, log, _ = passing

        result = cli("run", path, "-r", "abc123", "-e", "staging")

        assert result.exit_code == 0, result.output
        assert "Status: succeeded" in result.output
        assert "server i-42: active" in result.output
        assert lines(log) == ["build"]

    def test_failed_run_exits_non_zero(self, cli, failing):
        result = cli("run", failing, "-r", "abc123", "-e", "staging")

        assert result.exit_code == 1
        assert "Status: failed" in result.output
        assert "deploy not_run" in result.output

    def test_bad_variable(self, cli, passing):
        result = cli("run", passing[0], "-r", "abc", "-e", "qa", "-v", "novalue")

        assert result.exit_code != 0
        assert "KEY=VALUE" in result.output


class TestInspection:
    def test_status_and_runs(self, cli, passing):
        run_id = _run_id(cli("run", passing[0], "-r", "abc123", "-e", "staging").output)

        status = cli("status", run_id, "-o", "json")
        assert status.exit_code == 0
        data = json.loads(status.output)
        assert data["id"] == run_id
        assert data["status"] == "succeeded"
        assert data["stages"] == {"build": "succeeded", "provision": "succeeded"}

        runs = cli("runs")
        assert run_id in runs.output
        assert "abc123@staging" in runs.output

    def test_status_of_unknown_run(self, cli):
        result = cli("status", "run-missing")

        assert result.exit_code == 1
        assert "run-missing" in result.output

    def test_no_runs(self, cli):
        assert "No runs found" in cli("runs").output

    def test_config(self, cli, tmp_path):
        result = cli("config")

        assert result.exit_code == 0
        assert str(tmp_path / "cli-state") in result.output


class TestTeardown:
    def test_teardown_removes_resources(self, cli, passing):
        path, _, teardown_log = passing
        run_id = _run_id(cli("run", path, "-r", "abc123", "-e", "staging").output)

        result = cli("teardown", run_id)

        assert result.exit_code == 0
        assert "removed server i-42" in result.output
        assert lines(teardown_log) == ["destroyed"]
        assert "rolled_back" in cli("status", run_id).output

        again = cli("teardown", run_id)
        assert "No active resources" in again.output

    def test_leaks_are_listed_until_acknowledged(self, cli, tmp_path):
        path = _write_pipeline(tmp_path / "leaky.json", [
            {
                "name": "provision",
                "command": list(py("print('instance_id = i-7')")),
                "resource": {
                    "kind": "server",
                    "id_pattern": r"instance_id = (\S+)",
                    "teardown": list(py("import sys; sys.exit(1)")),
                },
            },
        ])
        run_id = _run_id(cli("run", path, "-r", "abc123", "-e", "staging").output)

        with pytest.warns(Warning):
            result = cli("teardown", run_id)
        assert result.exit_code == 1
        assert "leaked i-7" in result.output

        listed = cli("leaks", "list")
        assert f"[{run_id}] i-7" in listed.output

        assert cli("leaks", "ack", run_id, "i-7").exit_code == 0
        assert "No leaked resources" in cli("leaks", "list").output
        assert "(acknowledged)" in cli("leaks", "list", "--all").output

    def test_ack_unknown_leak(self, cli):
        result = cli("leaks", "ack", "run-missing", "i-1")

        assert result.exit_code == 1


class TestAbort:
    def test_abort_finished_run(self, cli, passing):
        run_id = _run_id(cli("run", passing[0], "-r", "abc123", "-e", "staging").output)

        result = cli("abort", run_id)

        assert result.exit_code == 0
        assert "already succeeded" in result.output

    def test_abort_unknown_run(self, cli):
        assert cli("abort", "run-missing").exit_code == 1
