"""Tests for concurrent stage execution, retries and fail-fast."""

import threading
import time

import pytest

from pipewright.models import Outcome, ResourceSpec, Run, RunRequest, RunStatus
from pipewright.pipeline.executor import Executor
from pipewright.pipeline.graph import StageGraph
from pipewright.pipeline.stage import Stage
from pipewright.resources.tracker import ResourceTracker

from conftest import fail_until, lines, py, stage, touch


def _executor(store, specs, max_concurrency=4, variables=None):
    graph = StageGraph(specs)
    return Executor(
        graph=graph,
        stages={spec.name: Stage(spec) for spec in specs},
        store=store,
        tracker=ResourceTracker(store),
        max_concurrency=max_concurrency,
        variables=variables,
    )


def _new_run(store, revision="abc123", environment="staging"):
    run = Run(id=Run.new_id(), pipeline="test", request=RunRequest(revision, environment))
    store.create_run(run)
    return run


class TestExecution:
    """Happy path and ordering."""

    def test_all_stages_run_in_dependency_order(self, store, tmp_path):
        log = tmp_path / "log"
        executor = _executor(store, [
            stage("build", touch(log, "build")),
            stage("package", touch(log, "package"), needs=["build"]),
            stage("deploy", touch(log, "deploy"), needs=["package"]),
        ])
        run = _new_run(store)

        outcome = executor.execute(run)

        assert outcome.status == RunStatus.SUCCEEDED
        assert outcome.failure is None
        assert lines(log) == ["build", "package", "deploy"]
        assert store.get_status(run.id) == RunStatus.SUCCEEDED

    def test_one_attempt_recorded_per_execution(self, store):
        executor = _executor(store, [stage("a"), stage("b", needs=["a"])])
        run = _new_run(store)
        executor.execute(run)

        attempts = store.attempts(run.id)
        assert [(a.stage, a.attempt, a.outcome) for a in attempts] == [
            ("a", 1, Outcome.SUCCEEDED),
            ("b", 1, Outcome.SUCCEEDED),
        ]

    def test_templates_are_rendered(self, store, tmp_path):
        out = tmp_path / "rendered"
        command = py(f"open(r'{out}', 'w').write('{{revision}} {{environment}} {{region}}')")
        executor = _executor(store, [stage("deploy", command)], variables={"region": "eu-west-1"})
        run = _new_run(store, revision="deadbeef", environment="prod")

        assert executor.execute(run).status == RunStatus.SUCCEEDED
        assert out.read_text() == "deadbeef prod eu-west-1"

    def test_literal_braces_pass_through(self, store, tmp_path):
        """Only known placeholders are substituted; jsonpath-style braces are kept."""
        out = tmp_path / "argv"
        command = py("import sys; open(sys.argv[1], 'w').write(' '.join(sys.argv[2:]))") + (
            str(out),
            "jsonpath={.status.phase}",
            "{{json .}}",
            "{revision}-{unset}",
        )
        executor = _executor(store, [stage("inspect", command)])
        run = _new_run(store, revision="deadbeef")

        assert executor.execute(run).status == RunStatus.SUCCEEDED
        assert out.read_text() == "jsonpath={.status.phase} {{json .}} deadbeef-{unset}"

    def test_independent_branches_run_concurrently(self, store):
        sleeper = py("import time; time.sleep(0.6)")
        executor = _executor(
            store,
            [stage("a", sleeper), stage("b", sleeper), stage("c", sleeper)],
            max_concurrency=3,
        )
        run = _new_run(store)

        started = time.monotonic()
        assert executor.execute(run).status == RunStatus.SUCCEEDED
        assert time.monotonic() - started < 1.6

    def test_concurrency_limit_is_respected(self, store, tmp_path):
        """With one worker, no two attempts overlap."""
        sleeper = py("import time; time.sleep(0.2)")
        executor = _executor(store, [stage("a", sleeper), stage("b", sleeper)], max_concurrency=1)
        run = _new_run(store)
        executor.execute(run)

        first, second = store.attempts(run.id)
        assert first.finished_at <= second.started_at


class TestFailures:
    """Retries, timeouts and fail-fast."""

    def test_retry_until_success(self, store, tmp_path):
        counter = tmp_path / "counter"
        executor = _executor(store, [stage("flaky", fail_until(counter, 2), attempts=3)])
        run = _new_run(store)

        outcome = executor.execute(run)

        assert outcome.status == RunStatus.SUCCEEDED
        outcomes = [a.outcome for a in store.attempts(run.id)]
        assert outcomes == [Outcome.FAILED, Outcome.FAILED, Outcome.SUCCEEDED]

    def test_exhausted_retries_fail_the_run(self, store):
        executor = _executor(store, [stage("broken", py("import sys; sys.exit(2)"), attempts=2)])
        run = _new_run(store)

        outcome = executor.execute(run)

        assert outcome.status == RunStatus.FAILED
        assert outcome.failure.stage == "broken"
        assert outcome.failure.exit_code == 2
        assert len(store.attempts(run.id)) == 2

    def test_downstream_of_failure_never_runs(self, store, tmp_path):
        log = tmp_path / "log"
        executor = _executor(store, [
            stage("build", py("import sys; sys.exit(1)")),
            stage("deploy", touch(log), needs=["build"]),
        ])
        run = _new_run(store)
        executor.execute(run)

        assert lines(log) == []
        assert store.last_outcomes(run.id) == {"build": Outcome.FAILED}

    def test_fail_fast_with_sibling_branches(self, store, tmp_path):
        """A, B->A, C->A: B fails after retries, C is never started."""
        log = tmp_path / "log"
        executor = _executor(
            store,
            [
                stage("a", touch(log, "a")),
                stage("b", py("import sys; sys.exit(1)"), needs=["a"], attempts=2),
                stage("c", touch(log, "c"), needs=["a"]),
            ],
            max_concurrency=1,
        )
        run = _new_run(store)

        outcome = executor.execute(run)

        assert outcome.status == RunStatus.FAILED
        assert lines(log) == ["a"]
        assert "c" not in store.last_outcomes(run.id)
        assert [a.attempt for a in store.attempts(run.id) if a.stage == "b"] == [1, 2]

    def test_in_flight_branch_completes_after_failure(self, store, tmp_path):
        log = tmp_path / "log"
        executor = _executor(
            store,
            [
                stage("slow", py(f"import time; time.sleep(0.5); open(r'{log}', 'a').write('slow')")),
                stage("fast_fail", py("import sys; sys.exit(1)")),
            ],
            max_concurrency=2,
        )
        run = _new_run(store)

        outcome = executor.execute(run)

        assert outcome.status == RunStatus.FAILED
        assert log.read_text() == "slow"
        assert store.last_outcomes(run.id)["slow"] == Outcome.SUCCEEDED

    def test_timeout_is_distinct_from_failure(self, store):
        executor = _executor(store, [stage("hang", py("import time; time.sleep(10)"), timeout=0.3)])
        run = _new_run(store)

        outcome = executor.execute(run)

        assert outcome.status == RunStatus.FAILED
        assert outcome.failure.outcome == Outcome.TIMED_OUT

    def test_timeout_not_retried_when_disabled(self, store):
        from dataclasses import replace

        spec = stage("hang", py("import time; time.sleep(10)"), timeout=0.2, attempts=3)
        spec = replace(spec, retry=replace(spec.retry, retry_on_timeout=False))
        executor = _executor(store, [spec])
        run = _new_run(store)
        executor.execute(run)

        assert len(store.attempts(run.id)) == 1

    def test_retry_backing_off_is_skipped_after_failure(self, store, tmp_path):
        """A retry still waiting out its delay never runs once a sibling has failed."""
        from dataclasses import replace

        log = tmp_path / "log"
        flaky = stage("flaky", py(f"import sys; open(r'{log}', 'a').write('flaky' + chr(10)); sys.exit(1)"), attempts=2)
        flaky = replace(flaky, retry=replace(flaky.retry, backoff_seconds=2.0))
        executor = _executor(
            store,
            [flaky, stage("broken", py("import sys, time; time.sleep(0.5); sys.exit(1)"))],
            max_concurrency=2,
        )
        run = _new_run(store)

        outcome = executor.execute(run)

        assert outcome.status == RunStatus.FAILED
        assert outcome.failure.stage == "broken"
        assert lines(log) == ["flaky"]
        assert store.last_outcomes(run.id)["flaky"] == Outcome.CANCELLED


class TestAbort:
    """Cancellation of in-flight stages."""

    def _wait_for_start(self, store, run_id, stage_name):
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            if stage_name in store.last_outcomes(run_id):
                return
            time.sleep(0.02)
        pytest.fail(f"{stage_name} never started")

    def test_abort_cancels_in_flight_stage(self, store, tmp_path):
        log = tmp_path / "log"
        executor = _executor(store, [
            stage("slow", py("import time; time.sleep(30)")),
            stage("after", touch(log), needs=["slow"]),
        ])
        run = _new_run(store)
        result = {}

        worker = threading.Thread(target=lambda: result.update(outcome=executor.execute(run)))
        worker.start()
        self._wait_for_start(store, run.id, "slow")
        executor.abort()
        worker.join(timeout=10)

        assert not worker.is_alive()
        assert result["outcome"].status == RunStatus.FAILED
        assert result["outcome"].aborted
        assert store.last_outcomes(run.id)["slow"] == Outcome.CANCELLED
        assert lines(log) == []

    def test_abort_requested_through_store(self, store):
        executor = _executor(store, [stage("slow", py("import time; time.sleep(30)"))])
        run = _new_run(store)
        result = {}

        worker = threading.Thread(target=lambda: result.update(outcome=executor.execute(run)))
        worker.start()
        self._wait_for_start(store, run.id, "slow")
        store.request_abort(run.id)
        worker.join(timeout=10)

        assert not worker.is_alive()
        assert result["outcome"].aborted


class TestResources:
    """Resources are registered from stage output."""

    def test_resource_ids_registered_from_output(self, store):
        spec = stage(
            "provision",
            py("print('instance_id = i-0abc'); print('instance_id = i-0def')"),
            resource=ResourceSpec(
                kind="server",
                id_pattern=r"instance_id = (\S+)",
                teardown=("destroy", "{resource_id}", "{environment}"),
            ),
        )
        executor = _executor(store, [spec])
        run = _new_run(store, environment="qa")
        executor.execute(run)

        resources = store.resources(run.id)
        assert [r.resource_id for r in resources] == ["i-0abc", "i-0def"]
        assert resources[0].teardown == ("destroy", "i-0abc", "qa")
        assert resources[0].kind == "server"

    def test_resources_from_failed_attempt_are_tracked(self, store):
        spec = stage(
            "provision",
            py("import sys; print('instance_id = i-partial'); sys.exit(1)"),
            resource=ResourceSpec(kind="server", id_pattern=r"instance_id = (\S+)", teardown=("true",)),
        )
        executor = _executor(store, [spec])
        run = _new_run(store)
        executor.execute(run)

        assert [r.resource_id for r in store.resources(run.id)] == ["i-partial"]
