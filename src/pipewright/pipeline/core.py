"""
Core pipeline orchestration.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set, Union

from pipewright.config import get_config
from pipewright.errors import ExecutionError, RunStateError, StageTimeoutError
from pipewright.models import (
    Leak,
    Outcome,
    ProvisionedResource,
    ResourceStatus,
    Run,
    RunRequest,
    RunStatus,
    StageAttempt,
)
from pipewright.pipeline.adapters import CommandAdapter, HttpProbeAdapter
from pipewright.pipeline.executor import Executor
from pipewright.pipeline.graph import StageGraph
from pipewright.pipeline.loader import PipelineDefinition, load_definition
from pipewright.pipeline.stage import Stage
from pipewright.resources.tracker import ResourceTracker, TeardownReport
from pipewright.state.store import StateStore

logger = logging.getLogger(__name__)

NOT_RUN = "not_run"


@dataclass
class RunReport:
    """Current state of a run: per-stage outcomes, resources and leaks."""

    run: Run
    stage_order: List[str]
    resources: List[ProvisionedResource] = field(default_factory=list)
    leaks: List[Leak] = field(default_factory=list)
    teardown: Optional[TeardownReport] = None

    @property
    def status(self) -> RunStatus:
        return self.run.status

    @property
    def successful(self) -> bool:
        return self.run.status == RunStatus.SUCCEEDED

    @property
    def stage_outcomes(self) -> Dict[str, str]:
        """Outcome of each stage's latest attempt, ``not_run`` if never attempted."""
        outcomes = {}
        for name in self.stage_order:
            last = self.run.last_attempt(name)
            outcomes[name] = last.outcome.value if last else NOT_RUN
        return outcomes

    @property
    def failed_stage(self) -> Optional[StageAttempt]:
        """The first stage whose latest attempt did not succeed, if any."""
        for name in self.stage_order:
            last = self.run.last_attempt(name)
            if last is not None and last.outcome != Outcome.SUCCEEDED:
                return last
        return None

    def raise_for_status(self) -> None:
        """Raise ExecutionError or StageTimeoutError if the run did not succeed."""
        if self.successful:
            return
        failed = self.failed_stage
        if failed is None:
            raise RunStateError(f"Run {self.run.id} is {self.run.status.value}")
        if failed.outcome == Outcome.TIMED_OUT:
            raise StageTimeoutError(failed.stage, None)
        raise ExecutionError(failed.stage, failed.exit_code, failed.error or "")

    def summary(self) -> str:
        """Generate a summary of the run."""
        lines = [
            f"Run {self.run.id} ({self.run.pipeline})",
            f"Revision: {self.run.request.revision}  Environment: {self.run.request.environment}",
            f"Status: {self.run.status.value}",
            "",
            "Stages:",
        ]

        icons = {
            Outcome.SUCCEEDED.value: "✓",
            Outcome.FAILED.value: "✗",
            Outcome.TIMED_OUT.value: "⧖",
            Outcome.CANCELLED.value: "⊘",
            Outcome.UNKNOWN.value: "?",
            NOT_RUN: "·",
        }
        for name, outcome in self.stage_outcomes.items():
            last = self.run.last_attempt(name)
            detail = ""
            if last is not None:
                if last.duration_seconds is not None:
                    detail = f"({last.duration_seconds:.1f}s, attempt {last.attempt})"
                else:
                    detail = f"(attempt {last.attempt})"
            lines.append(f"  {icons.get(outcome, '?')} {name} {outcome} {detail}".rstrip())
            if last is not None and last.error and outcome != Outcome.SUCCEEDED.value:
                lines.append(f"    {last.error}")

        if self.resources:
            lines.append("")
            lines.append("Resources:")
            for resource in self.resources:
                lines.append(f"  {resource.kind} {resource.resource_id}: {resource.status.value}")

        if self.leaks:
            lines.append("")
            lines.append("LEAKED RESOURCES (manual cleanup required):")
            for leak in self.leaks:
                lines.append(f"  {leak.resource_id}: {leak.reason}")

        return "\n".join(lines)

    def to_dict(self):
        """Convert to dictionary."""
        data = self.run.to_dict()
        data["stages"] = self.stage_outcomes
        data["resources"] = [r.to_dict() for r in self.resources]
        data["leaks"] = [l.to_dict() for l in self.leaks]
        return data


def run_report(store: StateStore, run_id: str, stage_order: Optional[List[str]] = None) -> RunReport:
    """
    Build a RunReport straight from the state store.

    Without a stage order (no pipeline definition at hand) stages are
    listed in the order they were first attempted.
    """
    run = store.get_run(run_id)
    if stage_order is None:
        stage_order = list(dict.fromkeys(a.stage for a in run.attempts))
    return RunReport(
        run=run,
        stage_order=stage_order,
        resources=store.resources(run_id),
        leaks=store.leaks(run_id),
    )


def teardown_run(
    store: StateStore, tracker: ResourceTracker, run_id: str, force: bool = False
) -> TeardownReport:
    """Operator-requested teardown: remove the run's resources and mark it rolled back."""
    status = store.get_status(run_id)
    if status == RunStatus.RUNNING:
        if not force:
            raise RunStateError(f"Run {run_id} is marked running; abort it or use force")
        logger.warning(f"Run {run_id} is marked running; tearing down anyway")
    report = tracker.teardown(run_id)
    if status != RunStatus.PENDING:
        store.set_status(run_id, RunStatus.ROLLED_BACK)
    return report


class Pipeline:
    """
    Deployment pipeline bound to a state store.

    Trigger, execute, resume, query and tear down runs of one stage graph.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        store: Optional[StateStore] = None,
        commands: Optional[CommandAdapter] = None,
        probes: Optional[HttpProbeAdapter] = None,
        tracker: Optional[ResourceTracker] = None,
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            definition: Validated pipeline definition
            store: State store (default: database under the configured state dir)
            commands: Adapter running stage commands
            probes: Adapter running HTTP probes
            tracker: Resource tracker (default: one sharing ``store``)
        """
        self.config = get_config()
        self.definition = definition
        self.store = store or StateStore(self.config.database_path)
        self.commands = commands or CommandAdapter(poll_interval=self.config.poll_interval)
        self.probes = probes or HttpProbeAdapter()
        self.tracker = tracker or ResourceTracker(self.store, commands=self.commands)
        self._executors: Dict[str, Executor] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_file(cls, path: Union[str, Path], **kwargs) -> "Pipeline":
        """Create a pipeline from a YAML or JSON definition file."""
        return cls(load_definition(path), **kwargs)

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def graph(self) -> StageGraph:
        return self.definition.graph

    def trigger(self, request: RunRequest) -> str:
        """
        Register a new run for a revision and environment.

        Returns:
            The new run id
        """
        run = Run(id=Run.new_id(), pipeline=self.name, request=request)
        self.store.create_run(run)
        logger.info(
            f"Triggered run {run.id} of {self.name} "
            f"(revision {request.revision}, environment {request.environment})"
        )
        return run.id

    def run(self, request: RunRequest) -> RunReport:
        """Trigger a run and execute it to completion."""
        return self.execute(self.trigger(request))

    def execute(self, run_id: str) -> RunReport:
        """
        Execute a pending run.

        Returns:
            RunReport with all stage outcomes
        """
        status = self.store.get_status(run_id)
        if status != RunStatus.PENDING:
            raise RunStateError(f"Run {run_id} is {status.value}, not pending")
        return self._execute(run_id, skip=set())

    def resume(self, run_id: str, force: bool = False) -> RunReport:
        """
        Resume a failed or interrupted run.

        Only stages whose last attempt did not succeed are executed again.
        Stages whose resources have since been torn down are invalidated,
        together with their succeeded descendants.

        Args:
            run_id: Run to resume
            force: Allow resuming a run still marked running

        Returns:
            RunReport after the resumed execution
        """
        status = self.store.get_status(run_id)
        if status == RunStatus.SUCCEEDED:
            raise RunStateError(f"Run {run_id} already succeeded")
        if status == RunStatus.RUNNING and not force:
            raise RunStateError(
                f"Run {run_id} is marked running; use force if its process is gone"
            )

        skip = self.resumable_successes(run_id)
        logger.info(
            f"Resuming run {run_id}: preserving {sorted(skip) or 'nothing'}, "
            f"re-running {[n for n in self.graph.order() if n not in skip]}"
        )
        return self._execute(run_id, skip=skip)

    def resumable_successes(self, run_id: str) -> Set[str]:
        """Stages whose success still holds and can be skipped on resume."""
        outcomes = self.store.last_outcomes(run_id)
        succeeded = {
            name for name, outcome in outcomes.items()
            if outcome == Outcome.SUCCEEDED and name in self.graph
        }

        gone = {
            r.stage for r in self.store.resources(run_id)
            if r.status != ResourceStatus.ACTIVE and r.stage in self.graph
        }
        invalid: Set[str] = set()
        for name in gone & succeeded:
            invalid.add(name)
            invalid |= self.graph.downstream(name)
        return succeeded - invalid

    def status(self, run_id: str) -> RunReport:
        """Current state of a run and its per-stage outcomes."""
        return run_report(self.store, run_id, self.graph.order())

    def teardown(self, run_id: str, force: bool = False) -> TeardownReport:
        """
        Explicitly remove every active resource of a finished run.

        The run is marked rolled back.
        """
        with self._lock:
            running = run_id in self._executors
        if running:
            raise RunStateError(f"Run {run_id} is still running; abort it first")
        return teardown_run(self.store, self.tracker, run_id, force=force)

    def abort(self, run_id: str) -> None:
        """Cancel a run executing in this process, or ask its owning process to."""
        with self._lock:
            executor = self._executors.get(run_id)
        if executor is not None:
            logger.warning(f"Aborting run {run_id}")
            executor.abort()
        else:
            self.store.request_abort(run_id)

    def _execute(self, run_id: str, skip: Set[str]) -> RunReport:
        run = self.store.get_run(run_id)
        executor = Executor(
            graph=self.graph,
            stages={
                name: Stage(self.graph[name], commands=self.commands, probes=self.probes)
                for name in self.graph.names
            },
            store=self.store,
            tracker=self.tracker,
            max_concurrency=self.config.max_concurrency,
            variables=self.definition.variables,
        )

        with self._lock:
            self._executors[run_id] = executor
        try:
            if self.config.telemetry_enabled:
                outcome = self._execute_with_telemetry(run, executor, skip)
            else:
                outcome = executor.execute(run, skip=skip)
        finally:
            with self._lock:
                self._executors.pop(run_id, None)

        teardown = None
        if outcome.status == RunStatus.FAILED and self.config.teardown_on_failure:
            teardown = self.tracker.teardown(run_id)

        report = self.status(run_id)
        report.teardown = teardown
        return report

    def _execute_with_telemetry(self, run: Run, executor: Executor, skip: Set[str]):
        """Run the executor with OpenTelemetry tracing."""
        try:
            from opentelemetry import trace
        except ImportError:
            return executor.execute(run, skip=skip)

        tracer = trace.get_tracer(self.config.otel_service_name)
        with tracer.start_as_current_span(
            "pipewright.run",
            attributes={
                "pipewright.run.id": run.id,
                "pipewright.pipeline.name": self.name,
                "pipewright.pipeline.stages": len(self.graph),
                "pipewright.run.revision": run.request.revision,
                "pipewright.run.environment": run.request.environment,
            },
        ) as span:
            outcome = executor.execute(run, skip=skip)
            span.set_attribute("pipewright.run.status", outcome.status.value)
            span.set_attribute("pipewright.run.aborted", outcome.aborted)
            return outcome
