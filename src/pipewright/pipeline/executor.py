"""
Concurrent, fail-fast execution of a stage graph for one run.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Optional, Set, Tuple

from pipewright.config import get_config
from pipewright.models import Outcome, Run, RunStatus, StageAttempt
from pipewright.pipeline.graph import StageGraph
from pipewright.pipeline.stage import Stage, StageContext, extract_resource_ids, render
from pipewright.resources.tracker import ResourceTracker
from pipewright.state.store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class ExecutionOutcome:
    """How an execution pass over the graph ended."""

    status: RunStatus
    failure: Optional[StageAttempt] = None
    aborted: bool = False


class Executor:
    """
    Runs the stages of one run on a bounded thread pool.

    The calling thread schedules stages and is the only one writing to the
    state store for the run; worker threads just execute attempts and hand
    the StageAttempt back.
    """

    def __init__(
        self,
        graph: StageGraph,
        stages: Dict[str, Stage],
        store: StateStore,
        tracker: ResourceTracker,
        max_concurrency: Optional[int] = None,
        variables: Optional[Dict[str, str]] = None,
    ) -> None:
        config = get_config()
        self.graph = graph
        self.stages = stages
        self.store = store
        self.tracker = tracker
        self.max_concurrency = max(1, max_concurrency or config.max_concurrency)
        self.poll_interval = max(config.poll_interval, 0.01)
        self.variables = dict(variables or {})
        self._cancel = threading.Event()
        self._failed = threading.Event()

    def abort(self) -> None:
        """Cancel in-flight stages and stop scheduling new ones."""
        self._cancel.set()

    @property
    def aborting(self) -> bool:
        return self._cancel.is_set()

    def execute(self, run: Run, skip: Iterable[str] = ()) -> ExecutionOutcome:
        """
        Execute every stage of the graph not listed in ``skip``.

        Args:
            run: The run being executed
            skip: Stages whose earlier success is preserved (resume)

        Returns:
            ExecutionOutcome with the final run status
        """
        ctx = StageContext(
            run_id=run.id,
            request=run.request,
            variables=self.variables,
            cancel=self._cancel,
        )
        self._failed.clear()
        began = datetime.now()
        succeeded: Set[str] = set(skip)
        started: Set[str] = set(skip)
        tries: Dict[str, int] = {}
        in_flight: Dict[Future, Tuple[str, int]] = {}
        failure: Optional[StageAttempt] = None

        self.store.set_status(run.id, RunStatus.RUNNING)
        logger.info(f"[{run.id}] Executing {len(self.graph) - len(succeeded)} stage(s)")

        with ThreadPoolExecutor(max_workers=self.max_concurrency) as pool:

            def submit(name: str, delay: float = 0.0) -> None:
                number = self.store.next_attempt_number(run.id, name)
                tries[name] = tries.get(name, 0) + 1
                self.store.record_intent(run.id, name, number, datetime.now())
                future = pool.submit(self._attempt, self.stages[name], ctx, number, delay)
                in_flight[future] = (name, number)
                started.add(name)

            while True:
                if not self.aborting and self.store.abort_requested(run.id, since=began):
                    logger.warning(f"[{run.id}] Abort requested")
                    self.abort()

                if failure is None and not self.aborting:
                    for name in self.graph.ready(succeeded, started):
                        if len(in_flight) >= self.max_concurrency:
                            break
                        logger.info(f"[{run.id}] Starting stage {name}")
                        submit(name)

                if not in_flight:
                    break

                try:
                    done, _ = wait(list(in_flight), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    logger.warning(f"[{run.id}] Interrupted, cancelling in-flight stages")
                    self.abort()
                    continue

                for future in done:
                    name, number = in_flight.pop(future)
                    attempt = future.result()
                    self.store.record_attempt(attempt)
                    self._register_resources(ctx, attempt)

                    if attempt.outcome == Outcome.SUCCEEDED:
                        succeeded.add(name)
                        logger.info(f"[{run.id}] Stage {name} succeeded (attempt {number})")
                        continue

                    policy = self.stages[name].spec.retry
                    if (
                        failure is None
                        and not self.aborting
                        and policy.allows_retry(tries[name], attempt.outcome)
                    ):
                        delay = policy.delay_before(tries[name] + 1)
                        logger.warning(
                            f"[{run.id}] Stage {name} {attempt.outcome.value} "
                            f"(attempt {tries[name]}/{policy.max_attempts}), retrying in {delay:.1f}s"
                        )
                        submit(name, delay)
                        continue

                    logger.error(
                        f"[{run.id}] Stage {name} {attempt.outcome.value}: {attempt.error or ''}".rstrip()
                    )
                    if failure is None:
                        failure = attempt
                        self._failed.set()

        if failure is None and not self.aborting and succeeded >= set(self.graph.names):
            status = RunStatus.SUCCEEDED
        else:
            status = RunStatus.FAILED
        self.store.set_status(run.id, status)
        logger.info(f"[{run.id}] Run {status.value}")
        return ExecutionOutcome(status=status, failure=failure, aborted=self.aborting)

    def _attempt(self, stage: Stage, ctx: StageContext, number: int, delay: float) -> StageAttempt:
        if delay > 0:
            started_at = datetime.now()
            deadline = time.monotonic() + delay
            while not (ctx.cancel.is_set() or self._failed.is_set()):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                ctx.cancel.wait(min(remaining, self.poll_interval))
            # A retry still backing off when another stage fails never starts.
            if self._failed.is_set() and not ctx.cancel.is_set():
                return StageAttempt(
                    run_id=ctx.run_id,
                    stage=stage.name,
                    attempt=number,
                    started_at=started_at,
                    finished_at=datetime.now(),
                    outcome=Outcome.CANCELLED,
                    error="Retry skipped: another stage failed",
                )
        return stage.run(ctx, number)

    def _register_resources(self, ctx: StageContext, attempt: StageAttempt) -> None:
        spec = self.stages[attempt.stage].spec.resource
        if spec is None or not attempt.output:
            return
        for resource_id in extract_resource_ids(spec.id_pattern, attempt.output):
            values = ctx.template_values(attempt.stage)
            values.update(resource_id=resource_id, kind=spec.kind)
            self.tracker.register(
                run_id=attempt.run_id,
                resource_id=resource_id,
                kind=spec.kind,
                stage=attempt.stage,
                teardown=[render(arg, values) for arg in spec.teardown],
            )
