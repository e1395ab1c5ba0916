"""
Stage execution: template rendering, adapter dispatch, timing and telemetry.
"""

from __future__ import annotations

import logging
import re
import shlex
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from pipewright.config import get_config
from pipewright.errors import ConfigurationError
from pipewright.models import Outcome, RunRequest, StageAttempt, StageSpec
from pipewright.pipeline.adapters import CommandAdapter, CommandResult, HttpProbeAdapter

logger = logging.getLogger(__name__)


@dataclass
class StageContext:
    """Context passed to stages during execution."""

    run_id: str
    request: RunRequest
    variables: Dict[str, str] = field(default_factory=dict)
    cancel: threading.Event = field(default_factory=threading.Event)

    def template_values(self, stage: str) -> Dict[str, str]:
        """Values available to ``{placeholders}`` in commands and probe URLs."""
        values = dict(self.variables)
        values.update(dict(self.request.variables))
        values.update(
            run_id=self.run_id,
            revision=self.request.revision,
            environment=self.request.environment,
            stage=stage,
        )
        return values


_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


def render(template: str, values: Dict[str, str]) -> str:
    """
    Substitute ``{name}`` placeholders for the names in ``values``.

    Any other braces are left alone, so arguments such as
    ``jsonpath={.status.phase}`` or ``{{json .}}`` pass through unchanged.
    """
    return _PLACEHOLDER.sub(lambda m: str(values.get(m.group(1), m.group(0))), template)


def split_command(command) -> Tuple[str, ...]:
    """Normalise a command given as a string or a list into an argument tuple."""
    if command is None:
        return ()
    if isinstance(command, str):
        try:
            return tuple(shlex.split(command))
        except ValueError as e:
            raise ConfigurationError(f"Cannot parse command {command!r}: {e}") from e
    if not isinstance(command, (list, tuple)):
        raise ConfigurationError(f"Command must be a string or a list, got {command!r}")
    return tuple(str(arg) for arg in command)


def extract_resource_ids(pattern: str, output: str) -> List[str]:
    """Resource ids captured by ``pattern`` across the lines of ``output``, in order."""
    regex = re.compile(pattern)
    ids: List[str] = []
    for line in output.splitlines():
        for match in regex.finditer(line):
            value = match.group(1) if regex.groups else match.group(0)
            if value and value not in ids:
                ids.append(value)
    return ids


class Stage:
    """
    Executable form of a StageSpec.

    ``run`` never raises for a failing command: every execution ends in
    exactly one StageAttempt.
    """

    def __init__(
        self,
        spec: StageSpec,
        commands: Optional[CommandAdapter] = None,
        probes: Optional[HttpProbeAdapter] = None,
    ) -> None:
        self.config = get_config()
        self.spec = spec
        self.commands = commands or CommandAdapter(poll_interval=self.config.poll_interval)
        self.probes = probes or HttpProbeAdapter()

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def timeout(self) -> float:
        return self.spec.timeout if self.spec.timeout is not None else self.config.default_timeout

    def execute(self, ctx: StageContext) -> CommandResult:
        """
        Dispatch to the probe or command adapter.

        Args:
            ctx: Stage context with run id, request and cancel event

        Returns:
            CommandResult from the adapter
        """
        values = ctx.template_values(self.name)
        if self.spec.probe is not None:
            probe = replace(self.spec.probe, url=render(self.spec.probe.url, values))
            return self.probes.run(probe, timeout=self.timeout)

        argv = [render(arg, values) for arg in self.spec.command]
        env = {key: render(value, values) for key, value in self.spec.env}
        logger.debug(f"[{ctx.run_id}] {self.name}: {shlex.join(argv)}")
        return self.commands.run(argv, timeout=self.timeout, cancel=ctx.cancel, env=env)

    def run(self, ctx: StageContext, attempt: int) -> StageAttempt:
        """
        Run one attempt of the stage with timing and error handling.

        Args:
            ctx: Stage context
            attempt: 1-based attempt number

        Returns:
            StageAttempt describing the outcome
        """
        started_at = datetime.now()

        if ctx.cancel.is_set():
            return StageAttempt(
                run_id=ctx.run_id,
                stage=self.name,
                attempt=attempt,
                started_at=started_at,
                finished_at=datetime.now(),
                outcome=Outcome.CANCELLED,
                error="Cancelled before start",
            )

        try:
            if self.config.telemetry_enabled:
                result = self._execute_with_telemetry(ctx, attempt)
            else:
                result = self.execute(ctx)
        except Exception as e:
            logger.exception(f"[{ctx.run_id}] Stage {self.name} raised")
            return StageAttempt(
                run_id=ctx.run_id,
                stage=self.name,
                attempt=attempt,
                started_at=started_at,
                finished_at=datetime.now(),
                outcome=Outcome.FAILED,
                error=str(e),
            )

        return StageAttempt(
            run_id=ctx.run_id,
            stage=self.name,
            attempt=attempt,
            started_at=started_at,
            finished_at=datetime.now(),
            outcome=self._outcome(result),
            exit_code=result.exit_code,
            output=result.output,
            error=result.error,
        )

    @staticmethod
    def _outcome(result: CommandResult) -> Outcome:
        if result.cancelled:
            return Outcome.CANCELLED
        if result.timed_out:
            return Outcome.TIMED_OUT
        if result.exit_code == 0:
            return Outcome.SUCCEEDED
        return Outcome.FAILED

    def _execute_with_telemetry(self, ctx: StageContext, attempt: int) -> CommandResult:
        """Execute stage with OpenTelemetry tracing."""
        try:
            from opentelemetry import trace
        except ImportError:
            return self.execute(ctx)

        tracer = trace.get_tracer(self.config.otel_service_name)
        with tracer.start_as_current_span(
            f"pipewright.stage.{self.name}",
            attributes={
                "pipewright.stage.name": self.name,
                "pipewright.stage.attempt": attempt,
                "pipewright.run.id": ctx.run_id,
                "pipewright.run.revision": ctx.request.revision,
                "pipewright.run.environment": ctx.request.environment,
            },
        ) as span:
            result = self.execute(ctx)
            span.set_attribute("pipewright.stage.outcome", self._outcome(result).value)
            if result.exit_code is not None:
                span.set_attribute("pipewright.stage.exit_code", result.exit_code)
            if result.error:
                span.set_attribute("pipewright.stage.error", result.error)
            return result
