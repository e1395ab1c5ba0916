"""
Error types raised by pipewright.
"""

from __future__ import annotations

from typing import List, Optional


class PipewrightError(Exception):
    """Base class for pipewright errors."""


class ConfigurationError(PipewrightError):
    """Raised when a pipeline definition is invalid. Fatal at load time."""


class DuplicateStageError(ConfigurationError):
    """Raised when two stages share a name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Duplicate stage name: {name}")
        self.name = name


class UnknownDependencyError(ConfigurationError):
    """Raised when a stage depends on a stage that does not exist."""

    def __init__(self, stage: str, dependency: str) -> None:
        super().__init__(f"Stage {stage!r} depends on unknown stage {dependency!r}")
        self.stage = stage
        self.dependency = dependency


class CycleError(ConfigurationError):
    """Raised when stage dependencies form a cycle."""

    def __init__(self, cycle: List[str]) -> None:
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}")
        self.cycle = cycle


class ExecutionError(PipewrightError):
    """An external command exited non-zero after exhausting its retries."""

    def __init__(self, stage: str, exit_code: Optional[int], message: str = "") -> None:
        super().__init__(message or f"Stage {stage!r} exited with code {exit_code}")
        self.stage = stage
        self.exit_code = exit_code


class StageTimeoutError(ExecutionError):
    """An external command exceeded its timeout after exhausting its retries."""

    def __init__(self, stage: str, timeout: Optional[float]) -> None:
        super().__init__(stage, None, f"Stage {stage!r} timed out after {timeout}s")
        self.timeout = timeout


class RunNotFoundError(PipewrightError, KeyError):
    """Raised when a run id is not in the state store."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id

    def __str__(self) -> str:
        return self.args[0]


class RunStateError(PipewrightError):
    """Raised when an operation is not allowed in the run's current status."""


class ResourceLeakWarning(UserWarning):
    """A provisioned resource could not be torn down and needs manual cleanup."""
