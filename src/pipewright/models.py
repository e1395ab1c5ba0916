"""
Core data models for pipewright.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class RunStatus(str, Enum):
    """Status of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def finished(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ROLLED_BACK)


class Outcome(str, Enum):
    """Outcome of a single stage attempt."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class ResourceStatus(str, Enum):
    """Lifecycle status of a provisioned resource."""

    ACTIVE = "active"
    TORN_DOWN = "torn_down"
    LEAKED = "leaked"


@dataclass(frozen=True)
class RetryPolicy:
    """How often a stage is attempted and how long to wait in between."""

    max_attempts: int = 1
    backoff_seconds: float = 0.0
    backoff_multiplier: float = 2.0
    retry_on_timeout: bool = True

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before the given 1-based attempt."""
        if attempt <= 1:
            return 0.0
        return self.backoff_seconds * self.backoff_multiplier ** (attempt - 2)

    def allows_retry(self, attempt: int, outcome: Outcome) -> bool:
        """Whether another attempt may follow ``attempt`` ending in ``outcome``."""
        if attempt >= self.max_attempts:
            return False
        if outcome == Outcome.TIMED_OUT:
            return self.retry_on_timeout
        return outcome == Outcome.FAILED


@dataclass(frozen=True)
class ProbeSpec:
    """An HTTP check used in place of a command, typically to verify a deployment."""

    url: str
    method: str = "GET"
    expect_status: int = 200
    contains: Optional[str] = None


@dataclass(frozen=True)
class ResourceSpec:
    """Describes the external resources a stage provisions."""

    kind: str
    id_pattern: str
    teardown: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StageSpec:
    """
    One named unit of work in a pipeline.

    Immutable once loaded; ``command`` arguments are templates rendered
    per attempt (see ``pipewright.pipeline.stage``).
    """

    name: str
    needs: Tuple[str, ...] = ()
    command: Tuple[str, ...] = ()
    timeout: Optional[float] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    description: str = ""
    env: Tuple[Tuple[str, str], ...] = ()
    probe: Optional[ProbeSpec] = None
    resource: Optional[ResourceSpec] = None


@dataclass(frozen=True)
class RunRequest:
    """What to deploy and where."""

    revision: str
    environment: str
    variables: Tuple[Tuple[str, str], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revision": self.revision,
            "environment": self.environment,
            "variables": dict(self.variables),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunRequest":
        return cls(
            revision=data["revision"],
            environment=data["environment"],
            variables=tuple(sorted((data.get("variables") or {}).items())),
        )


@dataclass(frozen=True)
class StageAttempt:
    """One execution of a stage. Append-only."""

    run_id: str
    stage: str
    attempt: int
    started_at: datetime
    outcome: Outcome
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    output: str = ""
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get attempt duration in seconds."""
        if self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "stage": self.stage,
            "attempt": self.attempt,
            "outcome": self.outcome.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "exit_code": self.exit_code,
            "error": self.error,
        }


@dataclass
class Run:
    """One execution instance of a pipeline."""

    id: str
    pipeline: str
    request: RunRequest
    status: RunStatus = RunStatus.PENDING
    created_at: datetime = field(default_factory=datetime.now)
    attempts: List[StageAttempt] = field(default_factory=list)

    @staticmethod
    def new_id() -> str:
        return f"run-{datetime.now().strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}"

    def last_attempt(self, stage: str) -> Optional[StageAttempt]:
        """Most recent attempt of a stage, if any."""
        for attempt in reversed(self.attempts):
            if attempt.stage == stage:
                return attempt
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "pipeline": self.pipeline,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "request": self.request.to_dict(),
            "attempts": [a.to_dict() for a in self.attempts],
        }


@dataclass
class ProvisionedResource:
    """An external infrastructure object created as a side effect of a run."""

    resource_id: str
    kind: str
    run_id: str
    stage: str
    created_at: datetime = field(default_factory=datetime.now)
    status: ResourceStatus = ResourceStatus.ACTIVE
    teardown: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "resource_id": self.resource_id,
            "kind": self.kind,
            "run_id": self.run_id,
            "stage": self.stage,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
        }


@dataclass
class Leak:
    """A resource teardown could not remove, kept until an operator acknowledges it."""

    run_id: str
    resource_id: str
    reason: str
    recorded_at: datetime = field(default_factory=datetime.now)
    acknowledged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "run_id": self.run_id,
            "resource_id": self.resource_id,
            "reason": self.reason,
            "recorded_at": self.recorded_at.isoformat(),
            "acknowledged": self.acknowledged,
        }
