"""
pipewright - Deployment pipeline orchestration.

pipewright sequences the external tools of a delivery pipeline:
    Build → Package → Provision → Configure → Deploy → Verify

Stages form a dependency graph and run as black-box subprocesses (or HTTP
probes). Every attempt is persisted so failed runs can be resumed, and
provisioned infrastructure is tracked so failures never leave it behind.
"""

from pipewright.config import configure, get_config, PipewrightConfig
from pipewright.errors import (
    ConfigurationError,
    CycleError,
    ExecutionError,
    PipewrightError,
    ResourceLeakWarning,
    StageTimeoutError,
    UnknownDependencyError,
)
from pipewright.models import Outcome, RunRequest, RunStatus, StageAttempt, StageSpec
from pipewright.pipeline import Pipeline, RunReport, StageGraph

__version__ = "0.1.0"

__all__ = [
    # Config
    "configure",
    "get_config",
    "PipewrightConfig",
    # Pipeline
    "Pipeline",
    "RunReport",
    "StageGraph",
    # Models
    "Outcome",
    "RunRequest",
    "RunStatus",
    "StageAttempt",
    "StageSpec",
    # Errors
    "PipewrightError",
    "ConfigurationError",
    "CycleError",
    "UnknownDependencyError",
    "ExecutionError",
    "StageTimeoutError",
    "ResourceLeakWarning",
    # Version
    "__version__",
]
