"""
Resource lifecycle tracking and teardown.
"""

from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence

from pipewright.config import get_config
from pipewright.errors import ResourceLeakWarning
from pipewright.models import Leak, ProvisionedResource, ResourceStatus
from pipewright.pipeline.adapters import CommandAdapter
from pipewright.state.store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class TeardownReport:
    """Result of tearing down the resources of a run."""

    run_id: str
    removed: List[ProvisionedResource] = field(default_factory=list)
    leaked: List[Leak] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.leaked

    def to_dict(self):
        return {
            "run_id": self.run_id,
            "removed": [r.to_dict() for r in self.removed],
            "leaked": [l.to_dict() for l in self.leaked],
        }


class ResourceTracker:
    """
    Single source of truth for what a run has provisioned.

    Teardown walks active resources newest first, retries deletions that
    fail and records anything it cannot remove as a leak.
    """

    def __init__(
        self,
        store: StateStore,
        commands: Optional[CommandAdapter] = None,
        retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> None:
        config = get_config()
        self.store = store
        self.commands = commands or CommandAdapter(poll_interval=config.poll_interval)
        self.retries = config.teardown_retries if retries is None else retries
        self.backoff_seconds = (
            config.teardown_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self.timeout = config.default_timeout if timeout is None else timeout

    def register(
        self,
        run_id: str,
        resource_id: str,
        kind: str,
        stage: str,
        teardown: Sequence[str] = (),
    ) -> ProvisionedResource:
        """
        Record an active resource for a run.

        Registering an id that is already active for the run is a no-op
        and returns the existing record. An id that was torn down and
        shows up again (re-provisioned on resume) becomes active again.

        Args:
            run_id: Owning run
            resource_id: External identifier (instance id, release name, ...)
            kind: Resource kind, e.g. ``server``
            stage: Stage that created it
            teardown: Command that deletes it

        Returns:
            The ProvisionedResource record
        """
        for existing in self.active(run_id):
            if existing.resource_id == resource_id:
                return existing

        resource = ProvisionedResource(
            resource_id=resource_id,
            kind=kind,
            run_id=run_id,
            stage=stage,
            teardown=tuple(teardown),
        )
        self.store.record_resource(resource)
        logger.info(f"[{run_id}] Tracking {kind} {resource_id} from stage {stage}")
        return resource

    def active(self, run_id: str) -> List[ProvisionedResource]:
        return self.store.resources(run_id, status=ResourceStatus.ACTIVE)

    def teardown(self, run_id: str) -> TeardownReport:
        """
        Delete every active resource of a run.

        Args:
            run_id: Run whose resources should be removed

        Returns:
            TeardownReport listing removed and leaked resources
        """
        report = TeardownReport(run_id=run_id)
        resources = list(reversed(self.active(run_id)))
        if resources:
            logger.info(f"[{run_id}] Tearing down {len(resources)} resource(s)")

        for resource in resources:
            error = self._delete(resource)
            if error is None:
                removed = replace(resource, status=ResourceStatus.TORN_DOWN)
                self.store.record_resource(removed)
                report.removed.append(removed)
                logger.info(f"[{run_id}] Removed {resource.kind} {resource.resource_id}")
                continue

            self.store.record_resource(replace(resource, status=ResourceStatus.LEAKED))
            leak = Leak(run_id=run_id, resource_id=resource.resource_id, reason=error)
            self.store.record_leak(leak)
            report.leaked.append(leak)

            message = (
                f"[{run_id}] {resource.kind} {resource.resource_id} could not be torn down "
                f"and needs manual cleanup: {error}"
            )
            logger.warning(message)
            warnings.warn(message, ResourceLeakWarning, stacklevel=2)

        return report

    def _delete(self, resource: ProvisionedResource) -> Optional[str]:
        """Run the teardown command with retries. Returns the last error, or None."""
        if not resource.teardown:
            return "No teardown command"

        argv = list(resource.teardown)
        error = None
        for attempt in range(1, self.retries + 2):
            result = self.commands.run(argv, timeout=self.timeout)
            if result.ok:
                return None
            error = result.error or f"Exited with code {result.exit_code}"
            logger.warning(
                f"[{resource.run_id}] Teardown of {resource.resource_id} failed "
                f"(attempt {attempt}/{self.retries + 1}): {error}"
            )
            if attempt <= self.retries and self.backoff_seconds:
                time.sleep(self.backoff_seconds * 2 ** (attempt - 1))
        return error
