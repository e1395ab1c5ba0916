"""
External-process and HTTP adapters used to execute stages.

Adapters never raise for a failing command; they report what happened
in a CommandResult and leave retry decisions to the executor.
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import httpx

from pipewright.models import ProbeSpec

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 64_000


@dataclass
class CommandResult:
    """What an external command or probe did."""

    exit_code: Optional[int]
    output: str = ""
    timed_out: bool = False
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


def _tail(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return "...[truncated]...\n" + text[-MAX_OUTPUT_CHARS:]


class CommandAdapter:
    """
    Runs an argument list as a subprocess.

    Output (stdout and stderr merged) is spooled to a temporary file so a
    chatty tool can never block on a full pipe. The process is polled so
    that both the deadline and the cancel event are honoured.
    """

    def __init__(self, poll_interval: float = 0.05) -> None:
        self.poll_interval = poll_interval

    def run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        """
        Run a command to completion, timeout or cancellation.

        Args:
            argv: Program and arguments
            timeout: Seconds before the process is killed
            cancel: Event that, once set, kills the process
            env: Extra environment variables
            cwd: Working directory

        Returns:
            CommandResult with exit code and captured output
        """
        if not argv:
            return CommandResult(exit_code=None, error="Empty command")

        full_env = dict(os.environ)
        if env:
            full_env.update(env)

        with tempfile.TemporaryFile() as out:
            try:
                proc = subprocess.Popen(
                    list(argv),
                    stdout=out,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    env=full_env,
                    cwd=cwd,
                )
            except OSError as e:
                logger.error(f"Could not start {argv[0]}: {e}")
                return CommandResult(exit_code=127, error=str(e))

            deadline = time.monotonic() + timeout if timeout else None
            timed_out = cancelled = False

            while True:
                try:
                    proc.wait(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if cancel is not None and cancel.is_set():
                    cancelled = True
                elif deadline is not None and time.monotonic() >= deadline:
                    timed_out = True
                else:
                    continue
                proc.kill()
                proc.wait()
                break

            out.seek(0)
            output = _tail(out.read().decode("utf-8", errors="replace"))

        if timed_out:
            return CommandResult(
                exit_code=proc.returncode,
                output=output,
                timed_out=True,
                error=f"Timed out after {timeout}s",
            )
        if cancelled:
            return CommandResult(
                exit_code=proc.returncode,
                output=output,
                cancelled=True,
                error="Cancelled",
            )
        return CommandResult(
            exit_code=proc.returncode,
            output=output,
            error=None if proc.returncode == 0 else f"Exited with code {proc.returncode}",
        )


class HttpProbeAdapter:
    """Checks an HTTP endpoint with httpx."""

    def __init__(self, client: Optional[httpx.Client] = None) -> None:
        self.client = client

    def run(self, probe: ProbeSpec, timeout: Optional[float] = None) -> CommandResult:
        """
        Issue the probe request and compare the response to expectations.

        Args:
            probe: Probe definition with its URL already rendered
            timeout: Request timeout in seconds

        Returns:
            CommandResult with exit code 0 on a match, 1 otherwise
        """
        client = self.client or httpx.Client()
        try:
            response = client.request(probe.method, probe.url, timeout=timeout)
        except httpx.TimeoutException as e:
            logger.warning(f"Probe {probe.url} timed out: {e}")
            return CommandResult(exit_code=None, timed_out=True, error=f"Timed out: {e}")
        except httpx.HTTPError as e:
            logger.warning(f"Probe {probe.url} failed: {e}")
            return CommandResult(exit_code=1, error=str(e))
        finally:
            if self.client is None:
                client.close()

        output = f"{probe.method} {probe.url} -> {response.status_code}\n{_tail(response.text)}"
        if response.status_code != probe.expect_status:
            return CommandResult(
                exit_code=1,
                output=output,
                error=f"Expected status {probe.expect_status}, got {response.status_code}",
            )
        if probe.contains and probe.contains not in response.text:
            return CommandResult(
                exit_code=1,
                output=output,
                error=f"Response body does not contain {probe.contains!r}",
            )
        return CommandResult(exit_code=0, output=output)
