"""Shared fixtures for pipewright tests."""

import os
import sys
from pathlib import Path

import pytest

from pipewright.config import configure, reset_config
from pipewright.models import RetryPolicy, StageSpec
from pipewright.state.store import StateStore


@pytest.fixture(autouse=True)
def config(tmp_path, monkeypatch):
    """Fast, isolated configuration with the state database under tmp_path."""
    for key in list(os.environ):
        if key.startswith("PIPEWRIGHT_"):
            monkeypatch.delenv(key)

    cfg = configure(
        state_dir=str(tmp_path / "state"),
        max_concurrency=4,
        default_timeout=30.0,
        teardown_retries=1,
        poll_interval=0.01,
        default_backoff_seconds=0.0,
        teardown_backoff_seconds=0.0,
    )
    yield cfg
    reset_config()


@pytest.fixture
def store(config):
    return StateStore(config.database_path)


def py(code: str):
    """Command running a Python snippet. ``{name}`` is substituted when it names a template value."""
    return (sys.executable, "-c", code)


def touch(path: Path, text: str = "x"):
    """Command appending a line to a marker file."""
    return py(f"open(r'{path}', 'a').write('{text}\\n')")


def fail_until(counter: Path, successes_after: int):
    """Command that fails until it has been run ``successes_after`` times."""
    return py(
        "import os, sys\n"
        f"p = r'{counter}'\n"
        "n = int(open(p).read()) if os.path.exists(p) else 0\n"
        "open(p, 'w').write(str(n + 1))\n"
        f"sys.exit(0 if n >= {successes_after} else 1)"
    )


def stage(name, command=None, needs=(), attempts=1, timeout=None, **kwargs):
    """Build a StageSpec with test-friendly defaults."""
    return StageSpec(
        name=name,
        needs=tuple(needs),
        command=tuple(command or py("pass")),
        timeout=timeout,
        retry=RetryPolicy(max_attempts=attempts, backoff_seconds=0.0),
        **kwargs,
    )


def lines(path: Path):
    """Lines written to a marker file, empty if it does not exist."""
    if not path.exists():
        return []
    return path.read_text().splitlines()
