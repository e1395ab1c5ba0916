"""
Durable, append-only record of runs, stage attempts and resources.

Nothing is ever updated in place: status changes are appended as events
and the current value is the latest event. An attempt is bracketed by an
intent row (written before the command starts) and an attempt row
(written when it ends). An intent without its attempt means the process
died in between and is reported as an ``unknown`` outcome.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from pipewright.errors import RunNotFoundError
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

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS runs (
  id TEXT PRIMARY KEY,
  pipeline TEXT NOT NULL,
  created_at TEXT NOT NULL,
  request_json TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS run_events (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  run_id TEXT NOT NULL,
  status TEXT NOT NULL,
  recorded_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS attempt_intents (
  run_id TEXT NOT NULL,
  stage TEXT NOT NULL,
  attempt INTEGER NOT NULL,
  started_at TEXT NOT NULL,
  PRIMARY KEY (run_id, stage, attempt)
);
CREATE TABLE IF NOT EXISTS attempts (
  run_id TEXT NOT NULL,
  stage TEXT NOT NULL,
  attempt INTEGER NOT NULL,
  started_at TEXT NOT NULL,
  finished_at TEXT,
  outcome TEXT NOT NULL,
  exit_code INTEGER,
  output TEXT NOT NULL,
  error TEXT,
  PRIMARY KEY (run_id, stage, attempt)
);
CREATE TABLE IF NOT EXISTS resource_events (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  run_id TEXT NOT NULL,
  resource_id TEXT NOT NULL,
  kind TEXT NOT NULL,
  stage TEXT NOT NULL,
  status TEXT NOT NULL,
  teardown_json TEXT NOT NULL,
  created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS leaks (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  run_id TEXT NOT NULL,
  resource_id TEXT NOT NULL,
  reason TEXT NOT NULL,
  recorded_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS leak_acks (
  leak_seq INTEGER PRIMARY KEY REFERENCES leaks(seq),
  acknowledged_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS abort_requests (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  run_id TEXT NOT NULL,
  requested_at TEXT NOT NULL
);
"""


def _now() -> str:
    return datetime.now().isoformat()


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class StateStore:
    """
    SQLite-backed state store.

    A connection is opened per operation so several processes (a running
    pipeline and an operator issuing ``status`` or ``abort``) can share
    one database file.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with self._connection() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = sqlite3.connect(self.path, timeout=30, isolation_level=None)
            try:
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=FULL;")
                yield conn
            finally:
                conn.close()

    # Runs

    def create_run(self, run: Run) -> None:
        """Persist a new run together with its initial status."""
        with self._connection() as conn:
            conn.execute("BEGIN")
            conn.execute(
                "INSERT INTO runs(id, pipeline, created_at, request_json) VALUES(?,?,?,?)",
                (run.id, run.pipeline, run.created_at.isoformat(), json.dumps(run.request.to_dict())),
            )
            conn.execute(
                "INSERT INTO run_events(run_id, status, recorded_at) VALUES(?,?,?)",
                (run.id, run.status.value, _now()),
            )
            conn.execute("COMMIT")

    def set_status(self, run_id: str, status: RunStatus) -> None:
        """Append a status transition for a run."""
        self._require_run(run_id)
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO run_events(run_id, status, recorded_at) VALUES(?,?,?)",
                (run_id, status.value, _now()),
            )
        logger.debug(f"[{run_id}] status -> {status.value}")

    def get_status(self, run_id: str) -> RunStatus:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT status FROM run_events WHERE run_id=? ORDER BY seq DESC LIMIT 1",
                (run_id,),
            ).fetchone()
        if not row:
            raise RunNotFoundError(run_id)
        return RunStatus(row[0])

    def get_run(self, run_id: str) -> Run:
        """Load a run with its status and full attempt history."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT id, pipeline, created_at, request_json FROM runs WHERE id=?",
                (run_id,),
            ).fetchone()
        if not row:
            raise RunNotFoundError(run_id)
        return Run(
            id=row[0],
            pipeline=row[1],
            created_at=datetime.fromisoformat(row[2]),
            request=RunRequest.from_dict(json.loads(row[3])),
            status=self.get_status(run_id),
            attempts=self.attempts(run_id),
        )

    def list_runs(self, limit: int = 20) -> List[Run]:
        """Most recent runs first, without attempt history."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT id, pipeline, created_at, request_json FROM runs "
                "ORDER BY created_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            Run(
                id=r[0],
                pipeline=r[1],
                created_at=datetime.fromisoformat(r[2]),
                request=RunRequest.from_dict(json.loads(r[3])),
                status=self.get_status(r[0]),
            )
            for r in rows
        ]

    def _require_run(self, run_id: str) -> None:
        with self._connection() as conn:
            row = conn.execute("SELECT 1 FROM runs WHERE id=?", (run_id,)).fetchone()
        if not row:
            raise RunNotFoundError(run_id)

    # Attempts

    def record_intent(self, run_id: str, stage: str, attempt: int, started_at: datetime) -> None:
        """Mark an attempt as started before its command runs."""
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO attempt_intents(run_id, stage, attempt, started_at) VALUES(?,?,?,?)",
                (run_id, stage, attempt, started_at.isoformat()),
            )

    def record_attempt(self, attempt: StageAttempt) -> None:
        """Append a finished attempt."""
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO attempts(run_id, stage, attempt, started_at, finished_at, outcome, "
                "exit_code, output, error) VALUES(?,?,?,?,?,?,?,?,?)",
                (
                    attempt.run_id,
                    attempt.stage,
                    attempt.attempt,
                    attempt.started_at.isoformat(),
                    attempt.finished_at.isoformat() if attempt.finished_at else None,
                    attempt.outcome.value,
                    attempt.exit_code,
                    attempt.output,
                    attempt.error,
                ),
            )

    def attempts(self, run_id: str) -> List[StageAttempt]:
        """
        All attempts of a run in start order.

        Intents that never got an attempt row are returned with outcome
        ``unknown``.
        """
        with self._connection() as conn:
            finished = conn.execute(
                "SELECT stage, attempt, started_at, finished_at, outcome, exit_code, output, error "
                "FROM attempts WHERE run_id=?",
                (run_id,),
            ).fetchall()
            intents = conn.execute(
                "SELECT stage, attempt, started_at FROM attempt_intents WHERE run_id=?",
                (run_id,),
            ).fetchall()

        by_key: Dict[Tuple[str, int], StageAttempt] = {}
        for stage, number, started, ended, outcome, exit_code, output, error in finished:
            by_key[(stage, number)] = StageAttempt(
                run_id=run_id,
                stage=stage,
                attempt=number,
                started_at=datetime.fromisoformat(started),
                finished_at=_parse(ended),
                outcome=Outcome(outcome),
                exit_code=exit_code,
                output=output,
                error=error,
            )
        for stage, number, started in intents:
            if (stage, number) not in by_key:
                by_key[(stage, number)] = StageAttempt(
                    run_id=run_id,
                    stage=stage,
                    attempt=number,
                    started_at=datetime.fromisoformat(started),
                    outcome=Outcome.UNKNOWN,
                    error="No result recorded; the process may have stopped mid-attempt",
                )

        return sorted(by_key.values(), key=lambda a: (a.started_at, a.stage, a.attempt))

    def last_outcomes(self, run_id: str) -> Dict[str, Outcome]:
        """Outcome of the latest attempt of each stage that has been attempted."""
        latest: Dict[str, StageAttempt] = {}
        for attempt in self.attempts(run_id):
            current = latest.get(attempt.stage)
            if current is None or attempt.attempt > current.attempt:
                latest[attempt.stage] = attempt
        return {stage: a.outcome for stage, a in latest.items()}

    def next_attempt_number(self, run_id: str, stage: str) -> int:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT MAX(attempt) FROM attempt_intents WHERE run_id=? AND stage=?",
                (run_id, stage),
            ).fetchone()
        return (row[0] or 0) + 1

    # Resources

    def record_resource(self, resource: ProvisionedResource) -> None:
        """Append a resource status event."""
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO resource_events(run_id, resource_id, kind, stage, status, "
                "teardown_json, created_at) VALUES(?,?,?,?,?,?,?)",
                (
                    resource.run_id,
                    resource.resource_id,
                    resource.kind,
                    resource.stage,
                    resource.status.value,
                    json.dumps(list(resource.teardown)),
                    resource.created_at.isoformat(),
                ),
            )

    def resources(self, run_id: str, status: Optional[ResourceStatus] = None) -> List[ProvisionedResource]:
        """Current state of every resource of a run, in creation order."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT resource_id, kind, stage, status, teardown_json, created_at "
                "FROM resource_events WHERE run_id=? ORDER BY seq",
                (run_id,),
            ).fetchall()

        current: Dict[str, ProvisionedResource] = {}
        for resource_id, kind, stage, state, teardown, created in rows:
            if resource_id in current:
                current[resource_id].status = ResourceStatus(state)
                continue
            current[resource_id] = ProvisionedResource(
                resource_id=resource_id,
                kind=kind,
                run_id=run_id,
                stage=stage,
                created_at=datetime.fromisoformat(created),
                status=ResourceStatus(state),
                teardown=tuple(json.loads(teardown)),
            )

        result = list(current.values())
        if status is not None:
            result = [r for r in result if r.status == status]
        return result

    # Leaks

    def record_leak(self, leak: Leak) -> None:
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO leaks(run_id, resource_id, reason, recorded_at) VALUES(?,?,?,?)",
                (leak.run_id, leak.resource_id, leak.reason, leak.recorded_at.isoformat()),
            )

    def leaks(self, run_id: Optional[str] = None, include_acknowledged: bool = False) -> List[Leak]:
        """Leak records, latest reason per resource, optionally for one run."""
        query = (
            "SELECT l.run_id, l.resource_id, l.reason, l.recorded_at, a.acknowledged_at "
            "FROM leaks l LEFT JOIN leak_acks a ON a.leak_seq = l.seq"
        )
        params: Tuple = ()
        if run_id is not None:
            query += " WHERE l.run_id=?"
            params = (run_id,)
        query += " ORDER BY l.seq"

        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()

        latest: Dict[Tuple[str, str], Leak] = {}
        for run, resource_id, reason, recorded, acked in rows:
            latest[(run, resource_id)] = Leak(
                run_id=run,
                resource_id=resource_id,
                reason=reason,
                recorded_at=datetime.fromisoformat(recorded),
                acknowledged=acked is not None,
            )
        leaks = list(latest.values())
        if not include_acknowledged:
            leaks = [l for l in leaks if not l.acknowledged]
        return leaks

    def acknowledge_leak(self, run_id: str, resource_id: str) -> bool:
        """
        Mark the latest leak of a resource as handled by an operator.

        The acknowledgement covers that leak only; if the resource leaks
        again later it is surfaced again. Returns False if there was no
        such leak.
        """
        with self._connection() as conn:
            row = conn.execute(
                "SELECT MAX(seq) FROM leaks WHERE run_id=? AND resource_id=?",
                (run_id, resource_id),
            ).fetchone()
            if row[0] is None:
                return False
            conn.execute(
                "INSERT OR IGNORE INTO leak_acks(leak_seq, acknowledged_at) VALUES(?,?)",
                (row[0], _now()),
            )
        return True

    # Abort requests

    def request_abort(self, run_id: str) -> None:
        """Ask whichever process owns the run to abort it."""
        self._require_run(run_id)
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO abort_requests(run_id, requested_at) VALUES(?,?)",
                (run_id, _now()),
            )

    def abort_requested(self, run_id: str, since: Optional[datetime] = None) -> bool:
        """Whether an abort was requested for the run, optionally only after ``since``."""
        cutoff = since.isoformat() if since else ""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM abort_requests WHERE run_id=? AND requested_at > ?",
                (run_id, cutoff),
            ).fetchone()
        return row is not None
