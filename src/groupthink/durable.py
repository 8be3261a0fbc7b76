"""Run-once, remember-the-result step execution for workflow jobs.

A job is a sequence of named steps. Each step's result is JSON-encoded and
stored under ``(job_id, step_name)`` before the job moves on, so a job that
is re-delivered after a crash replays finished steps from the store instead
of executing their side effects again.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retries with a fixed backoff shape.

    ``limit`` counts retries, so a step runs at most ``limit + 1`` times.
    """

    limit: int = 2
    delay: float = 5.0
    backoff: str = "linear"

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the ``attempt``-th failure (1-based)."""
        if self.backoff == "constant":
            return self.delay
        if self.backoff == "exponential":
            return self.delay * (2 ** (attempt - 1))
        return self.delay * attempt


# Model calls: two retries, 5s then 10s.
MODEL_RETRY = RetryPolicy(limit=2, delay=5.0, backoff="linear")


class StepStore(Protocol):
    def get(self, job_id: str, step_name: str) -> Optional[str]: ...

    def put(self, job_id: str, step_name: str, payload: str) -> None: ...

    def clear(self, job_id: str) -> None: ...


class InMemoryStepStore:
    """Process-local store; survives retries but not restarts."""

    def __init__(self) -> None:
        self._results: dict[tuple[str, str], str] = {}

    def get(self, job_id: str, step_name: str) -> Optional[str]:
        return self._results.get((job_id, step_name))

    def put(self, job_id: str, step_name: str, payload: str) -> None:
        self._results[(job_id, step_name)] = payload

    def clear(self, job_id: str) -> None:
        for key in [k for k in self._results if k[0] == job_id]:
            del self._results[key]


class SqliteStepStore:
    """Step results in a local SQLite file, shared by all worker processes on a host."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        Path(self.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self._ensure_tables_exist()

    def _ensure_tables_exist(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_steps (
                    job_id TEXT NOT NULL,
                    step_name TEXT NOT NULL,
                    result TEXT NOT NULL,
                    completed_at TEXT NOT NULL,
                    PRIMARY KEY (job_id, step_name)
                )
                """
            )
            conn.commit()

    def get(self, job_id: str, step_name: str) -> Optional[str]:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT result FROM workflow_steps WHERE job_id = ? AND step_name = ?",
                (job_id, step_name),
            ).fetchone()
        return row[0] if row else None

    def put(self, job_id: str, step_name: str, payload: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO workflow_steps (job_id, step_name, result, completed_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(job_id, step_name) DO UPDATE SET
                    result = excluded.result,
                    completed_at = excluded.completed_at
                """,
                (job_id, step_name, payload, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()

    def clear(self, job_id: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("DELETE FROM workflow_steps WHERE job_id = ?", (job_id,))
            conn.commit()


class DurableSteps:
    """Step executor bound to one job execution."""

    def __init__(
        self,
        job_id: str,
        store: StepStore,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.job_id = job_id
        self.store = store
        self._sleep = sleep

    async def do(
        self,
        name: str,
        fn: Callable[[], Awaitable[Any]],
        *,
        retry: Optional[RetryPolicy] = None,
        retry_if: Optional[Callable[[BaseException], bool]] = None,
    ) -> Any:
        """Return the stored result of ``name`` or run ``fn`` and store it.

        The value returned is always the JSON round-trip of the result, so the
        first run and a replay see the same types. With ``retry``, failures for
        which ``retry_if`` holds (all failures when it is None) are retried.
        """
        cached = self.store.get(self.job_id, name)
        if cached is not None:
            _log.info("job %s: step %s replayed from checkpoint", self.job_id, name)
            return json.loads(cached)

        attempt = 0
        while True:
            attempt += 1
            try:
                result = await fn()
                break
            except Exception as exc:
                retryable = retry is not None and attempt <= retry.limit
                if retryable and retry_if is not None:
                    retryable = retry_if(exc)
                if not retryable:
                    raise
                wait = retry.delay_for(attempt)  # type: ignore[union-attr]
                _log.warning(
                    "job %s: step %s failed (attempt %d), retrying in %.1fs: %s",
                    self.job_id,
                    name,
                    attempt,
                    wait,
                    exc,
                )
                await self._sleep(wait)

        payload = json.dumps(result)
        self.store.put(self.job_id, name, payload)
        return json.loads(payload)

    def clear(self) -> None:
        self.store.clear(self.job_id)
