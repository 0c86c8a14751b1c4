"""Retention run orchestration.

One run applies every configured policy, in declaration order, inside a
single storage transaction. Either every policy's deletions commit
together or, on any storage failure, none of them do: the transaction is
rolled back in full and the next scheduled run retries from scratch.

``run_once()`` is the single entry point shared by the scheduler, the
admin API and the CLI.
"""

from __future__ import annotations

import logging
import time
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import psycopg2

from errors import OverlapSkipped, StorageError
from retention_executor import PolicyResult, RetentionExecutor
from retention_policy import Policy, load_policies, resolve_config

logger = logging.getLogger(__name__)

# CRC32("retention_engine_run"); shared by every instance of the engine
RETENTION_LOCK_ID = zlib.crc32(b"retention_engine_run")

OUTCOME_SUCCESS = "success"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


@dataclass
class RetentionReport:
    """Outcome of one retention run. Never persisted."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: int = 0
    outcome: str = OUTCOME_SUCCESS
    results: List[PolicyResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def total_deleted(self) -> int:
        return sum(r.total_deleted for r in self.results)

    def result_for(self, collection: str) -> Optional[PolicyResult]:
        for result in self.results:
            if result.collection == collection:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "outcome": self.outcome,
            "total_deleted": self.total_deleted,
            "policies": [r.to_dict() for r in self.results],
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


class RetentionRun:
    """Applies an ordered set of policies in one transaction."""

    def __init__(
        self,
        policies: List[Policy],
        *,
        db_manager=None,
        executor: Optional[RetentionExecutor] = None,
        clock: Optional[Callable[[], datetime]] = None,
        isolation_level: str = "repeatable_read",
        statement_timeout_ms: Optional[int] = None,
        use_advisory_lock: bool = False,
    ):
        self.policies = list(policies)
        self._db_manager = db_manager
        self.executor = executor or RetentionExecutor()
        self._clock = clock or _utcnow
        self.isolation_level = isolation_level
        self.statement_timeout_ms = statement_timeout_ms
        self.use_advisory_lock = use_advisory_lock

    def _get_db_manager(self):
        if self._db_manager is None:
            from database import DatabaseError, get_db_manager

            try:
                self._db_manager = get_db_manager()
            except DatabaseError as e:
                raise StorageError(f"Storage unavailable: {e}") from e
        return self._db_manager

    def execute(self) -> RetentionReport:
        """Run every policy and commit, or roll everything back.

        Returns:
            RetentionReport with one PolicyResult per policy, in order.

        Raises:
            StorageError: The run failed and was rolled back.
            OverlapSkipped: Another instance holds the retention lock.
        """
        now = self._clock()
        started = time.monotonic()
        report = RetentionReport(started_at=now)
        results: List[PolicyResult] = []

        try:
            db = self._get_db_manager()
            with db.transaction(self.isolation_level, self.statement_timeout_ms) as cursor:
                if self.use_advisory_lock:
                    self._acquire_lock(cursor)
                for policy in self.policies:
                    results.append(self.executor.apply(policy, cursor, now))
        except OverlapSkipped as e:
            self._finish(report, started, OUTCOME_SKIPPED, error=str(e))
            logger.info(
                "Retention run skipped: %s",
                e,
                extra={"retention": report.to_dict()},
            )
            raise
        except StorageError as e:
            self._finish(report, started, OUTCOME_FAILED, error=str(e))
            logger.error(
                "Retention run finished: outcome=%s total_deleted=0 duration_ms=%d error=%s",
                OUTCOME_FAILED, report.duration_ms, e,
                extra={"retention": report.to_dict()},
            )
            raise

        report.results = results
        self._finish(report, started, OUTCOME_SUCCESS)

        for result in results:
            logger.info(
                "Retention policy applied: collection=%s age_deleted=%d cap_deleted=%d",
                result.collection, result.age_deleted, result.cap_deleted,
                extra={"retention": result.to_dict()},
            )
        logger.info(
            "Retention run finished: outcome=%s total_deleted=%d duration_ms=%d",
            report.outcome, report.total_deleted, report.duration_ms,
            extra={"retention": report.to_dict()},
        )
        return report

    def _finish(self, report: RetentionReport, started: float, outcome: str, error: Optional[str] = None) -> None:
        report.finished_at = self._clock()
        report.duration_ms = int((time.monotonic() - started) * 1000)
        report.outcome = outcome
        report.error = error

    @staticmethod
    def _acquire_lock(cursor) -> None:
        """Take the transaction-scoped retention lock or raise OverlapSkipped."""
        try:
            cursor.execute("SELECT pg_try_advisory_xact_lock(%s)", (RETENTION_LOCK_ID,))
            acquired = cursor.fetchone()[0]
        except psycopg2.Error as e:
            raise StorageError(f"Could not take retention lock: {e}") from e
        if not acquired:
            raise OverlapSkipped("Another instance holds the retention lock")


def run_once(config=None, db_manager=None) -> RetentionReport:
    """Apply all configured retention policies once.

    Raises:
        ConfigError: Policies could not be loaded.
        StorageError: The run failed and was rolled back.
        OverlapSkipped: Another instance is running retention.
    """
    config = resolve_config(config)
    policies = load_policies(config)
    run = RetentionRun(
        policies,
        db_manager=db_manager,
        isolation_level=config.retention.isolation_level,
        statement_timeout_ms=config.database.statement_timeout_ms or None,
        use_advisory_lock=config.retention.use_advisory_lock,
    )
    return run.execute()
