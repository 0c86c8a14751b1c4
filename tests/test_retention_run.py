"""Tests for retention run orchestration.

Covers:
  - Policies applied in declaration order inside one transaction
  - Report aggregation and serialization
  - Idempotence of back-to-back runs
  - Whole-run rollback when any policy fails
  - Advisory lock contention
  - Observability: one line per policy and one summary line
  - run_once wiring from configuration
"""

import logging
from unittest.mock import patch

import pytest

from config import AppConfig, RetentionConfig
from errors import OverlapSkipped, StorageError
from helpers import FakeDatabaseManager, days_ago
from retention_run import RETENTION_LOCK_ID, RetentionReport, RetentionRun, run_once


def _seed(store):
    # notifications: 3 old read, 1 old unread, 4 fresh unread for u1
    for _ in range(3):
        store.add("notifications", user_id="u1", created_at=days_ago(120), is_read=True)
    store.add("notifications", user_id="u1", created_at=days_ago(120), is_read=False)
    for i in range(4):
        store.add("notifications", user_id="u1", created_at=days_ago(i), is_read=False)
    # integration logs: 2 old, 6 fresh for c1
    for _ in range(2):
        store.add("integration_logs", company_id="c1", created_at=days_ago(45))
    for i in range(6):
        store.add("integration_logs", company_id="c1", created_at=days_ago(i))


@pytest.fixture
def small_policies():
    from retention_policy import build_policies
    return build_policies(RetentionConfig(max_notifications=3, max_logs=4))


def _run(policies, fake_db, now, **kwargs):
    return RetentionRun(policies, db_manager=fake_db, clock=lambda: now, **kwargs)


class TestRetentionRun:
    """RetentionRun applies every policy and commits once."""

    def test_report_counts(self, store, fake_db, now, small_policies):
        _seed(store)

        report = _run(small_policies, fake_db, now).execute()

        assert report.outcome == "success"
        assert [r.collection for r in report.results] == ["notifications", "integration_logs"]
        notifications = report.result_for("notifications")
        logs = report.result_for("integration_logs")
        assert (notifications.age_deleted, notifications.cap_deleted) == (3, 2)
        assert (logs.age_deleted, logs.cap_deleted) == (2, 2)
        assert report.total_deleted == 9
        assert store.count("notifications") == 3
        assert store.count("integration_logs") == 4

    def test_single_transaction(self, store, fake_db, now, small_policies):
        _seed(store)

        _run(small_policies, fake_db, now).execute()

        assert store.commits == 1
        assert len(fake_db.cursors) == 1

    def test_declaration_order(self, store, fake_db, now, small_policies):
        _run(small_policies, fake_db, now).execute()

        tables = [text.split('"')[1] for text, _ in fake_db.cursors[0].statements]
        assert tables == ["notifications", "notifications", "integration_logs", "integration_logs"]

    def test_isolation_level_passed_through(self, store, fake_db, now, small_policies):
        _run(small_policies, fake_db, now, isolation_level="serializable").execute()

        assert store.isolation_levels == ["serializable"]

    def test_idempotent(self, store, fake_db, now, small_policies):
        _seed(store)
        run = _run(small_policies, fake_db, now)

        first = run.execute()
        second = run.execute()

        assert first.total_deleted > 0
        assert second.total_deleted == 0
        assert all(r.age_deleted == 0 and r.cap_deleted == 0 for r in second.results)

    def test_report_to_dict(self, store, fake_db, now, small_policies):
        _seed(store)

        data = _run(small_policies, fake_db, now).execute().to_dict()

        assert data["outcome"] == "success"
        assert data["total_deleted"] == 9
        assert data["started_at"] == now.isoformat()
        assert data["policies"][0] == {
            "collection": "notifications",
            "age_deleted": 3,
            "cap_deleted": 2,
            "total_deleted": 5,
        }
        assert data["error"] is None


class TestRollbackOnFailure:
    """A failure anywhere rolls back every policy in the run."""

    def test_failure_in_second_policy_undoes_first(self, store, fake_db, now, small_policies):
        _seed(store)
        store.fail_on = ("integration_logs", "cap")
        before = {table: store.ids(table) for table in store.tables}

        with pytest.raises(StorageError):
            _run(small_policies, fake_db, now).execute()

        assert store.rollbacks == 1
        assert store.commits == 0
        assert {table: store.ids(table) for table in store.tables} == before

    def test_retry_after_failure_succeeds(self, store, fake_db, now, small_policies):
        _seed(store)
        store.fail_on = ("notifications", "age")
        run = _run(small_policies, fake_db, now)

        with pytest.raises(StorageError):
            run.execute()
        store.fail_on = None
        report = run.execute()

        assert report.total_deleted == 9

    def test_failure_is_logged(self, store, fake_db, now, small_policies, caplog):
        store.fail_on = ("notifications", "cap")

        with caplog.at_level(logging.INFO, logger="retention_run"):
            with pytest.raises(StorageError):
                _run(small_policies, fake_db, now).execute()

        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert "outcome=failed" in errors[0].getMessage()
        assert errors[0].retention["outcome"] == "failed"
        assert not any("Retention policy applied" in r.getMessage() for r in caplog.records)

    def test_unavailable_storage(self, now, small_policies):
        from database import ConnectionPoolError

        with patch("database.get_db_manager", side_effect=ConnectionPoolError("refused")):
            with pytest.raises(StorageError, match="Storage unavailable"):
                RetentionRun(small_policies, clock=lambda: now).execute()


class TestAdvisoryLock:
    """Only one instance applies retention at a time."""

    def test_lock_taken_first(self, store, fake_db, now, small_policies):
        _run(small_policies, fake_db, now, use_advisory_lock=True).execute()

        text, params = fake_db.cursors[0].statements[0]
        assert "pg_try_advisory_xact_lock" in text
        assert params == (RETENTION_LOCK_ID,)

    def test_lock_held_elsewhere_skips_run(self, store, fake_db, now, small_policies):
        _seed(store)
        store.lock_available = False
        before = store.count("notifications")

        with pytest.raises(OverlapSkipped):
            _run(small_policies, fake_db, now, use_advisory_lock=True).execute()

        assert store.count("notifications") == before
        assert store.commits == 0


class TestObservability:
    """One structured line per policy, one summary line per run."""

    def test_log_lines(self, store, fake_db, now, small_policies, caplog):
        _seed(store)

        with caplog.at_level(logging.INFO, logger="retention_run"):
            _run(small_policies, fake_db, now).execute()

        policy_lines = [r for r in caplog.records if "Retention policy applied" in r.getMessage()]
        summary_lines = [r for r in caplog.records if "Retention run finished" in r.getMessage()]
        assert len(policy_lines) == 2
        assert len(summary_lines) == 1
        assert policy_lines[0].retention == {
            "collection": "notifications",
            "age_deleted": 3,
            "cap_deleted": 2,
            "total_deleted": 5,
        }
        assert "outcome=success total_deleted=9" in summary_lines[0].getMessage()
        assert "duration_ms" in summary_lines[0].retention


class TestRunOnce:
    """run_once builds policies from configuration."""

    def test_uses_config(self, store, now):
        _seed(store)
        config = AppConfig(retention=RetentionConfig(max_notifications=3, max_logs=4,
                                                     use_advisory_lock=False))

        with patch("retention_run._utcnow", return_value=now):
            report = run_once(config=config, db_manager=FakeDatabaseManager(store))

        assert isinstance(report, RetentionReport)
        assert report.total_deleted == 9

    def test_env_thresholds(self, store, now):
        _seed(store)

        with patch.dict("os.environ", {"CLEANUP_MAX_LOGS": "1", "CLEANUP_USE_ADVISORY_LOCK": "false"}):
            with patch("retention_run._utcnow", return_value=now):
                report = run_once(db_manager=FakeDatabaseManager(store))

        assert store.count("integration_logs") == 1
        assert report.result_for("integration_logs").cap_deleted == 5
