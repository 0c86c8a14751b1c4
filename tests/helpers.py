"""Shared test helpers for the retention engine test suite."""

import copy
import re
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

import psycopg2
from psycopg2 import sql

from errors import StorageError

_PROJECT_ROOT = Path(__file__).parent.parent

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def get_alembic_head() -> str:
    """Return current Alembic head revision dynamically."""
    from alembic.config import Config
    from alembic.script import ScriptDirectory

    cfg = Config(str(_PROJECT_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    return ScriptDirectory.from_config(cfg).get_current_head()


def render_sql(query) -> str:
    """Render a psycopg2 composable to text without a live connection."""
    if isinstance(query, str):
        return query
    if isinstance(query, sql.Composed):
        return "".join(render_sql(part) for part in query.seq)
    if isinstance(query, sql.Identifier):
        return ".".join('"%s"' % s for s in query.strings)
    if isinstance(query, sql.SQL):
        return query.string
    if isinstance(query, sql.Literal):
        return repr(query.wrapped)
    raise TypeError(f"Cannot render {type(query).__name__}")


def days_ago(days: float, now: datetime = NOW) -> datetime:
    return now - timedelta(days=days)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class FakeStore:
    """Tables as lists of row dicts, plus failure injection."""

    def __init__(self):
        self.tables = {"notifications": [], "integration_logs": []}
        self.lock_available = True
        self.fail_on = None  # (table, "age" | "cap")
        self.commits = 0
        self.rollbacks = 0
        self.isolation_levels = []
        self._next_id = 1

    def add(self, table: str, **row) -> dict:
        if "id" not in row:
            row["id"] = self._next_id
            self._next_id += 1
        else:
            self._next_id = max(self._next_id, row["id"] + 1)
        self.tables[table].append(row)
        return row

    def ids(self, table: str) -> set:
        return {row["id"] for row in self.tables[table]}

    def count(self, table: str, **match) -> int:
        return sum(
            1 for row in self.tables[table]
            if all(row.get(k) == v for k, v in match.items())
        )


class FakeCursor:
    """Interprets the statements RetentionExecutor and RetentionRun issue."""

    _TABLE_RE = re.compile(r'DELETE FROM "(\w+)"')
    _LT_RE = re.compile(r'"(\w+)" < %s')
    _EQ_RE = re.compile(r'"(\w+)" = %s')
    _PARTITION_RE = re.compile(r'PARTITION BY "(\w+)"')
    _ORDER_RE = re.compile(r'ORDER BY "(\w+)" DESC, "(\w+)" DESC')

    def __init__(self, store: FakeStore):
        self.store = store
        self.rowcount = -1
        self.closed = False
        self.statements = []
        self._result = None

    def execute(self, query, params=None):
        text = render_sql(query)
        self.statements.append((text, params))
        self.rowcount = -1

        if text.lstrip().startswith("SET"):
            return
        if "pg_try_advisory_xact_lock" in text:
            self._result = [(self.store.lock_available,)]
            return

        table = self._TABLE_RE.search(text).group(1)
        rule = "cap" if "ROW_NUMBER" in text else "age"
        if self.store.fail_on == (table, rule):
            raise psycopg2.OperationalError("server closed the connection unexpectedly")

        rows = self.store.tables[table]
        if rule == "age":
            doomed = self._age_victims(text, params, rows)
        else:
            doomed = self._cap_victims(text, params, rows)

        doomed_ids = {id(row) for row in doomed}
        self.store.tables[table] = [row for row in rows if id(row) not in doomed_ids]
        self.rowcount = len(doomed)

    def _age_victims(self, text, params, rows):
        created_col = self._LT_RE.search(text).group(1)
        cutoff = params[0]
        eq = self._EQ_RE.search(text)
        victims = []
        for row in rows:
            if not row[created_col] < cutoff:
                continue
            if eq and row.get(eq.group(1)) != params[1]:
                continue
            victims.append(row)
        return victims

    def _cap_victims(self, text, params, rows):
        partition_col = self._PARTITION_RE.search(text).group(1)
        created_col, id_col = self._ORDER_RE.search(text).groups()
        cap = params[0]
        partitions = {}
        for row in rows:
            partitions.setdefault(row[partition_col], []).append(row)
        victims = []
        for members in partitions.values():
            ranked = sorted(members, key=lambda r: (r[created_col], r[id_col]), reverse=True)
            victims.extend(ranked[cap:])
        return victims

    def fetchone(self):
        return self._result[0] if self._result else None

    def close(self):
        self.closed = True


class FakeDatabaseManager:
    """Transaction scope over a FakeStore with snapshot rollback."""

    def __init__(self, store: FakeStore):
        self.store = store
        self.cursors = []

    @contextmanager
    def transaction(self, isolation_level="repeatable_read", statement_timeout_ms=None):
        self.store.isolation_levels.append(isolation_level)
        snapshot = copy.deepcopy(self.store.tables)
        cursor = FakeCursor(self.store)
        self.cursors.append(cursor)
        try:
            yield cursor
            self.store.commits += 1
        except Exception as e:
            self.store.tables = snapshot
            self.store.rollbacks += 1
            if isinstance(e, psycopg2.Error):
                raise StorageError(f"Transaction failed: {e}") from e
            raise
