"""
Per-policy retention executor.

Applies one Policy to its table inside a transaction the caller already
opened. The age rule always runs before the cap rule so the cap ranking
only sees rows the age rule left behind, and every deleted row is counted
by exactly one rule.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict

import psycopg2
from psycopg2 import sql

from errors import StorageError
from retention_policy import Policy

logger = logging.getLogger(__name__)

AGE_RULE = "age"
CAP_RULE = "cap"


@dataclass(frozen=True)
class PolicyResult:
    """Rows removed from one collection during a run."""

    collection: str
    age_deleted: int = 0
    cap_deleted: int = 0

    @property
    def total_deleted(self) -> int:
        return self.age_deleted + self.cap_deleted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "age_deleted": self.age_deleted,
            "cap_deleted": self.cap_deleted,
            "total_deleted": self.total_deleted,
        }


class RetentionExecutor:
    """Runs the age and cap deletes for a single policy."""

    def apply(self, policy: Policy, cursor, now: datetime) -> PolicyResult:
        """Apply the age rule, then the cap rule, on the open transaction."""
        age_deleted = self.apply_age_rule(policy, cursor, now)
        cap_deleted = self.apply_cap_rule(policy, cursor)
        return PolicyResult(policy.collection, age_deleted, cap_deleted)

    def apply_age_rule(self, policy: Policy, cursor, now: datetime) -> int:
        """Delete rows older than the policy TTL.

        When the policy requires a terminal state, only rows whose terminal
        column is TRUE are eligible; unacknowledged rows survive at any age.

        Returns:
            Number of rows deleted (0 when the policy has no age rule).
        """
        if not policy.has_age_rule:
            return 0

        cutoff = now - timedelta(days=policy.age_threshold_days)
        conditions = [
            sql.SQL("{} < %s").format(sql.Identifier(policy.created_column)),
        ]
        params: list = [cutoff]
        if policy.requires_terminal_state:
            conditions.append(sql.SQL("{} = %s").format(sql.Identifier(policy.terminal_column)))
            params.append(True)

        query = sql.SQL("DELETE FROM {table} WHERE {where}").format(
            table=sql.Identifier(policy.table),
            where=sql.SQL(" AND ").join(conditions),
        )
        deleted = self._execute(policy, AGE_RULE, cursor, query, params)
        logger.debug(
            "Age rule on %s: cutoff=%s deleted=%d",
            policy.collection, cutoff.isoformat(), deleted,
        )
        return deleted

    def apply_cap_rule(self, policy: Policy, cursor) -> int:
        """Keep only the newest ``per_partition_cap`` rows in each partition.

        Rows are ranked per partition by (created_at DESC, id DESC); every
        row ranked past the cap is deleted. Terminal state is ignored.

        Returns:
            Number of rows deleted (0 when the policy has no cap rule).
        """
        if not policy.has_cap_rule:
            return 0

        query = sql.SQL(
            """
            DELETE FROM {table}
            WHERE {id} IN (
                SELECT {id} FROM (
                    SELECT {id}, ROW_NUMBER() OVER (
                        PARTITION BY {partition}
                        ORDER BY {created} DESC, {id} DESC
                    ) AS rn
                    FROM {table}
                ) ranked
                WHERE rn > %s
            )
            """
        ).format(
            table=sql.Identifier(policy.table),
            id=sql.Identifier(policy.id_column),
            partition=sql.Identifier(policy.partition_key),
            created=sql.Identifier(policy.created_column),
        )
        deleted = self._execute(policy, CAP_RULE, cursor, query, [policy.per_partition_cap])
        logger.debug(
            "Cap rule on %s: cap=%d deleted=%d",
            policy.collection, policy.per_partition_cap, deleted,
        )
        return deleted

    @staticmethod
    def _execute(policy: Policy, rule: str, cursor, query, params) -> int:
        try:
            cursor.execute(query, params)
        except psycopg2.Error as e:
            raise StorageError(
                f"{rule} rule failed for {policy.collection}: {e}",
                collection=policy.collection,
                rule=rule,
            ) from e
        return max(cursor.rowcount or 0, 0)
