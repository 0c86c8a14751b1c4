"""Retention policy definitions for per-owner record streams.

A policy is configuration, not behaviour: it names a table and carries an
age rule (TTL in days, optionally gated on a terminal-state column) and/or
a cap rule (maximum rows kept per owner partition, newest first).

Configuration sources:
    - Environment variables via ``config.RetentionConfig``:
      ``CLEANUP_NOTIFICATION_TTL_DAYS``, ``CLEANUP_LOG_TTL_DAYS``,
      ``CLEANUP_MAX_NOTIFICATIONS``, ``CLEANUP_MAX_LOGS``
    - Any knob set to ``none`` disables that rule.

Policies are validated once when they load and are immutable afterwards.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from errors import ConfigError

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Policy:
    """Declarative retention rule for one collection."""

    collection: str
    table: str
    partition_key: str
    age_threshold_days: Optional[int] = None
    requires_terminal_state: bool = False
    terminal_column: Optional[str] = None
    per_partition_cap: Optional[int] = None
    created_column: str = "created_at"
    id_column: str = "id"

    def __post_init__(self):
        self.validate()

    @property
    def has_age_rule(self) -> bool:
        return self.age_threshold_days is not None

    @property
    def has_cap_rule(self) -> bool:
        return self.per_partition_cap is not None

    def validate(self) -> None:
        """Raise ConfigError if the policy is malformed."""
        if not self.collection:
            raise ConfigError("Policy is missing a collection id")

        name = self.collection
        for label, value in (
            ("table", self.table),
            ("partition_key", self.partition_key),
            ("created_column", self.created_column),
            ("id_column", self.id_column),
        ):
            if not value or not _IDENTIFIER_RE.match(value):
                raise ConfigError(f"{name}: {label} must be a plain SQL identifier, got {value!r}")

        if not self.has_age_rule and not self.has_cap_rule:
            raise ConfigError(f"{name}: policy needs an age threshold, a per-partition cap, or both")

        if self.has_age_rule:
            if isinstance(self.age_threshold_days, bool) or not isinstance(self.age_threshold_days, int):
                raise ConfigError(f"{name}: age_threshold_days must be an integer")
            if self.age_threshold_days <= 0:
                raise ConfigError(f"{name}: age_threshold_days must be positive, got {self.age_threshold_days}")

        if self.has_cap_rule:
            if isinstance(self.per_partition_cap, bool) or not isinstance(self.per_partition_cap, int):
                raise ConfigError(f"{name}: per_partition_cap must be an integer")
            if self.per_partition_cap <= 0:
                raise ConfigError(f"{name}: per_partition_cap must be positive, got {self.per_partition_cap}")

        if self.requires_terminal_state:
            if not self.terminal_column or not _IDENTIFIER_RE.match(self.terminal_column):
                raise ConfigError(f"{name}: requires_terminal_state needs a terminal_column")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "table": self.table,
            "partition_key": self.partition_key,
            "age_threshold_days": self.age_threshold_days,
            "requires_terminal_state": self.requires_terminal_state,
            "terminal_column": self.terminal_column,
            "per_partition_cap": self.per_partition_cap,
        }


# ---------------------------------------------------------------------------
# Built-in collections
# ---------------------------------------------------------------------------

NOTIFICATIONS = "notifications"
INTEGRATION_LOGS = "integration_logs"


def build_policies(retention) -> List[Policy]:
    """Build the built-in policies, in declaration order, from a RetentionConfig."""
    return validate_policy_set([
        Policy(
            collection=NOTIFICATIONS,
            table="notifications",
            partition_key="user_id",
            age_threshold_days=retention.notification_ttl_days,
            requires_terminal_state=True,
            terminal_column="is_read",
            per_partition_cap=retention.max_notifications,
        ),
        Policy(
            collection=INTEGRATION_LOGS,
            table="integration_logs",
            partition_key="company_id",
            age_threshold_days=retention.log_ttl_days,
            per_partition_cap=retention.max_logs,
        ),
    ])


def validate_policy_set(policies: List[Policy]) -> List[Policy]:
    """Reject duplicate collection ids; return the policies unchanged."""
    seen = set()
    for policy in policies:
        if policy.collection in seen:
            raise ConfigError(f"Duplicate retention policy for collection {policy.collection!r}")
        seen.add(policy.collection)
    return list(policies)


def resolve_config(config=None):
    """Return the given AppConfig, or the global one with errors as ConfigError."""
    if config is not None:
        return config
    from config import get_config

    try:
        return get_config()
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def load_policies(config=None) -> List[Policy]:
    """Load and validate retention policies.

    Args:
        config: Optional AppConfig; the global config is used when omitted.

    Raises:
        ConfigError: If any environment value or policy is invalid.
    """
    policies = build_policies(resolve_config(config).retention)
    logger.debug("Loaded %d retention policies", len(policies))
    return policies


def get_policy_defaults(config=None) -> Dict[str, Any]:
    """Return currently effective retention thresholds.

    Returns:
        Dict keyed by collection, plus the run interval.
    """
    config = resolve_config(config)
    return {
        "collections": {p.collection: p.to_dict() for p in load_policies(config)},
        "interval_hours": config.retention.interval_hours,
        "isolation_level": config.retention.isolation_level,
    }
