from cerberus.aggregator.aggregator import CheckAggregator, is_refresh_command
from cerberus.aggregator.decision import (
    ConflictPolicy,
    compute_decision,
    guard_output,
    last_delivered_wins,
    newest_run_wins,
)
from cerberus.aggregator.types import (
    AggregateEntry,
    CheckRunRecord,
    CommitKey,
    Decision,
    EntryState,
    GuardState,
)
from cerberus.aggregator.workers import KeyedWorkerPool

__all__ = [
    "AggregateEntry",
    "CheckAggregator",
    "CheckRunRecord",
    "CommitKey",
    "ConflictPolicy",
    "Decision",
    "EntryState",
    "GuardState",
    "KeyedWorkerPool",
    "compute_decision",
    "guard_output",
    "is_refresh_command",
    "last_delivered_wins",
    "newest_run_wins",
]
