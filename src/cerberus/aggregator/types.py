from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict

from cerberus.github.model import CheckRun


@dataclass(frozen=True)
class CommitKey:
    repo: str
    sha: str

    def __str__(self) -> str:
        return f"{self.repo}@{self.sha}"


class Decision(str, Enum):
    in_progress = "in_progress"
    success = "success"
    failure = "failure"


class EntryState(str, Enum):
    empty = "empty"
    pending = "pending"
    settled = "settled"


@dataclass
class CheckRunRecord:
    name: str
    id: int | None
    status: str
    conclusion: str | None
    applied_at: float = 0.0

    @classmethod
    def from_check_run(cls, check_run: CheckRun, applied_at: float) -> CheckRunRecord:
        return cls(
            name=check_run.name,
            id=check_run.id,
            status=check_run.status,
            conclusion=check_run.conclusion,
            applied_at=applied_at,
        )

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    def same_state(self, other: CheckRunRecord) -> bool:
        return (
            self.name == other.name
            and self.id == other.id
            and self.status == other.status
            and self.conclusion == other.conclusion
        )


@dataclass
class GuardState:
    """What we last pushed to GitHub for the guard check run."""

    id: int | None = None
    status: str | None = None
    conclusion: str | None = None
    title: str | None = None
    summary: str | None = None


@dataclass
class AggregateEntry:
    key: CommitKey
    installation_id: int
    checks: Dict[str, CheckRunRecord] = field(default_factory=dict)
    guard: GuardState = field(default_factory=GuardState)
    dirty: bool = False
    refresh_deadline: float | None = None
    refreshing: bool = False
    hydrated: bool = False
    last_activity: float = 0.0

    @property
    def state(self) -> EntryState:
        if not self.checks and self.guard.id is None and not self.dirty:
            return EntryState.empty
        if self.guard.status == "completed" and not self.dirty:
            return EntryState.settled
        return EntryState.pending
