from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Tuple

from tabulate import tabulate

from cerberus.aggregator.types import CheckRunRecord, Decision
from cerberus.github.model import (
    CHECK_RUN_COMPLETED_TITLE,
    CHECK_RUN_INITIAL_TITLE,
    CHECK_RUN_NAME,
    CHECK_RUN_SUMMARY,
    CheckRun,
    CheckRunOutput,
)

FAILURE_CONCLUSIONS = frozenset(
    {
        "failure",
        "timed_out",
        "action_required",
        "cancelled",
        "stale",
        "startup_failure",
    }
)
SUCCESS_CONCLUSIONS = frozenset({"success", "neutral", "skipped"})

# (existing, incoming) -> replace?
ConflictPolicy = Callable[[Optional[CheckRunRecord], CheckRunRecord], bool]


def last_delivered_wins(
    existing: Optional[CheckRunRecord], incoming: CheckRunRecord
) -> bool:
    return True


def newest_run_wins(
    existing: Optional[CheckRunRecord], incoming: CheckRunRecord
) -> bool:
    """Re-runs get a larger id, so an older run's late delivery is dropped."""
    if existing is None or existing.id is None or incoming.id is None:
        return True
    return incoming.id >= existing.id


def is_failed(record: CheckRunRecord) -> bool:
    return record.is_completed and record.conclusion in FAILURE_CONCLUSIONS


def is_passed(record: CheckRunRecord) -> bool:
    return record.is_completed and record.conclusion in SUCCESS_CONCLUSIONS


def compute_decision(records: Iterable[CheckRunRecord]) -> Decision:
    records = list(records)
    if any(is_failed(r) for r in records):
        return Decision.failure
    if records and all(is_passed(r) for r in records):
        return Decision.success
    return Decision.in_progress


@dataclass(frozen=True)
class GuardOutput:
    status: str
    conclusion: str | None
    output: CheckRunOutput


def _icon(record: CheckRunRecord) -> str:
    if is_failed(record):
        return ":x:"
    if record.is_completed and record.conclusion == "success":
        return ":white_check_mark:"
    if is_passed(record):
        return ":white_circle:"
    return ":yellow_circle:"


def render_checks_table(records: Iterable[CheckRunRecord]) -> str:
    rows = [
        (_icon(r), r.name, r.status, r.conclusion or "")
        for r in sorted(records, key=lambda r: r.name)
    ]
    if not rows:
        return "No other checks have reported yet."
    return tabulate(
        rows,
        headers=("", "Check", "Status", "Conclusion"),
        tablefmt="github",
    )


def guard_output(decision: Decision, records: Iterable[CheckRunRecord]) -> GuardOutput:
    records = list(records)
    summary = CHECK_RUN_SUMMARY + "\n\n" + render_checks_table(records)

    if decision == Decision.failure:
        failed = len([r for r in records if is_failed(r)])
        title = "1 check has failed" if failed == 1 else f"{failed} checks have failed"
        return GuardOutput(
            status="completed",
            conclusion="failure",
            output=CheckRunOutput(title=title, summary=summary),
        )

    if decision == Decision.success:
        return GuardOutput(
            status="completed",
            conclusion="success",
            output=CheckRunOutput(title=CHECK_RUN_COMPLETED_TITLE, summary=summary),
        )

    waiting = len([r for r in records if not r.is_completed])
    if waiting == 0:
        title = CHECK_RUN_INITIAL_TITLE
    elif waiting == 1:
        title = "Waiting for 1 other check to complete"
    else:
        title = f"Waiting for {waiting} other checks to complete"
    return GuardOutput(
        status="in_progress",
        conclusion=None,
        output=CheckRunOutput(title=title, summary=summary),
    )


def is_guard_run(check_run: CheckRun, client_id: str | None = None) -> bool:
    if check_run.app is not None and client_id and check_run.app.client_id:
        return check_run.is_from_app(client_id) and check_run.name == CHECK_RUN_NAME
    return check_run.name == CHECK_RUN_NAME


def split_check_runs(
    check_runs: Iterable[CheckRun],
    client_id: str | None = None,
    applied_at: float = 0.0,
) -> Tuple[Dict[str, CheckRunRecord], Optional[CheckRun]]:
    """Separate our own guard run from the rest of a commit's check runs.

    Runs sharing a name (re-runs) collapse to the one with the largest id.
    """
    guard: Optional[CheckRun] = None
    latest: Dict[str, CheckRun] = {}
    for check_run in check_runs:
        if is_guard_run(check_run, client_id):
            if guard is None or (check_run.id or 0) > (guard.id or 0):
                guard = check_run
            continue
        existing = latest.get(check_run.name)
        if existing is None or (check_run.id or 0) > (existing.id or 0):
            latest[check_run.name] = check_run

    records = {
        name: CheckRunRecord.from_check_run(cr, applied_at=applied_at)
        for name, cr in latest.items()
    }
    return records, guard
