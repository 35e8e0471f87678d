from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional, Union

import pydantic


CHECK_RUN_NAME = "cerberus-mergeguard"
CHECK_RUN_INITIAL_TITLE = "Waiting for other checks to complete"
CHECK_RUN_COMPLETED_TITLE = "All status checks have passed"
CHECK_RUN_SUMMARY = "Will block merging until all other checks have completed"

CheckRunStatus = Literal[
    "queued",
    "in_progress",
    "completed",
    "waiting",
    "requested",
    "pending",
]

CheckRunConclusion = Literal[
    "action_required",
    "cancelled",
    "failure",
    "neutral",
    "success",
    "skipped",
    "stale",
    "startup_failure",
    "timed_out",
]


class Model(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(extra="ignore")


class Repository(Model):
    id: Optional[int] = None
    name: Optional[str] = None
    full_name: str
    url: Optional[str] = None
    html_url: Optional[str] = None
    private: Optional[bool] = None


class Installation(Model):
    id: int


class App(Model):
    id: int
    slug: Optional[str] = None
    client_id: Optional[str] = None
    name: Optional[str] = None


class CheckRunOutput(Model):
    title: Optional[str] = None
    summary: Optional[str] = None
    text: Optional[str] = None


class CheckRun(Model):
    id: Optional[int] = None
    name: str
    head_sha: str
    # GitHub adds values over time, unknown ones are kept as plain strings
    status: Union[CheckRunStatus, str] = "queued"
    conclusion: Optional[Union[CheckRunConclusion, str]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    output: Optional[CheckRunOutput] = None
    app: Optional[App] = None
    html_url: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    def is_from_app(self, client_id: str | None) -> bool:
        return (
            client_id is not None
            and self.app is not None
            and self.app.client_id == client_id
        )

    def __str__(self) -> str:
        return f"CheckRun({self.name}, {self.id}, {self.status}/{self.conclusion})"


class BranchRef(Model):
    ref: Optional[str] = None
    sha: str
    label: Optional[str] = None


class PullRequest(Model):
    number: int
    id: Optional[int] = None
    title: Optional[str] = None
    state: Optional[Literal["open", "closed"]] = None
    head: BranchRef
    html_url: Optional[str] = None

    def __str__(self) -> str:
        return f"PR(#{self.number}, {self.head.sha})"


class Issue(Model):
    id: Optional[int] = None
    number: int
    pull_request: Optional[Dict[str, Any]] = None

    @property
    def is_pull_request(self) -> bool:
        return self.pull_request is not None


class Comment(Model):
    id: int
    body: str = ""


class TokenResponse(Model):
    token: str
    expires_at: datetime


class _Event(Model):
    action: Optional[str] = None
    installation: Optional[Installation] = None
    repository: Repository
    delivery_id: Optional[str] = pydantic.Field(None, exclude=True)

    @property
    def installation_id(self) -> int | None:
        return self.installation.id if self.installation is not None else None


class PullRequestEvent(_Event):
    number: Optional[int] = None
    pull_request: PullRequest


class CheckRunEvent(_Event):
    check_run: CheckRun


class IssueCommentEvent(_Event):
    issue: Issue
    comment: Comment


class UnknownEvent(Model):
    event: str
    action: Optional[str] = None
    installation: Optional[Installation] = None
    repository: Optional[Repository] = None
    delivery_id: Optional[str] = None

    @property
    def installation_id(self) -> int | None:
        return self.installation.id if self.installation is not None else None


WebhookEvent = Union[PullRequestEvent, CheckRunEvent, IssueCommentEvent, UnknownEvent]
