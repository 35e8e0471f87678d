from datetime import datetime, timedelta, timezone
import hashlib
import hmac
from typing import Dict, List, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
import pytest

from cerberus.errors import NotFound
from cerberus.github.model import (
    CheckRun,
    CheckRunEvent,
    CheckRunOutput,
    IssueCommentEvent,
    PullRequest,
    PullRequestEvent,
    TokenResponse,
)

REPO = "org/repo"
SHA = "a" * 40
INSTALLATION_ID = 99
CLIENT_ID = "Iv1.cerberus"


def sign(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture(scope="session")
def private_key() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


class FakeGitHub:
    """In-memory stand-in for ``cerberus.github.api.API``.

    ``failures`` maps an operation name to exceptions raised by its next calls.
    """

    def __init__(self):
        self.check_runs: Dict[Tuple[str, str], List[CheckRun]] = {}
        self.pulls: Dict[Tuple[str, int], PullRequest] = {}
        self.failures: Dict[str, list] = {}
        self.calls: List[tuple] = []
        self.token_exchanges = 0
        self._next_id = 1000

    def _record(self, operation: str, *args):
        self.calls.append((operation, *args))
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def calls_for(self, operation: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == operation]

    def add_check_run(self, name, status="queued", conclusion=None, repo=REPO, sha=SHA):
        self._next_id += 1
        run = CheckRun(
            id=self._next_id,
            name=name,
            head_sha=sha,
            status=status,
            conclusion=conclusion,
        )
        self.check_runs.setdefault((repo, sha), []).append(run)
        return run

    async def create_installation_token(self, jwt, installation_id):
        self._record("token", installation_id)
        self.token_exchanges += 1
        return TokenResponse(
            token=f"token-{self.token_exchanges}",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )

    async def list_check_runs(self, token, repo, sha):
        self._record("list", token, repo, sha)
        return list(self.check_runs.get((repo, sha), []))

    async def create_check_run(
        self, token, repo, head_sha, name, status, output=None, conclusion=None
    ):
        self._record("create", token, repo, head_sha, status, conclusion, output)
        self._next_id += 1
        run = CheckRun(
            id=self._next_id,
            name=name,
            head_sha=head_sha,
            status=status,
            conclusion=conclusion,
            output=output,
        )
        self.check_runs.setdefault((repo, head_sha), []).append(run)
        return run

    async def update_check_run(self, token, repo, check_run_id, fields):
        self._record("update", token, repo, check_run_id, dict(fields))
        for runs in self.check_runs.values():
            for i, run in enumerate(runs):
                if run.id == check_run_id:
                    update = dict(fields)
                    if isinstance(update.get("output"), dict):
                        update["output"] = CheckRunOutput(**update["output"])
                    runs[i] = run.model_copy(update=update)
                    return runs[i]
        raise NotFound(url=f"/repos/{repo}/check-runs/{check_run_id}", status_code=404)

    async def get_pull(self, token, repo, number):
        self._record("pull", token, repo, number)
        return self.pulls[(repo, number)]


@pytest.fixture
def github():
    return FakeGitHub()


def repository():
    return {"id": 500, "name": "repo", "full_name": REPO}


def make_check_run_event(
    name,
    status="completed",
    conclusion="success",
    check_run_id=1,
    sha=SHA,
    app=None,
    action=None,
):
    return CheckRunEvent.model_validate(
        {
            "action": action or ("completed" if status == "completed" else "created"),
            "installation": {"id": INSTALLATION_ID},
            "repository": repository(),
            "check_run": {
                "id": check_run_id,
                "name": name,
                "head_sha": sha,
                "status": status,
                "conclusion": conclusion,
                "app": app or {"id": 1, "slug": "ci"},
            },
        }
    )


def make_pull_request_event(action="opened", number=7, sha=SHA):
    return PullRequestEvent.model_validate(
        {
            "action": action,
            "number": number,
            "installation": {"id": INSTALLATION_ID},
            "repository": repository(),
            "pull_request": {
                "number": number,
                "id": 70,
                "title": "Add things",
                "state": "closed" if action == "closed" else "open",
                "head": {"ref": "feature", "sha": sha},
            },
        }
    )


def make_comment_event(body="/cerberus refresh", number=7, action="created"):
    return IssueCommentEvent.model_validate(
        {
            "action": action,
            "installation": {"id": INSTALLATION_ID},
            "repository": repository(),
            "issue": {
                "number": number,
                "pull_request": {"url": f"https://api.github.com/repos/{REPO}/pulls/{number}"},
            },
            "comment": {"id": 5, "body": body},
        }
    )
