from __future__ import annotations

import asyncio
from http import HTTPStatus
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Type,
    TypeVar,
)

import aiohttp
from gidgethub import BadRequest, GitHubBroken, HTTPException, RateLimitExceeded
from gidgethub.abc import GitHubAPI
import pydantic
from sanic.log import logger

from cerberus.errors import (
    APIError,
    InternalError,
    NotFound,
    RateLimited,
    ServerError,
    Unauthorized,
)
from cerberus.github.model import (
    CheckRun,
    CheckRunOutput,
    PullRequest,
    TokenResponse,
)
from cerberus.metric import record_api_call

T = TypeVar("T")
M = TypeVar("M", bound=pydantic.BaseModel)

_CHECK_RUN_FIELDS = {
    "name",
    "status",
    "conclusion",
    "started_at",
    "completed_at",
    "output",
    "details_url",
    "external_id",
}


def classify_error(exc: Exception, url: str) -> APIError:
    """Map a gidgethub or transport failure onto our outcome types."""
    if isinstance(exc, RateLimitExceeded):
        return RateLimited(str(exc), status_code=exc.status_code, url=url)
    if isinstance(exc, GitHubBroken):
        return ServerError(str(exc), status_code=exc.status_code, url=url)
    if isinstance(exc, BadRequest):
        status = HTTPStatus(int(exc.status_code))
        if status == HTTPStatus.NOT_FOUND:
            return NotFound(str(exc), status_code=status, url=url)
        if status == HTTPStatus.UNAUTHORIZED:
            return Unauthorized(str(exc), status_code=status, url=url)
        if status == HTTPStatus.TOO_MANY_REQUESTS or (
            status == HTTPStatus.FORBIDDEN and "rate limit" in str(exc).lower()
        ):
            return RateLimited(str(exc), status_code=status, url=url)
        return APIError(str(exc), status_code=status, url=url)
    if isinstance(exc, HTTPException):
        return APIError(str(exc), status_code=exc.status_code, url=url)
    if isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError)):
        return ServerError(f"Failed to send request to '{url}': {exc!r}", url=url)
    raise TypeError(f"Cannot classify {exc!r}")


class API:
    """Thin typed layer over the check-run endpoints.

    Every operation takes the token to authenticate with, so one instance
    serves all installations. Failures surface as the ``APIError`` family,
    see ``classify_error``.
    """

    gh: GitHubAPI

    def __init__(self, gh: GitHubAPI):
        self.gh = gh

    async def _call(self, url: str, fn: Callable[[], Awaitable[T]]) -> T:
        record_api_call(endpoint=url)
        try:
            return await fn()
        except (HTTPException, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            error = classify_error(exc, url)
            logger.debug("Request to %s failed: %s", url, error)
            raise error from exc

    @staticmethod
    def _parse(model: Type[M], data: Any, url: str) -> M:
        try:
            return model.model_validate(data)
        except pydantic.ValidationError as exc:
            raise InternalError(f"Unexpected response from '{url}': {exc}") from exc

    async def create_installation_token(
        self, jwt: str, installation_id: int
    ) -> TokenResponse:
        url = f"/app/installations/{installation_id}/access_tokens"
        logger.info("Fetching installation token from %s", url)
        data = await self._call(
            url,
            lambda: self.gh.post(
                url,
                data=b"",
                jwt=jwt,
                accept="application/vnd.github+json",
            ),
        )
        return self._parse(TokenResponse, data, url)

    async def list_check_runs(self, token: str, repo: str, sha: str) -> List[CheckRun]:
        url = f"/repos/{repo}/commits/{sha}/check-runs"
        logger.debug("Get check runs for ref %s", url)

        async def fetch() -> List[CheckRun]:
            return [
                self._parse(CheckRun, item, url)
                async for item in self.gh.getiter(
                    url, iterable_key="check_runs", oauth_token=token
                )
            ]

        return await self._call(url, fetch)

    async def create_check_run(
        self,
        token: str,
        repo: str,
        head_sha: str,
        name: str,
        status: str,
        output: Optional[CheckRunOutput] = None,
        conclusion: Optional[str] = None,
    ) -> CheckRun:
        url = f"/repos/{repo}/check-runs"
        payload: Dict[str, Any] = {
            "name": name,
            "head_sha": head_sha,
            "status": status,
        }
        if conclusion is not None:
            payload["conclusion"] = conclusion
        if output is not None:
            payload["output"] = output.model_dump(exclude_none=True)

        logger.debug("Creating check run %s on sha %s", url, head_sha)
        data = await self._call(
            url, lambda: self.gh.post(url, data=payload, oauth_token=token)
        )
        check_run = self._parse(CheckRun, data, url)
        logger.info("Created check run %s for commit %s", check_run.id, head_sha)
        return check_run

    async def update_check_run(
        self, token: str, repo: str, check_run_id: int, fields: Mapping[str, Any]
    ) -> CheckRun:
        unknown = set(fields) - _CHECK_RUN_FIELDS
        if unknown:
            raise ValueError(f"Unsupported check run fields: {sorted(unknown)}")
        payload = dict(fields)
        if isinstance(payload.get("output"), CheckRunOutput):
            payload["output"] = payload["output"].model_dump(exclude_none=True)

        url = f"/repos/{repo}/check-runs/{check_run_id}"
        logger.debug("Updating check run %d, %s", check_run_id, url)
        data = await self._call(
            url, lambda: self.gh.patch(url, data=payload, oauth_token=token)
        )
        return self._parse(CheckRun, data, url)

    async def get_pull(self, token: str, repo: str, number: int) -> PullRequest:
        url = f"/repos/{repo}/pulls/{number}"
        logger.debug("Get pull %s", url)
        data = await self._call(url, lambda: self.gh.getitem(url, oauth_token=token))
        return self._parse(PullRequest, data, url)
