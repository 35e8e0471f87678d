from __future__ import annotations

from http import HTTPStatus


class CerberusError(Exception):
    pass


class ConfigError(CerberusError):
    """Invalid or incomplete settings, fatal at startup."""


class AuthError(CerberusError):
    """Could not obtain an installation access token.

    Raised for unreadable or unparsable private keys and for failed token
    exchanges. Callers treat it as retryable.
    """


class SignatureError(CerberusError):
    pass


class DecodeError(CerberusError):
    pass


class InternalError(CerberusError):
    pass


class APIError(CerberusError):
    """Non-success response from the GitHub API.

    Subclasses carry the outcome classification; a plain ``APIError`` is a
    terminal client error that no retry will fix.
    """

    status_code: HTTPStatus | None
    url: str | None

    def __init__(
        self,
        message: str = "",
        *,
        status_code: HTTPStatus | int | None = None,
        url: str | None = None,
    ):
        if status_code is not None:
            status_code = HTTPStatus(int(status_code))
        self.status_code = status_code
        self.url = url
        super().__init__(message or self._default_message())

    def _default_message(self) -> str:
        if self.status_code is None:
            return f"Request to '{self.url}' failed"
        return f"Request to '{self.url}' failed with status: {self.status_code.value} {self.status_code.phrase}"


class NotFound(APIError):
    pass


class Unauthorized(APIError):
    pass


class RateLimited(APIError):
    pass


class ServerError(APIError):
    pass


RETRYABLE_ERRORS = (AuthError, RateLimited, ServerError)
