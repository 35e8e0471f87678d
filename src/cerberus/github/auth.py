"""GitHub App credentials.

An App authenticates in two steps: a short-lived JWT signed with the App's
private key, then an exchange of that JWT for an installation access token
scoped to one installation. Tokens are cached per installation until shortly
before they expire, and concurrent callers share a single exchange.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
import time
import uuid
from typing import Callable, Dict, Protocol

from aiocache import SimpleMemoryCache
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
import jwt
from sanic.log import logger

from cerberus.errors import APIError, AuthError
from cerberus.github.model import TokenResponse
from cerberus.metric import token_exchange_counter

JWT_BACKDATE_SECONDS = 30
JWT_LIFETIME_SECONDS = 5 * 60


class TokenExchanger(Protocol):
    async def create_installation_token(
        self, jwt: str, installation_id: int
    ) -> TokenResponse: ...


def load_private_key(path: str | Path) -> str:
    try:
        pem = Path(path).read_text()
    except OSError as exc:
        raise AuthError(f"Failed to read private key '{path}': {exc}") from exc
    try:
        key = serialization.load_pem_private_key(pem.encode(), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise AuthError(f"Failed to parse private key '{path}': {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise AuthError(f"Private key '{path}' is not an RSA key")
    return pem


def create_jwt(client_id: str, private_key: str, now: float | None = None) -> str:
    if now is None:
        now = time.time()
    issued = int(now)
    claims = {
        "iat": issued - JWT_BACKDATE_SECONDS,
        "exp": issued + JWT_LIFETIME_SECONDS,
        "iss": client_id,
    }
    try:
        return jwt.encode(claims, private_key, algorithm="RS256")
    except (ValueError, TypeError, UnsupportedAlgorithm, jwt.PyJWTError) as exc:
        raise AuthError(f"Failed to create JWT token: {exc}") from exc


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: datetime
    # epoch seconds, always before expires_at
    effective_expiry: float


class InstallationTokenManager:
    def __init__(
        self,
        api: TokenExchanger,
        *,
        client_id: str,
        private_key: str,
        expiry_margin: float = 60.0,
        refresh_threshold: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        if expiry_margin <= 0:
            raise ValueError("expiry_margin must be positive")
        self.api = api
        self.client_id = client_id
        self.private_key = private_key
        self.expiry_margin = float(expiry_margin)
        self.refresh_threshold = max(0.0, float(refresh_threshold))
        self._clock = clock
        self._cache = SimpleMemoryCache(
            namespace=f"installation-tokens-{uuid.uuid4().hex}:"
        )
        self._inflight: Dict[int, asyncio.Task] = {}

    async def get_token(self, installation_id: int) -> str:
        cached = await self.get_cached(installation_id)
        if cached is not None:
            return cached.token

        task = self._inflight.get(installation_id)
        if task is None:
            task = asyncio.create_task(self._refresh(installation_id))
            self._inflight[installation_id] = task
        else:
            logger.debug(
                "Joining in-flight token exchange for installation %d", installation_id
            )
        # one cancelled caller must not cancel the exchange the others wait on
        cached = await asyncio.shield(task)
        return cached.token

    async def get_cached(self, installation_id: int) -> CachedToken | None:
        cached = await self._cache.get(installation_id)
        if cached is None:
            return None
        if self._clock() >= cached.effective_expiry - self.refresh_threshold:
            logger.debug(
                "Cached token for installation %d is about to expire", installation_id
            )
            return None
        return cached

    async def invalidate(self, installation_id: int) -> None:
        logger.info("Invalidating token for installation %d", installation_id)
        await self._cache.delete(installation_id)

    async def _refresh(self, installation_id: int) -> CachedToken:
        logger.debug("Getting NEW installation access token for %d", installation_id)
        try:
            jwt_token = create_jwt(self.client_id, self.private_key, now=self._clock())
            try:
                response = await self.api.create_installation_token(
                    jwt_token, installation_id
                )
            except APIError as exc:
                token_exchange_counter.labels(result="error").inc()
                raise AuthError(
                    f"Failed to get token for installation {installation_id}: {exc}"
                ) from exc

            token_exchange_counter.labels(result="ok").inc()
            reported = response.expires_at.timestamp()
            cached = CachedToken(
                token=response.token,
                expires_at=response.expires_at,
                effective_expiry=reported - self.expiry_margin,
            )
            ttl = cached.effective_expiry - self._clock()
            if ttl > 0:
                await self._cache.set(installation_id, cached, ttl=ttl)
            else:
                logger.warning(
                    "Token for installation %d expires within the safety margin, not caching",
                    installation_id,
                )
            return cached
        finally:
            self._inflight.pop(installation_id, None)
