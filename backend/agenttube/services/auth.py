from __future__ import annotations

import logging
from typing import Protocol

from backend.agenttube.errors import AuthProviderError
from backend.agenttube.repositories.owner_api_key_repository import (
    KEY_ID_PREFIX,
    OwnerApiKeyRepository,
)
from backend.agenttube.services.rate_limiter import SlidingWindowRateLimiter

LOGGER = logging.getLogger("agenttube.auth")


class AuthProvider(Protocol):
    def current_user(self, token: str | None) -> str | None:
        ...


class ApiKeyAuthProvider:
    """Resolves ``okey_<id>.<secret>`` bearer tokens to owner ids.

    Raises ``AuthProviderError`` flagged transient when a key exceeds its request
    window, mirroring how a hosted identity provider throttles callers.
    """

    def __init__(
        self,
        repository: OwnerApiKeyRepository,
        *,
        rate_limiter: SlidingWindowRateLimiter,
    ) -> None:
        self._repository = repository
        self._rate_limiter = rate_limiter

    def current_user(self, token: str | None) -> str | None:
        parsed = _parse_token(token)
        if parsed is None:
            return None
        key_id, secret = parsed

        owner_id = self._repository.resolve_owner(key_id=key_id, secret=secret)
        if owner_id is None:
            LOGGER.info("auth rejected key_id=%s", key_id)
            return None

        decision = self._rate_limiter.take(key_id)
        if not decision.allowed:
            LOGGER.warning(
                "auth rate_limited key_id=%s retry_after_seconds=%s",
                key_id,
                decision.retry_after_seconds,
            )
            raise AuthProviderError(
                f"auth rate limit exceeded for key {key_id}",
                status_code=429,
                transient=True,
            )

        self._repository.mark_used(key_id)
        return owner_id


def parse_bearer_header(header_value: str | None) -> str | None:
    if header_value is None:
        return None
    scheme, _, credentials = header_value.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = credentials.strip()
    return token or None


def _parse_token(token: str | None) -> tuple[str, str] | None:
    if token is None:
        return None
    key_id, separator, secret = token.strip().partition(".")
    if not separator or not key_id.startswith(KEY_ID_PREFIX) or not secret:
        return None
    return key_id, secret
