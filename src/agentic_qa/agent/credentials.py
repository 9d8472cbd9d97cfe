"""Short-lived tool credentials and their reuse cache."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Protocol

import structlog

from agentic_qa.errors import CredentialError
from agentic_qa.locks import KeyedLocks

logger = structlog.get_logger(__name__)


@dataclass(slots=True, frozen=True)
class AccessToken:
    value: str
    expires_at: float  # time.monotonic() deadline


class CredentialIssuer(Protocol):
    """Issues a token that lets `principal` call `audience` (a tool endpoint)."""

    async def issue(self, principal: str, audience: str) -> AccessToken:
        """Return a fresh token or raise `CredentialError`."""


class StaticTokenIssuer:
    """Hands out a fixed token with a nominal lifetime; for local runs and tests."""

    def __init__(self, token: str, ttl_seconds: float = 300.0) -> None:
        self.token = token
        self.ttl_seconds = ttl_seconds
        self.issued = 0

    async def issue(self, principal: str, audience: str) -> AccessToken:
        self.issued += 1
        return AccessToken(value=self.token, expires_at=time.monotonic() + self.ttl_seconds)


class TokenCache:
    """Reuses tokens per (principal, audience) until they are close to expiry."""

    def __init__(self, issuer: CredentialIssuer, *, refresh_margin_seconds: float = 30.0) -> None:
        self.issuer = issuer
        self.refresh_margin_seconds = refresh_margin_seconds
        self._tokens: dict[tuple[str, str], AccessToken] = {}
        self._locks: KeyedLocks[tuple[str, str]] = KeyedLocks()

    async def token_for(self, principal: str, audience: str) -> str:
        key = (principal, audience)
        async with self._locks.hold(key):
            cached = self._tokens.get(key)
            if cached is not None and cached.expires_at - self.refresh_margin_seconds > time.monotonic():
                return cached.value
            try:
                token = await self.issuer.issue(principal, audience)
            except CredentialError:
                raise
            except Exception as exc:
                raise CredentialError(f"credential issuance failed for {principal}: {exc}") from exc
            self._tokens[key] = token
            logger.debug("credential_issued", principal=principal, audience=audience)
            return token.value

    def evict(self, principal: str, audience: str) -> None:
        self._tokens.pop((principal, audience), None)

    def sweep_expired(self) -> int:
        now = time.monotonic()
        expired = [key for key, token in self._tokens.items() if token.expires_at <= now]
        for key in expired:
            del self._tokens[key]
        return len(expired)
