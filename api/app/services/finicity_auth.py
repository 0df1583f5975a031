"""Process-wide cache for the Finicity partner access token.

Finicity authenticates the integration, not the end user, so one token is
shared by every request in the process. Tokens live two hours; we stop
serving them a safety margin before that.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from app.core.config import settings
from app.services.finicity_client import FinicityClient

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Credential:
    token: str
    expires_at: datetime


class TokenCache:
    def __init__(
        self,
        lifetime: timedelta = timedelta(minutes=120),
        safety_margin: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._lifetime = lifetime
        self._safety_margin = safety_margin
        self._clock = clock
        self._credential: Credential | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls) -> "TokenCache":
        return cls(
            lifetime=timedelta(minutes=settings.finicity_token_lifetime_minutes),
            safety_margin=timedelta(minutes=settings.finicity_token_safety_margin_minutes),
        )

    def _usable(self) -> Credential | None:
        cred = self._credential
        if cred is not None and self._clock() < cred.expires_at:
            return cred
        return None

    async def get_token(self, client: FinicityClient) -> str:
        """Return a valid token, authenticating at most once per expiry."""
        client.require_configured()

        cred = self._usable()
        if cred is not None:
            logger.debug("Using cached Finicity API token.")
            return cred.token

        async with self._lock:
            # Another caller may have refreshed while we waited
            cred = self._usable()
            if cred is not None:
                return cred.token

            logger.info("Requesting new Finicity API token.")
            issued_at = self._clock()
            token = await client.authenticate()
            self._credential = Credential(
                token=token,
                expires_at=issued_at + self._lifetime - self._safety_margin,
            )
            return token

    def invalidate(self) -> None:
        self._credential = None


# Shared by every request handled by this process
token_cache = TokenCache.from_settings()
