"""
B2B Access Token Cache

The B2B flow authenticates every order-creation call with a bearer token
obtained through a client-credentials exchange. Tokens are cached until
shortly before they expire so most requests skip the extra round-trip.

The cache is an explicit object owned by the B2B client, with an
injectable clock, rather than process-wide state.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AccessToken:
    """A bearer token and the instant it stops being valid."""
    access_token: str
    expires_at: datetime
    token_type: str = "Bearer"

    def is_valid(self, now: datetime, skew: timedelta = timedelta(0)) -> bool:
        return self.expires_at - skew > now

    @property
    def authorization_header(self) -> str:
        return f"{self.token_type} {self.access_token}"


class AccessTokenCache:
    """
    Holds at most one token and renews it on demand.

    Concurrent callers that find the cache empty share a single
    acquisition instead of each hitting the token endpoint.

    Attributes:
        refresh_skew: Renew this long before the recorded expiry
    """

    def __init__(
        self,
        clock: Clock = utcnow,
        refresh_skew: timedelta = timedelta(seconds=60),
    ):
        self._clock = clock
        self.refresh_skew = refresh_skew
        self._token: Optional[AccessToken] = None
        self._lock = asyncio.Lock()

    def now(self) -> datetime:
        return self._clock()

    def peek(self) -> Optional[AccessToken]:
        """Return the cached token if it is still usable."""
        token = self._token
        if token is not None and token.is_valid(self._clock(), self.refresh_skew):
            return token
        return None

    async def get(self, acquire: Callable[[], Awaitable[AccessToken]]) -> AccessToken:
        """
        Return a valid token, calling `acquire` only when none is cached.

        Failures from `acquire` propagate and leave the cache empty.
        """
        token = self.peek()
        if token is not None:
            return token

        async with self._lock:
            token = self.peek()
            if token is not None:
                return token
            logger.debug("Access token missing or expired, acquiring a new one")
            token = await acquire()
            self._token = token
            logger.info(f"Access token cached until {token.expires_at.isoformat()}")
            return token

    def invalidate(self) -> None:
        self._token = None
