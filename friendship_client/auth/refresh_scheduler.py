"""
Proactive credential refresh.

Schedules a refresh shortly before the access token expires so that most
requests never see an authentication failure at all.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Optional, Callable, Awaitable, Union

from friendship_client.auth.claims import decode_claims
from friendship_shared.exceptions import RefreshFailure, SessionTerminatedError
from friendship_shared.models import CredentialPair

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN = 120.0
DEFAULT_MINIMUM_DELAY = 30.0


def compute_refresh_delay(
    expires_at: Union[datetime, float],
    now: float,
    safety_margin: float = DEFAULT_SAFETY_MARGIN,
    minimum_delay: float = DEFAULT_MINIMUM_DELAY
) -> float:
    """
    Seconds to wait before refreshing a token expiring at `expires_at`.

    Args:
        expires_at: Expiry as a datetime or POSIX timestamp
        now: Current POSIX timestamp
        safety_margin: How long before expiry to refresh
        minimum_delay: Lower bound, also applied to already expired tokens

    Returns:
        max(expires_at - now - safety_margin, minimum_delay)
    """
    if isinstance(expires_at, datetime):
        expires_at = expires_at.timestamp()
    return max(expires_at - now - safety_margin, minimum_delay)


class RefreshScheduler:
    """
    Keeps at most one pending refresh timer.

    When the timer fires it asks the coordinator to refresh unless a refresh
    is already in flight. It does not re-arm itself; the session controller
    re-arms it with the new access token from the coordinator's refresh
    callback.
    """

    def __init__(
        self,
        refresh: Callable[[], Awaitable[Optional[CredentialPair]]],
        safety_margin: float = DEFAULT_SAFETY_MARGIN,
        minimum_delay: float = DEFAULT_MINIMUM_DELAY,
        clock: Callable[[], float] = time.time
    ):
        self._refresh = refresh
        self.safety_margin = safety_margin
        self.minimum_delay = minimum_delay
        self._clock = clock

        self._task: Optional[asyncio.Task] = None
        self.next_delay: Optional[float] = None

    @property
    def is_armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self, access_token: str) -> Optional[float]:
        """
        Schedule the next refresh for an access token, replacing any timer.

        Returns:
            The delay in seconds, or None if the token carries no expiry
        """
        self.cancel()

        claims = decode_claims(access_token)
        if claims is None or claims.expires_at is None:
            logger.info("Access token has no expiry claim, proactive refresh disabled")
            return None

        delay = compute_refresh_delay(
            claims.expires_at, self._clock(), self.safety_margin, self.minimum_delay
        )
        self.next_delay = delay
        self._task = asyncio.create_task(self._fire_after(delay))

        logger.debug(f"Proactive refresh scheduled in {delay:.0f} seconds")
        return delay

    def cancel(self) -> None:
        """Cancel the pending timer, if any."""
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None
        self.next_delay = None

    async def shutdown(self) -> None:
        task = self._task
        self.cancel()
        if task:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _fire_after(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            logger.debug("Proactive refresh timer cancelled")
            raise

        # the timer is spent; arm() from the refresh callback must not cancel it
        if self._task is asyncio.current_task():
            self._task = None
            self.next_delay = None

        try:
            pair = await self._refresh()
        except RefreshFailure as e:
            logger.warning(f"Proactive refresh failed: {e.message}")
            return
        except SessionTerminatedError:
            logger.debug("Proactive refresh abandoned: session terminated")
            return

        if pair is None:
            logger.debug("Proactive refresh skipped: a refresh was already in flight")
