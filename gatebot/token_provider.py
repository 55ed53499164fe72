"""Access token acquisition and scheduled renewal.

The platform issues short-lived bearer tokens. TokenProvider fetches
one, keeps it as an immutable Credential, and schedules its own renewal
``refresh_margin`` seconds before expiry. A failed renewal is handed to
``on_refresh_failed`` so the owner (the gateway session) can reconnect;
renewals never stop silently.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

import structlog

from .exceptions import CredentialError, TransportError
from .tasks import cancel_task

logger = structlog.get_logger("gatebot.gateway")

MIN_REFRESH_DELAY = 1.0

RefreshFailedCallback = Callable[[CredentialError], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class Credential:
    """An access token and its absolute expiry (epoch seconds)."""
    token: str
    expires_at: float

    @property
    def remaining(self) -> float:
        return self.expires_at - time.time()


class TokenProvider:
    """Acquires and renews the bot access token.

    Args:
        api: REST collaborator exposing ``acquire_token()``.
        refresh_margin: Seconds before expiry at which to renew.
        on_refresh_failed: Called with the CredentialError when a
            scheduled renewal fails.
    """

    def __init__(
        self,
        api,
        refresh_margin: float = 60.0,
        on_refresh_failed: Optional[RefreshFailedCallback] = None,
    ):
        self._api = api
        self.refresh_margin = refresh_margin
        self.on_refresh_failed = on_refresh_failed
        self._credential: Optional[Credential] = None
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    @property
    def token(self) -> Optional[str]:
        return self._credential.token if self._credential else None

    async def acquire(self) -> Credential:
        """Fetch a fresh credential and schedule its renewal.

        Raises:
            CredentialError: If the REST call fails.
        """
        logger.info("token_acquiring")
        try:
            response = await self._api.acquire_token()
        except TransportError as e:
            logger.error("token_acquire_failed", error=str(e))
            raise CredentialError("access token request failed", cause=str(e)) from e

        credential = Credential(
            token=response.access_token,
            expires_at=time.time() + response.expires_in,
        )
        self._credential = credential
        logger.info("token_acquired", expires_in=response.expires_in)

        delay = max(response.expires_in - self.refresh_margin, MIN_REFRESH_DELAY)
        self._schedule_refresh(delay)
        return credential

    def _schedule_refresh(self, delay: float) -> None:
        cancel_task(self._refresh_task)
        self._refresh_task = asyncio.get_running_loop().create_task(
            self._refresh_after(delay), name="token-refresh"
        )
        logger.debug("token_refresh_scheduled", delay_seconds=round(delay))

    async def _refresh_after(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        logger.info("token_refreshing")
        try:
            await self.acquire()
        except CredentialError as e:
            logger.error("token_refresh_failed", error=str(e))
            if self.on_refresh_failed is not None:
                result = self.on_refresh_failed(e)
                if asyncio.iscoroutine(result):
                    await result

    def cancel_refresh(self) -> None:
        """Cancel the pending renewal, if any."""
        cancel_task(self._refresh_task)
        self._refresh_task = None
