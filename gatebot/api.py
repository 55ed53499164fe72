"""REST client for the QQ bot open platform.

Thin aiohttp wrapper around the four calls the bot needs: fetching an
access token, resolving the gateway WebSocket URL, registering a media
URL with the platform, and sending a reply to a group or a user.

Key classes:
    TokenResponse: Pydantic model for the access token endpoint.
    GatewayResponse: Pydantic model for the gateway endpoint.
    QQBotAPI: Owns a shared aiohttp session; every failure surfaces
        as TransportError.
"""

import asyncio
from typing import Any, Optional

import aiohttp
import structlog
from pydantic import BaseModel, ValidationError, field_validator

from .exceptions import TransportError
from .protocol import auth_token

logger = structlog.get_logger("gatebot.api")

# msg_type values accepted by the message endpoints
MSG_TYPE_TEXT = 0
MSG_TYPE_MEDIA = 7

# file_type for uploaded images
FILE_TYPE_IMAGE = 1


class TokenResponse(BaseModel):
    """Access token endpoint response. ``expires_in`` is in seconds."""

    access_token: str
    expires_in: int

    @field_validator("expires_in", mode="before")
    @classmethod
    def _coerce_expires(cls, value: Any) -> int:
        # The platform returns the lifetime as a numeric string
        return int(value)


class GatewayResponse(BaseModel):
    url: str


class MediaResponse(BaseModel):
    file_info: str


class QQBotAPI:
    """REST collaborator for token, gateway, media and reply calls.

    Args:
        app_id: Bot application id.
        client_secret: Bot client secret.
        api_base_url: Base URL for the OpenAPI host (sandbox-aware).
        token_url: Access token endpoint.
        timeout: Total timeout in seconds for each request.
    """

    def __init__(
        self,
        app_id: str,
        client_secret: str,
        api_base_url: str,
        token_url: str,
        timeout: float = 60,
    ):
        self.app_id = app_id
        self.client_secret = client_secret
        self.api_base_url = api_base_url.rstrip("/")
        self.token_url = token_url
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create a shared aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        """Close the shared HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    @staticmethod
    def _auth_headers(token: str) -> dict:
        return {"Authorization": auth_token(token)}

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        """Execute a request and return the decoded JSON body.

        Raises:
            TransportError: On connection failure, timeout, non-2xx
                status or a non-JSON body.
        """
        try:
            session = await self._get_session()
            async with session.request(
                method,
                url,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                **kwargs,
            ) as resp:
                if resp.status >= 300:
                    body = await resp.text()
                    logger.warning(
                        "api_request_failed",
                        method=method,
                        url=url,
                        status=resp.status,
                        body=body[:200],
                    )
                    raise TransportError(
                        f"{method} {url} failed",
                        status=resp.status,
                    )
                return await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise TransportError(f"{method} {url} timed out", url=url) from e
        except aiohttp.ClientError as e:
            raise TransportError(
                f"{method} {url} failed: {e}",
                url=url,
                error_type=type(e).__name__,
            ) from e
        except ValueError as e:
            raise TransportError(f"{method} {url} returned invalid JSON", url=url) from e

    async def acquire_token(self) -> TokenResponse:
        """Fetch a fresh access token."""
        data = await self._request(
            "POST",
            self.token_url,
            json={"appId": self.app_id, "clientSecret": self.client_secret},
        )
        try:
            return TokenResponse.model_validate(data)
        except ValidationError as e:
            raise TransportError("token response malformed", error=str(e)[:200]) from e

    async def resolve_gateway_endpoint(self, token: str) -> str:
        """Return the WebSocket URL to connect to."""
        data = await self._request(
            "GET",
            f"{self.api_base_url}/gateway",
            headers=self._auth_headers(token),
        )
        try:
            return GatewayResponse.model_validate(data).url
        except ValidationError as e:
            raise TransportError("gateway response malformed", error=str(e)[:200]) from e

    def _target_path(self, target: str, is_private: bool) -> str:
        if is_private:
            return f"{self.api_base_url}/v2/users/{target}"
        return f"{self.api_base_url}/v2/groups/{target}"

    async def upload_media(
        self,
        token: str,
        source_url: str,
        target: str,
        is_private: bool,
    ) -> str:
        """Register a hosted image with the platform.

        Returns:
            The opaque ``file_info`` reference used in media replies.
        """
        data = await self._request(
            "POST",
            f"{self._target_path(target, is_private)}/files",
            headers=self._auth_headers(token),
            json={"file_type": FILE_TYPE_IMAGE, "url": source_url, "srv_send_msg": False},
        )
        try:
            return MediaResponse.model_validate(data).file_info
        except ValidationError as e:
            raise TransportError("media response malformed", error=str(e)[:200]) from e

    async def send_reply(
        self,
        token: str,
        text: str,
        media: Optional[str],
        message_id: Optional[str],
        target: str,
        is_private: bool,
    ) -> Any:
        """Send a passive reply to ``message_id``.

        Args:
            token: Current access token.
            text: Reply text (may be empty for media-only replies).
            media: ``file_info`` from upload_media, or None for text.
            message_id: Id of the message being answered.
            target: Group openid, or user openid for private chats.
            is_private: Selects the user endpoint over the group one.
        """
        payload: dict = {
            "content": text,
            "msg_type": MSG_TYPE_MEDIA if media else MSG_TYPE_TEXT,
            "msg_id": message_id,
        }
        if media:
            payload["media"] = {"file_info": media}
        return await self._request(
            "POST",
            f"{self._target_path(target, is_private)}/messages",
            headers=self._auth_headers(token),
            json=payload,
        )
