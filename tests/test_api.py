"""Tests for the REST client."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from gatebot.api import MSG_TYPE_MEDIA, MSG_TYPE_TEXT, QQBotAPI
from gatebot.exceptions import TransportError


def _make_api(status=200, payload=None, body="", error=None):
    resp = MagicMock()
    resp.status = status
    resp.text = AsyncMock(return_value=body)
    if isinstance(payload, Exception):
        resp.json = AsyncMock(side_effect=payload)
    else:
        resp.json = AsyncMock(return_value=payload)

    session = MagicMock()
    if error is not None:
        session.request.side_effect = error
    else:
        session.request.return_value.__aenter__ = AsyncMock(return_value=resp)
        session.request.return_value.__aexit__ = AsyncMock(return_value=False)

    api = QQBotAPI("app-1", "secret-1", "https://api.test/", "https://bots.test/token", timeout=5)
    api._get_session = AsyncMock(return_value=session)
    return api, session


class TestToken:

    @pytest.mark.asyncio
    async def test_acquire_token(self):
        api, session = _make_api(payload={"access_token": "tok", "expires_in": "7200"})
        response = await api.acquire_token()
        assert response.access_token == "tok"
        assert response.expires_in == 7200
        args, kwargs = session.request.call_args
        assert args == ("POST", "https://bots.test/token")
        assert kwargs["json"] == {"appId": "app-1", "clientSecret": "secret-1"}

    @pytest.mark.asyncio
    async def test_malformed_token_response(self):
        api, _ = _make_api(payload={"code": 100016, "message": "invalid appid"})
        with pytest.raises(TransportError):
            await api.acquire_token()


class TestGateway:

    @pytest.mark.asyncio
    async def test_resolve_endpoint(self):
        api, session = _make_api(payload={"url": "wss://api.test/websocket"})
        assert await api.resolve_gateway_endpoint("tok") == "wss://api.test/websocket"
        args, kwargs = session.request.call_args
        assert args == ("GET", "https://api.test/gateway")
        assert kwargs["headers"] == {"Authorization": "QQBot tok"}

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        api, _ = _make_api(status=401, body="unauthorized")
        with pytest.raises(TransportError) as exc_info:
            await api.resolve_gateway_endpoint("tok")
        assert exc_info.value.status == 401
        assert exc_info.value.is_retryable

    @pytest.mark.asyncio
    async def test_timeout(self):
        api, _ = _make_api(error=asyncio.TimeoutError())
        with pytest.raises(TransportError, match="timed out"):
            await api.resolve_gateway_endpoint("tok")

    @pytest.mark.asyncio
    async def test_connection_error(self):
        api, _ = _make_api(error=aiohttp.ClientConnectionError("refused"))
        with pytest.raises(TransportError):
            await api.resolve_gateway_endpoint("tok")

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        api, _ = _make_api(payload=ValueError("not json"))
        with pytest.raises(TransportError, match="invalid JSON"):
            await api.resolve_gateway_endpoint("tok")


class TestMessages:

    @pytest.mark.asyncio
    async def test_upload_media_group(self):
        api, session = _make_api(payload={"file_info": "fi-1", "ttl": 0})
        assert await api.upload_media("tok", "https://img.test/a.png", "g1", False) == "fi-1"
        args, kwargs = session.request.call_args
        assert args == ("POST", "https://api.test/v2/groups/g1/files")
        assert kwargs["json"] == {"file_type": 1, "url": "https://img.test/a.png", "srv_send_msg": False}

    @pytest.mark.asyncio
    async def test_send_text_reply_private(self):
        api, session = _make_api(payload={"id": "r1"})
        await api.send_reply("tok", "hello", None, "m1", "u1", True)
        args, kwargs = session.request.call_args
        assert args == ("POST", "https://api.test/v2/users/u1/messages")
        assert kwargs["json"] == {"content": "hello", "msg_type": MSG_TYPE_TEXT, "msg_id": "m1"}

    @pytest.mark.asyncio
    async def test_send_media_reply(self):
        api, session = _make_api(payload={"id": "r1"})
        await api.send_reply("tok", "", "fi-1", "m1", "g1", False)
        _, kwargs = session.request.call_args
        assert kwargs["json"] == {
            "content": "",
            "msg_type": MSG_TYPE_MEDIA,
            "msg_id": "m1",
            "media": {"file_info": "fi-1"},
        }


@pytest.mark.asyncio
async def test_close_releases_session():
    api = QQBotAPI("a", "s", "https://api.test", "https://bots.test/token")
    session = await api._get_session()
    assert await api._get_session() is session
    await api.close()
    assert session.closed
    assert api._session is None
