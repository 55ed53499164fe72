"""Inbound message routing.

Turns a gateway business message into a plugin dispatch and sends the
plugin's answer back through the REST collaborator:

    "<command_type> <body>"  →  registry.dispatch(...)  →  ReplyEnvelope
                                                        →  send_reply(...)

Errors are logged and swallowed here; end users only ever see no reply
or the registry's generic failure text.
"""

import re
from typing import Any, Awaitable, Callable, Mapping, Optional, Tuple

import structlog

from .exceptions import GatebotError
from .plugin_base import NO_HANDLER, ReplyEnvelope
from .protocol import InboundMessage

logger = structlog.get_logger("gatebot.router")

_COMMAND_RE = re.compile(r"^(\S+)(.*)$", re.DOTALL)

# Uploads raw image bytes somewhere public and returns the URL
ImageUploader = Callable[[bytes], Awaitable[str]]


def parse(raw_text: str) -> Optional[Tuple[str, str]]:
    """Split message text into ``(command_type, body)``.

    Leading whitespace is ignored, the first non-whitespace run is the
    command type and the stripped remainder is the body. Returns None
    when the text has no non-whitespace token.
    """
    match = _COMMAND_RE.match(raw_text.lstrip())
    if not match:
        return None
    return match.group(1), match.group(2).strip()


def normalize(result: Any) -> Optional[ReplyEnvelope]:
    """Convert a plugin result into a ReplyEnvelope, or None for no reply."""
    if result is NO_HANDLER or not result:
        return None
    if isinstance(result, str):
        return ReplyEnvelope(text=result) if result.strip() else None
    if isinstance(result, ReplyEnvelope):
        envelope = result
    elif isinstance(result, Mapping):
        envelope = ReplyEnvelope(text=result.get("text") or None, media=result.get("image") or None)
    else:
        logger.warning("reply_unsupported_type", type=type(result).__name__)
        return None
    return None if envelope.is_empty else envelope


class MessageRouter:
    """Parses, dispatches and answers inbound messages.

    Args:
        registry: PluginRegistry providing ``dispatch``.
        api: REST collaborator providing ``upload_media`` and
            ``send_reply``.
        token_source: Returns the current access token.
        image_uploader: Hosts raw image bytes, returning a URL.
    """

    def __init__(
        self,
        registry,
        api,
        token_source: Callable[[], Optional[str]],
        image_uploader: Optional[ImageUploader] = None,
    ):
        self.registry = registry
        self.api = api
        self._token_source = token_source
        self._image_uploader = image_uploader

    async def handle(self, message: InboundMessage) -> None:
        """Process one inbound message end to end. Never raises."""
        try:
            await self._handle(message)
        except Exception as e:
            logger.error(
                "message_handling_failed",
                message_id=message.message_id,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _handle(self, message: InboundMessage) -> None:
        content = message.content
        logger.info(
            "message_received",
            chat="private" if message.is_private else "group",
            sender=message.author_id,
            preview=content[:50] + ("..." if len(content) > 50 else ""),
        )

        parsed = parse(content)
        if parsed is None:
            logger.warning("message_unparseable", message_id=message.message_id)
            return
        command_type, body = parsed

        result = await self.registry.dispatch(
            command_type, body, message.author_id, message.is_private
        )
        if result is NO_HANDLER:
            logger.debug("message_no_handler", command_type=command_type)
            return

        envelope = normalize(result)
        if envelope is None:
            logger.debug("message_no_reply", command_type=command_type)
            return

        await self.deliver(message, envelope)

    async def deliver(self, message: InboundMessage, envelope: ReplyEnvelope) -> None:
        """Send ``envelope`` as a reply to ``message``.

        Raises:
            GatebotError: If there is no token or target, or a REST
                call fails.
        """
        token = self._token_source()
        if not token:
            raise GatebotError("no access token available for reply", module="router")
        target = message.target
        if not target:
            raise GatebotError("message has no reply target", module="router", message_id=message.message_id)

        if envelope.media:
            url = await self._resolve_media_url(envelope.media)
            file_info = await self.api.upload_media(token, url, target, message.is_private)
            logger.debug("media_registered", private=message.is_private)
            await self.api.send_reply(
                token, envelope.text or "", file_info, message.message_id, target, message.is_private
            )
            logger.info("reply_sent", kind="media", private=message.is_private)
        else:
            await self.api.send_reply(
                token, envelope.text, None, message.message_id, target, message.is_private
            )
            logger.info("reply_sent", kind="text", private=message.is_private)

    async def _resolve_media_url(self, media) -> str:
        if isinstance(media, str):
            return media
        if self._image_uploader is None:
            raise GatebotError("no image uploader configured for raw image replies", module="router")
        url = await self._image_uploader(bytes(media))
        logger.debug("image_hosted")
        return url
