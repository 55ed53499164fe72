"""Image hosting for plugin replies.

Plugins may return raw image bytes. The platform only accepts images by
URL, so the bytes are first POSTed to a self-hosted image server that
answers with ``{"url": ...}``.

Key functions:
    detect_mime_type: Sniff JPEG/PNG magic bytes.
    upload_image: Upload bytes and return the hosted URL.
"""

import asyncio

import aiohttp
import structlog

from .exceptions import ErrorCategory, TransportError

logger = structlog.get_logger("gatebot.api")

UPLOAD_TIMEOUT = 10

_JPEG_MAGIC = b"\xff\xd8"
_PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


def detect_mime_type(data: bytes) -> str:
    """Return the MIME type of JPEG or PNG data.

    Raises:
        ValueError: For any other format.
    """
    if data[:2] == _JPEG_MAGIC:
        return "image/jpeg"
    if data[:8] == _PNG_MAGIC:
        return "image/png"
    raise ValueError("Unsupported image format. Only JPEG/PNG allowed")


async def upload_image(
    session: aiohttp.ClientSession,
    data: bytes,
    service_url: str,
) -> str:
    """Upload image bytes to the image server.

    Args:
        session: aiohttp session for HTTP requests.
        data: Raw JPEG or PNG bytes.
        service_url: Upload endpoint of the image server.

    Returns:
        The hosted image URL.

    Raises:
        TransportError: On unsupported format, missing server, network
            failure, non-200 status or a response without a URL.
    """
    if not service_url:
        raise TransportError(
            "image server is not configured",
            category=ErrorCategory.PERMANENT,
        )
    try:
        mime_type = detect_mime_type(data)
    except ValueError as e:
        raise TransportError(str(e), category=ErrorCategory.PERMANENT) from e

    try:
        async with session.post(
            service_url,
            data=data,
            headers={"Content-Type": mime_type},
            timeout=aiohttp.ClientTimeout(total=UPLOAD_TIMEOUT),
        ) as resp:
            body = await resp.text()
            if resp.status != 200:
                raise TransportError(
                    f"Upload failed: {body[:100]}",
                    status=resp.status,
                )
            try:
                payload = await resp.json(content_type=None)
            except ValueError as e:
                raise TransportError(f"Failed to parse server response: {body[:100]}") from e
    except asyncio.TimeoutError as e:
        raise TransportError(f"Request timed out after {UPLOAD_TIMEOUT} seconds") from e
    except aiohttp.ClientError as e:
        raise TransportError(f"Network error: {e}", error_type=type(e).__name__) from e

    url = payload.get("url") if isinstance(payload, dict) else None
    if not url:
        raise TransportError("Invalid response: Missing URL field")

    logger.debug("image_uploaded", size=len(data), mime_type=mime_type)
    return url
