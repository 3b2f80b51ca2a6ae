"""Image payloads and ASGI client helpers shared across edge proxy tests."""

from __future__ import annotations

from contextlib import asynccontextmanager

import httpx


JPEG_HEADER = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01"
PNG_HEADER = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR"
GIF_HEADER = b"GIF89a\x01\x00\x01\x00\x80\x00\x00\x00"
WEBP_HEADER = b"RIFF\x24\x00\x00\x00WEBPVP8 "
AVIF_HEADER = b"\x00\x00\x00\x1cftypavif\x00\x00\x00\x00"


def jpeg_payload(size: int) -> bytes:
    """A JPEG-signed body of exactly ``size`` bytes."""
    return JPEG_HEADER + b"\x00" * max(0, size - len(JPEG_HEADER))


@asynccontextmanager
async def app_client(app):
    lifespan = app.router.lifespan_context(app)
    await lifespan.__aenter__()
    try:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client
    finally:
        await lifespan.__aexit__(None, None, None)
