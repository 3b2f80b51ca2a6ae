"""Magic-byte detection of uploaded image formats."""

from __future__ import annotations

from typing import Sequence

from .errors import UnsupportedMediaType


SNIFF_LENGTH = 16

# (mime type, ((offset, bytes), ...) alternatives); every part of one
# alternative must match. Checked in order.
_SIGNATURES: Sequence[tuple[str, Sequence[Sequence[tuple[int, bytes]]]]] = (
    ("image/jpeg", (((0, b"\xff\xd8\xff"),),)),
    ("image/png", (((0, b"\x89PNG"),),)),
    ("image/gif", (((0, b"GIF"),),)),
    ("image/webp", (((8, b"WEBP"),),)),
    (
        "image/avif",
        (
            ((4, b"ftyp"), (8, b"avif")),
            ((4, b"ftyp"), (8, b"avis")),
        ),
    ),
)


def _matches(head: bytes, parts: Sequence[tuple[int, bytes]]) -> bool:
    return all(head[offset:offset + len(magic)] == magic for offset, magic in parts)


def detect_mime_type(data: bytes) -> str:
    """Return the MIME type implied by the first bytes of ``data``.

    Raises :class:`UnsupportedMediaType` when no known signature matches.
    Client supplied content types play no part in the decision.
    """
    head = bytes(data[:SNIFF_LENGTH])
    for mime_type, alternatives in _SIGNATURES:
        if any(_matches(head, parts) for parts in alternatives):
            return mime_type
    raise UnsupportedMediaType()
