"""Content key extraction and validation."""

from __future__ import annotations

import re

from .errors import KeyInvalid, KeyMissing


MOUNT_PREFIX = "/images/"

_SAFE_KEY = re.compile(r"[a-zA-Z0-9\-_/.]+")


class ContentKey(str):
    """A key that passed :func:`validate_key`. Only the validator builds these."""

    __slots__ = ()


def extract_key(path: str) -> str:
    candidate = path[len(MOUNT_PREFIX):] if path.startswith(MOUNT_PREFIX) else ""
    if not candidate:
        raise KeyMissing()
    return candidate


def validate_key(candidate: str) -> ContentKey:
    if not candidate:
        raise KeyMissing()
    if ".." in candidate or candidate.startswith("/") or "//" in candidate:
        raise KeyInvalid()
    # fullmatch: "$" would accept a trailing newline
    if _SAFE_KEY.fullmatch(candidate) is None:
        raise KeyInvalid()
    return ContentKey(candidate)


def parse_content_key(path: str) -> ContentKey:
    return validate_key(extract_key(path))
