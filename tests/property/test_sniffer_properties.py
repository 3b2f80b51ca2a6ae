"""Property-based tests for image signature detection."""

from __future__ import annotations

import pytest
from hypothesis import assume, given, strategies as st

from imgedge.edge_proxy.errors import UnsupportedMediaType
from imgedge.edge_proxy.sniffer import SNIFF_LENGTH, detect_mime_type


def _has_known_signature(data: bytes) -> bool:
    return (
        data.startswith(b"\xff\xd8\xff")
        or data.startswith(b"\x89PNG")
        or data.startswith(b"GIF")
        or data[8:12] == b"WEBP"
        or (data[4:8] == b"ftyp" and data[8:12] in (b"avif", b"avis"))
    )


@given(st.binary(max_size=64))
def test_unsigned_buffers_are_rejected(data: bytes) -> None:
    assume(not _has_known_signature(data))
    with pytest.raises(UnsupportedMediaType):
        detect_mime_type(data)


@given(st.binary(max_size=64), st.binary(max_size=64))
def test_only_leading_window_decides(data: bytes, tail: bytes) -> None:
    head = data[:SNIFF_LENGTH]
    try:
        expected = detect_mime_type(head)
    except UnsupportedMediaType:
        with pytest.raises(UnsupportedMediaType):
            detect_mime_type(head + tail if len(head) == SNIFF_LENGTH else head)
    else:
        assert detect_mime_type(head + tail) == expected


@given(st.binary(max_size=32))
def test_jpeg_prefix_always_detected(tail: bytes) -> None:
    assert detect_mime_type(b"\xff\xd8\xff" + tail) == "image/jpeg"
