"""Client-visible failures of the edge proxy.

Every class carries a fixed, generic message. Keys, origin URLs and exception
text never reach the response body.
"""

from __future__ import annotations

from fastapi import HTTPException, status


class EdgeProxyError(HTTPException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(status_code=type(self).status_code, detail=message or type(self).message)


class InvalidKey(EdgeProxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid key format"


class KeyMissing(InvalidKey):
    """No key follows the mount prefix."""


class KeyInvalid(InvalidKey):
    """The key breaks the allowed character set or path rules."""


class OriginMismatch(EdgeProxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid origin URL"


class PayloadTooLarge(EdgeProxyError):
    status_code = status.HTTP_413_CONTENT_TOO_LARGE

    def __init__(self, max_bytes: int) -> None:
        super().__init__(f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB")


class UnsupportedMediaType(EdgeProxyError):
    status_code = status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    message = "Unsupported media type"


class BadGateway(EdgeProxyError):
    status_code = status.HTTP_502_BAD_GATEWAY
    message = "Bad Gateway"


class GatewayTimeout(EdgeProxyError):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    message = "Gateway Timeout"


class InternalError(EdgeProxyError):
    pass
