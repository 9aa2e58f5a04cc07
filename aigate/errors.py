"""Error taxonomy for the gateway.

Every failure a request can hit maps onto one :class:`GatewayError`
subclass.  Each carries the HTTP status it is reported with and a stable
machine-readable ``code``.  None of them are retried by the gateway.
"""

from __future__ import annotations

import math


class GatewayError(Exception):
    """Base class for request-terminating gateway errors.

    Attributes
    ----------
    message:
        Human-readable description returned to the caller.
    details:
        Optional structured detail.  Only :class:`ValidationFailed` sets it;
        every other error keeps internals out of the response body.
    """

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def headers(self) -> dict[str, str]:
        return {}

    def to_dict(self) -> dict:
        """Serialise to the JSON error envelope ``{error, code, details?}``."""
        d: dict = {"error": self.message, "code": self.code}
        if self.details is not None:
            d["details"] = self.details
        return d


class MethodNotAllowed(GatewayError):
    status_code = 405
    code = "method_not_allowed"

    def __init__(self, method: str) -> None:
        super().__init__(f"Method {method} not allowed")
        self.method = method

    @property
    def headers(self) -> dict[str, str]:
        return {"Allow": "POST, OPTIONS"}


class Unauthorized(GatewayError):
    """Raised for every authentication failure.

    The message is the same for a missing header, a bad
    scheme and a token the verifier rejected.
    """

    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)

    @property
    def headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class RateLimited(GatewayError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, retry_after: float | None = None) -> None:
        super().__init__("Too many requests")
        self.retry_after = retry_after

    @property
    def headers(self) -> dict[str, str]:
        if self.retry_after is None:
            return {}
        # Whole seconds; a rejection never advertises 0.
        return {"Retry-After": str(max(1, math.ceil(self.retry_after)))}


class ValidationFailed(GatewayError):
    """Raised when a request body fails validation.

    ``details`` maps each failing field to the reason it failed, e.g.
    ``{"messages": "'messages' must not be empty"}``.
    """

    status_code = 400
    code = "bad_request"

    def __init__(self, message: str, details: dict[str, str] | None = None) -> None:
        super().__init__(message, details=details or {})

    @property
    def fields(self) -> list[str]:
        return list(self.details or {})


class PayloadTooLarge(GatewayError):
    status_code = 413
    code = "payload_too_large"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            f"Request body too large: {size} bytes (limit is {limit} bytes)"
        )
        self.size = size
        self.limit = limit


class UpstreamFailure(GatewayError):
    """Wraps anything the inference backend raised.

    The original exception is kept on ``__cause__`` for logging and is
    never part of the response body.
    """

    status_code = 500
    code = "upstream_failure"

    def __init__(self, message: str = "Inference request failed") -> None:
        super().__init__(message)
