from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class ApiError(Exception):
    """Business error for the HTTP surface, rendered as an error envelope."""
    code: str
    message: str
    http_status: int = 400
    data: Optional[dict[str, Any]] = None


class RelayError(Exception):
    """Base class for failures of a relayed request.

    `user_message` is what the destination sink gets to see.
    """

    def __init__(self, user_message: str, *, detail: Optional[str] = None) -> None:
        super().__init__(detail or user_message)
        self.user_message = user_message
        self.detail = detail


class ConfigError(RelayError):
    """Missing or invalid endpoint / API key. Raised before any network call."""


class InvalidInputError(RelayError):
    """The submitted content cannot be turned into a request."""


class HttpStatusError(RelayError):
    """Non-2xx response. Never retried."""

    def __init__(self, status_code: int, reason: str, body_excerpt: str) -> None:
        msg = f"API error: HTTP {status_code}: {reason} - {body_excerpt}"
        super().__init__(msg)
        self.status_code = status_code
        self.reason = reason
        self.body_excerpt = body_excerpt


class RequestTimeoutError(RelayError):
    """No response headers within the per-request timeout."""

    def __init__(self, seconds: float) -> None:
        super().__init__("Request timed out. Please try again.", detail=f"no response within {seconds}s")
        self.seconds = seconds


class StallError(RelayError):
    """No chunk arrived within the per-chunk timeout."""

    def __init__(self, seconds: float) -> None:
        super().__init__(
            "Stream interrupted: the API stopped responding before sending any content. Please try again.",
            detail=f"Stream stalled: no data received for {seconds}s",
        )
        self.seconds = seconds


class ChunkParseError(RelayError):
    """One SSE line did not hold valid JSON. Logged and skipped."""

    def __init__(self, payload: str, reason: str) -> None:
        super().__init__("Failed to parse stream chunk", detail=f"{reason}: {payload[:80]!r}")
        self.payload = payload


class RequestAbortedError(RelayError):
    """The session disappeared from the registry (user cancel). Never shown as an error."""

    def __init__(self, request_id: str) -> None:
        super().__init__("Request stopped by user.", detail=f"request {request_id} aborted")
        self.request_id = request_id


class SessionConflictError(RelayError):
    """A live session already holds this request id."""

    def __init__(self, request_id: str) -> None:
        super().__init__("A request with this id is already running.", detail=request_id)
        self.request_id = request_id


class NetworkError(RelayError):
    """The request never got a response (DNS, connect, TLS...)."""

    def __init__(self, detail: str) -> None:
        super().__init__("Network error. Please check your connection.", detail=detail)


class StreamReadError(RelayError):
    """The connection broke while the body was being read."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"Stream error: {detail}", detail=detail)
