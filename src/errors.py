"""Failure taxonomy and the normalized frames the relay emits.

Every exchange ends in exactly one terminal frame: ``done`` carrying the
aggregated content, or ``error`` carrying a RelayError.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """User-facing failure classes for one exchange."""
    CONFIG_MISSING = "config_missing"
    UNREACHABLE = "unreachable"
    TIMEOUT = "timeout"
    STALLED = "stalled"
    GATEWAY_EXPIRED = "gateway_expired"
    UPSTREAM_HTTP_ERROR = "upstream_http_error"
    EMPTY_RESPONSE = "empty_response"


# HTTP status the relay server answers with for each kind.
# UPSTREAM_HTTP_ERROR passes the upstream's own status through.
KIND_STATUS = {
    ErrorKind.CONFIG_MISSING: 400,
    ErrorKind.UNREACHABLE: 503,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.STALLED: 504,
    ErrorKind.GATEWAY_EXPIRED: 502,
    ErrorKind.UPSTREAM_HTTP_ERROR: 502,
    ErrorKind.EMPTY_RESPONSE: 502,
}

STATUS_KIND = {
    400: ErrorKind.CONFIG_MISSING,
    502: ErrorKind.GATEWAY_EXPIRED,
    503: ErrorKind.UNREACHABLE,
    504: ErrorKind.TIMEOUT,
}

DEFAULT_MESSAGES = {
    ErrorKind.CONFIG_MISSING: "API URL not configured. Open Settings to set your tunnel URL and API key.",
    ErrorKind.UNREACHABLE: "Cannot reach the model server.",
    ErrorKind.TIMEOUT: "Model server timed out. Make sure it is still running.",
    ErrorKind.STALLED: "Model server stopped sending data mid-response.",
    ErrorKind.GATEWAY_EXPIRED: (
        "Tunnel returned HTML instead of JSON. The tunnel may have expired, "
        "restart it to get a fresh URL."
    ),
    ErrorKind.UPSTREAM_HTTP_ERROR: "API Error: Connection failed",
    ErrorKind.EMPTY_RESPONSE: "No response content received from the model.",
}


class RelayError(Exception):
    """A classified exchange failure.

    Attributes:
        kind: Taxonomy member
        message: Text shown to the user
        status: HTTP status the relay server reports this failure with
    """

    def __init__(self, kind: ErrorKind, message: str = "", status: Optional[int] = None):
        self.kind = kind
        self.message = message or DEFAULT_MESSAGES[kind]
        self.status = status or KIND_STATUS[kind]
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind.value}

    @classmethod
    def from_document(cls, status: int, document: dict) -> "RelayError":
        """Rebuild an error from a relay server's ``{error, kind}`` document."""
        message = str(document.get("error") or "")
        try:
            kind = ErrorKind(document.get("kind"))
        except ValueError:
            kind = STATUS_KIND.get(status, ErrorKind.UPSTREAM_HTTP_ERROR)
        if not message:
            message = f"Server error ({status})"
        return cls(kind, message, status)


class FrameType(str, Enum):
    TOKEN = "token"
    ERROR = "error"
    DONE = "done"


@dataclass
class Frame:
    """One normalized unit of relay output."""
    type: FrameType
    text: str = ""
    error: Optional[RelayError] = None

    @classmethod
    def token(cls, text: str) -> "Frame":
        return cls(FrameType.TOKEN, text=text)

    @classmethod
    def done(cls, content: str) -> "Frame":
        return cls(FrameType.DONE, text=content)

    @classmethod
    def failure(cls, error: RelayError) -> "Frame":
        return cls(FrameType.ERROR, error=error)

    @property
    def is_terminal(self) -> bool:
        return self.type is not FrameType.TOKEN
