"""Error taxonomy shared by every stage of the photoshoot pipeline.

Each error carries a ``kind`` (stable machine name), a ``retryable`` flag
and a message that can be shown to the user as-is.
"""

from __future__ import annotations

from typing import Any, Dict


class PhotosetError(Exception):
    """Base class for all user-facing pipeline errors."""

    kind = "error"
    retryable = False
    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "kind": self.kind,
            "retryable": self.retryable,
        }


class ValidationError(PhotosetError):
    """Bad caller input, detected before any remote call."""

    kind = "validation"
    http_status = 400


class AuthError(PhotosetError):
    kind = "auth"
    http_status = 401


class QuotaError(PhotosetError):
    kind = "quota"
    retryable = True
    http_status = 429


class SafetyRejection(PhotosetError):
    kind = "safety"
    http_status = 422


class SchemaError(PhotosetError):
    """Remote response arrived but does not match the expected structure."""

    kind = "schema"
    http_status = 502


class MalformedResponseError(SchemaError):
    """Remote response could not be parsed as JSON at all."""

    kind = "malformed_json"


class UnexpectedOutputFormat(SchemaError):
    kind = "unexpected_output"


class RemoteTimeout(PhotosetError):
    kind = "timeout"
    retryable = True
    http_status = 504


class PredictionFailed(PhotosetError):
    """The image service reported a terminal ``failed`` or ``canceled`` state."""

    kind = "prediction_failed"
    retryable = True
    http_status = 502


class TransportError(PhotosetError):
    """Network drop or a non-2xx response without a usable body."""

    kind = "transport"
    retryable = True
    http_status = 502


class RunAborted(PhotosetError):
    kind = "aborted"
    retryable = True
    http_status = 409
