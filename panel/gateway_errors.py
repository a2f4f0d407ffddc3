"""
Gateway RPC error taxonomy.

Every failure that leaves the gateway client is a GatewayRpcError whose type
is fixed when it is created:

  auth      - gateway rejected our credentials or role
  remote    - gateway returned a structured error
  timeout   - no result within the deadline
  network   - socket could not be opened or was closed
  protocol  - a frame could not be decoded
  unknown   - anything else

Only timeout, network and protocol are worth retrying.
"""

from typing import Any, Optional

ERROR_TYPES = ("auth", "remote", "timeout", "network", "protocol", "unknown")
RETRYABLE_TYPES = frozenset({"timeout", "network", "protocol"})


class GatewayFrameError(Exception):
    """A frame-level failure inside one session, before classification."""

    def __init__(
        self,
        message: str,
        *,
        remote_error: Optional[dict] = None,
        close_code: Optional[int] = None,
        close_reason: str = "",
    ):
        super().__init__(message)
        self.remote_error = remote_error
        self.close_code = close_code
        self.close_reason = close_reason


class GatewayRpcError(Exception):
    """The only error type surfaced by the gateway client and subscriber."""

    def __init__(
        self,
        message: str,
        *,
        error_type: str = "unknown",
        method: str = "",
        code: str = "",
        attempt: int = 1,
        details: Optional[dict] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message or "gateway rpc error")
        self.message = message or "gateway rpc error"
        self.type = error_type if error_type in ERROR_TYPES else "unknown"
        self.method = method
        self.code = code
        self.attempt = attempt if attempt > 0 else 1
        self.details = details or {}
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    @property
    def retryable(self) -> bool:
        return self.type in RETRYABLE_TYPES

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "type": self.type,
            "method": self.method,
            "code": self.code,
            "attempt": self.attempt,
        }


def categorize_error_type(message: str, remote_error: Optional[dict] = None) -> str:
    text = (message or "").lower()
    remote_code = str((remote_error or {}).get("code") or "").lower()
    if (
        "unauthorized" in text
        or "forbidden" in text
        or "auth" in text
        or "unauthorized" in remote_code
        or "forbidden" in remote_code
    ):
        return "auth"
    if remote_error is not None:
        return "remote"
    if "timeout" in text or "timed out" in text:
        return "timeout"
    if any(word in text for word in ("closed", "connect", "socket", "network", "econn", "connection reset")):
        return "network"
    if any(word in text for word in ("parse", "json", "protocol")):
        return "protocol"
    return "unknown"


def normalize_gateway_error(
    error: BaseException,
    *,
    method: str = "",
    url: str = "",
    attempt: int = 1,
    remote_error: Optional[dict] = None,
    close_code: Optional[int] = None,
    close_reason: str = "",
) -> GatewayRpcError:
    """Wrap any exception into a classified GatewayRpcError."""
    if isinstance(error, GatewayRpcError):
        return error

    message = str(error) or error.__class__.__name__
    if isinstance(error, GatewayFrameError):
        remote_error = remote_error if remote_error is not None else error.remote_error
        close_code = close_code if close_code is not None else error.close_code
        close_reason = close_reason or error.close_reason

    details: dict[str, Any] = {"url": url}
    if close_code is not None:
        details["close_code"] = close_code
        details["close_reason"] = close_reason
    if remote_error is not None:
        details["remote_error"] = remote_error

    return GatewayRpcError(
        message,
        error_type=categorize_error_type(message, remote_error),
        method=method,
        code=str((remote_error or {}).get("code") or "").strip(),
        attempt=attempt,
        details=details,
        cause=error,
    )
