"""Error types translated into JSON error responses at the HTTP boundary."""
from __future__ import annotations

from typing import Optional

from script_builder.rate_limit import AdmissionResult, RejectionReason


def describe_window(window_ms: int) -> str:
    """Render a window length as whole minutes, or seconds when it does not divide evenly."""

    if window_ms >= 60_000 and window_ms % 60_000 == 0:
        minutes = window_ms // 60_000
        return "1 minute" if minutes == 1 else f"{minutes} minutes"
    seconds = max(1, -(-window_ms // 1000))
    return "1 second" if seconds == 1 else f"{seconds} seconds"


class ScriptBuilderError(RuntimeError):
    """Base error carrying the HTTP status it maps to."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ScriptBuilderError):
    """Raised for missing, malformed or oversized input."""

    status_code = 400


class PaymentRequired(ScriptBuilderError):
    """Raised when a full generation lacks a verified payment."""

    status_code = 403


class ConfigurationError(ScriptBuilderError):
    """Raised when a required secret is not configured."""

    status_code = 500


class UpstreamError(ScriptBuilderError):
    """Raised when the completion or payment API fails."""

    status_code = 500


class AdmissionRejected(ScriptBuilderError):
    """Raised by the HTTP layer for a rejected admission result."""

    status_code = 429

    def __init__(self, result: AdmissionResult, max_requests: int, window_ms: int) -> None:
        if result.reason is RejectionReason.COOLDOWN_ACTIVE:
            message = f"Cooldown active: wait {result.retry_after_seconds}s before the next request."
        else:
            message = (
                f"Rate limit reached: max {max_requests} requests per "
                f"{describe_window(window_ms)} per IP."
            )
        super().__init__(message)
        self.result = result

    @property
    def retry_after_seconds(self) -> Optional[int]:
        return self.result.retry_after_seconds
