"""
Gateway error taxonomy.

Every rejection or failure carries a stable machine-readable ``code``, a
human-readable ``message`` and ``hint``, and the HTTP status the router
should answer with.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for rejections and failures surfaced to the caller."""

    code = "gateway_error"
    status_code = 500
    hint = ""

    def __init__(self, message: str, hint: str | None = None):
        super().__init__(message)
        self.message = message
        if hint is not None:
            self.hint = hint


class Busy(GatewayError):
    """Another request is currently admitted."""
    code = "busy"
    status_code = 429
    hint = "A reading is already being prepared. Wait for it to finish."


class BudgetExceeded(GatewayError):
    """The daily spending ceiling has been reached."""
    code = "budget_exceeded"
    status_code = 429
    hint = "The daily budget resets at midnight in the ledger timezone."


class UpstreamError(GatewayError):
    """The generation provider could not produce a reading."""
    code = "upstream_error"
    status_code = 500
    hint = "Check the API key permissions, usage limits and server logs."


class UpstreamThrottled(UpstreamError):
    code = "upstream_throttled"
    hint = "The provider is rate limiting requests. Try again in a minute."


class UpstreamInvalidPayload(UpstreamError):
    code = "upstream_invalid_payload"
    hint = "The provider answered without a usable reading."


class UpstreamTransportError(UpstreamError):
    code = "upstream_error"
