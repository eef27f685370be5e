"""Threat response error-code hierarchy.

Hierarchy
---------
::

    ThreatResponseError
    +-- ConfigurationError        (TR-E1xx)
    +-- StoreError                (TR-E2xx)
    +-- RateLimitError            (TR-E3xx)
    +-- CanaryError               (TR-E4xx)
    +-- CountermeasureError       (TR-E5xx)
    +-- AlertDeliveryError        (TR-E6xx)

Usage
-----
Components that degrade gracefully catch by category::

    try:
        score = await store.incr(key)
    except StoreError:
        # fall back to CLEAN / 0
        ...

Only :class:`ConfigurationError` (raised at startup or when an operator
writes an invalid configuration) and the administrative operations of the
block registry are allowed to surface to callers.
"""
from __future__ import annotations

from typing import Any

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class ThreatResponseError(Exception):
    """Base exception for all threat response errors.

    Attributes
    ----------
    code : str
        Error code, e.g. ``"TR-E201"``.
    http_status : int
        Recommended HTTP status code when the error reaches a client.
    message : str
        Human-readable description.  MUST NOT contain raw network origins.
    details : dict[str, Any]
        Machine-readable context specific to the error instance.
    """

    code: str = "TR-E000"
    http_status: int = 500
    message: str = "Unknown threat response error"

    def __init__(
        self,
        message: str | None = None,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.details: dict[str, Any] = details or {}
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialise the error to a JSON-compatible error envelope."""
        payload: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            payload["detail"] = self.details
        return {"error": payload}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


# ===================================================================
# Configuration (TR-E1xx)
# ===================================================================

class ConfigurationError(ThreatResponseError):
    """TR-E100 -- Invalid configuration or unsafe deployment settings."""

    code = "TR-E100"
    http_status = 400
    message = "Invalid configuration"


# ===================================================================
# Backing store (TR-E2xx)
# ===================================================================

class StoreError(ThreatResponseError):
    """TR-E200 -- Backing key-value store failure."""

    code = "TR-E200"
    http_status = 503
    message = "Backing store error"


class StoreUnavailable(StoreError):
    """TR-E201 -- Backing store unreachable or timed out."""

    code = "TR-E201"
    message = "Backing store unavailable"


# ===================================================================
# Rate limiting (TR-E3xx)
# ===================================================================

class RateLimitError(ThreatResponseError):
    """TR-E3xx -- Rate limiter category."""

    code = "TR-E300"
    http_status = 429
    message = "Rate limit error"


class RateLimitExceeded(RateLimitError):
    """TR-E301 -- Too many requests within the sliding window."""

    code = "TR-E301"
    http_status = 429
    message = "Too many requests"


class RateLimiterUnavailable(RateLimitError):
    """TR-E302 -- The limiter could not consult its store; request denied."""

    code = "TR-E302"
    http_status = 503
    message = "Service temporarily unavailable"


class CircuitOpen(RateLimitError):
    """TR-E303 -- Global request volume tripped the circuit breaker."""

    code = "TR-E303"
    http_status = 429
    message = "Too many requests"


# ===================================================================
# Canary tokens (TR-E4xx)
# ===================================================================

class CanaryError(ThreatResponseError):
    """TR-E4xx -- Canary token category."""

    code = "TR-E400"
    http_status = 400
    message = "Canary token error"


class InvalidCanaryToken(CanaryError):
    """TR-E401 -- Token is malformed or unknown.

    Never surfaced to the caller: callbacks answer identically for valid,
    unknown and malformed tokens.
    """

    code = "TR-E401"
    message = "Invalid canary token"


# ===================================================================
# Countermeasures (TR-E5xx)
# ===================================================================

class CountermeasureError(ThreatResponseError):
    """TR-E500 -- A countermeasure could not be produced."""

    code = "TR-E500"
    message = "Countermeasure failed"


# ===================================================================
# Alerting (TR-E6xx)
# ===================================================================

class AlertDeliveryError(ThreatResponseError):
    """TR-E600 -- An alert transport rejected or failed a delivery."""

    code = "TR-E600"
    http_status = 502
    message = "Alert delivery failed"
