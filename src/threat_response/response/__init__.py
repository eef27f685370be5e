"""Response: countermeasure selection and alert dispatch."""
from __future__ import annotations

from threat_response.response.alerting import (
    AlertDispatcher,
    AlertEvent,
    AlertTransport,
    EmailTransport,
    WebhookTransport,
)
from threat_response.response.countermeasures import (
    AppliedCountermeasure,
    CountermeasureSelector,
    SelectionContext,
)

__all__ = [
    "AlertDispatcher",
    "AlertEvent",
    "AlertTransport",
    "AppliedCountermeasure",
    "CountermeasureSelector",
    "EmailTransport",
    "SelectionContext",
    "WebhookTransport",
]
