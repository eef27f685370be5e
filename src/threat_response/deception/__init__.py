"""Deception: decoy payloads and canary documents."""
from __future__ import annotations

from threat_response.deception import payloads
from threat_response.deception.randomness import DecoyRandom
from threat_response.deception.canary import (
    DECOY_DOCUMENTS,
    CanaryTokenProtocol,
    match_decoy_document,
    render_canary_document,
)

__all__ = [
    "DECOY_DOCUMENTS",
    "CanaryTokenProtocol",
    "DecoyRandom",
    "match_decoy_document",
    "payloads",
    "render_canary_document",
]
