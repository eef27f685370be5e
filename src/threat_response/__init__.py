"""Adaptive threat response engine.

Scores hostile HTTP clients by pseudonymous identity and answers them
with graduated countermeasures: logging, tarpits, decoy content, canary
documents and hard blocks.

Subpackages
-----------
* :mod:`threat_response.identity` -- identity hashing
* :mod:`threat_response.detection` -- rate limiting, scoring, blocking, profiling
* :mod:`threat_response.deception` -- decoy payloads and canary documents
* :mod:`threat_response.response` -- countermeasure selection and alerting
* :mod:`threat_response.wire` -- HTTP adapter
"""
from __future__ import annotations

__version__ = "1.0.0a1"

from threat_response.core.config import DeploymentSettings, EngineConfig
from threat_response.core.errors import (
    ConfigurationError,
    StoreError,
    StoreUnavailable,
    ThreatResponseError,
)
from threat_response.core.interfaces import InMemoryKVStore, KVStore
from threat_response.core.types import (
    Countermeasure,
    DeceptiveResponse,
    IncidentType,
    RequestDescriptor,
    ThreatLevel,
    Verdict,
)
from threat_response.engine import ThreatResponseEngine
from threat_response.identity import IdentityHasher

__all__ = [
    "ConfigurationError",
    "Countermeasure",
    "DeceptiveResponse",
    "DeploymentSettings",
    "EngineConfig",
    "IdentityHasher",
    "InMemoryKVStore",
    "IncidentType",
    "KVStore",
    "RequestDescriptor",
    "StoreError",
    "StoreUnavailable",
    "ThreatLevel",
    "ThreatResponseError",
    "ThreatResponseEngine",
    "Verdict",
    "__version__",
]
