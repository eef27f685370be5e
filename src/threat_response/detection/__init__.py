"""Detection: rate limiting, threat scoring, blocking and profiling.

* **SlidingWindowRateLimiter** -- per-identity admission control (fail-closed).
* **CircuitBreaker** -- site-wide flood gate (fail-open).
* **ThreatLedger** / **classify** -- cumulative scores and tier mapping.
* **BlockRegistry** -- TTL'd hard blocks and attacker flags.
* **IncidentJournal** -- attacker profiles and the security event log.
* **analyze_behavioral_patterns** / **analyze_user_agents** -- profile analysis.
* **detect_injection** / **derive_events** -- request heuristics.
"""
from __future__ import annotations

from threat_response.detection.blocklist import BlockEntry, BlockRegistry
from threat_response.detection.circuit_breaker import CircuitBreaker
from threat_response.detection.injection import detect_injection, injection_sources
from threat_response.detection.profiler import (
    AttackerProfile,
    BehavioralPattern,
    Incident,
    IncidentJournal,
    ProfilePage,
    ProfileReport,
    UserAgentAnalysis,
    analyze_behavioral_patterns,
    analyze_user_agents,
    classify_user_agent,
)
from threat_response.detection.rate_limit import RateLimitDecision, SlidingWindowRateLimiter
from threat_response.detection.signals import HONEYTOKEN_KEYS, derive_events, is_honeytoken
from threat_response.detection.threat_scoring import ScoreOutcome, ThreatLedger, classify

__all__ = [
    "AttackerProfile",
    "BehavioralPattern",
    "BlockEntry",
    "BlockRegistry",
    "CircuitBreaker",
    "HONEYTOKEN_KEYS",
    "Incident",
    "IncidentJournal",
    "ProfilePage",
    "ProfileReport",
    "RateLimitDecision",
    "ScoreOutcome",
    "SlidingWindowRateLimiter",
    "ThreatLedger",
    "UserAgentAnalysis",
    "analyze_behavioral_patterns",
    "analyze_user_agents",
    "classify",
    "classify_user_agent",
    "derive_events",
    "detect_injection",
    "injection_sources",
    "is_honeytoken",
]
