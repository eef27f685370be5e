"""Incident journal and behavioral profiler.

Every scored event becomes an :class:`Incident` merged into the
identity's :class:`AttackerProfile`.  Profiles keep bounded FIFO buffers
(score history, incidents, forensic entries) and expire 30 days after the
last write.

Pattern and user-agent analysis are pure functions over a profile so they
can be run (and tested) without a store.

Profile merges are read-modify-write without compare-and-swap: two
concurrent incidents for the same identity may lose one buffer entry.
The journal is best effort by contract.
"""
from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from threat_response.core.errors import StoreError
from threat_response.core.interfaces import KVStore
from threat_response.core.types import (
    Countermeasure,
    RequestDescriptor,
    ThreatLevel,
    _utcnow,
)

logger = logging.getLogger(__name__)

PROFILE_PREFIX = "profile:"
PROFILE_INDEX = "profile-index"
EVENTS_KEY = "security-events"

PROFILE_TTL = 2_592_000
MAX_SCORE_HISTORY = 100
MAX_INCIDENTS = 50
MAX_FORENSIC_ENTRIES = 50
MAX_EVENTS = 500
MAX_USER_AGENT = 200
MAX_USER_AGENT_KEY = 100


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class ScoreSnapshot(BaseModel):
    score: int
    level: ThreatLevel
    timestamp: datetime
    reason: str | None = None


class Incident(BaseModel):
    """One scored event against an identity."""

    type: str
    key: str = ""
    method: str = ""
    path: str = ""
    user_agent: str = ""
    threat_score: int = 0
    threat_level: ThreatLevel = ThreatLevel.CLEAN
    countermeasure: Countermeasure | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
    details: dict[str, Any] = Field(default_factory=dict)

    @field_validator("user_agent", mode="before")
    @classmethod
    def _truncate_user_agent(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value[:MAX_USER_AGENT]
        return value

    @classmethod
    def from_event(
        cls,
        event: Any,
        request: RequestDescriptor,
        *,
        score: int,
        level: ThreatLevel,
        countermeasure: Countermeasure | None,
        timestamp: datetime,
    ) -> Incident:
        return cls(
            type=str(event.kind),
            key=event.key,
            method=request.method,
            path=request.path,
            user_agent=request.user_agent,
            threat_score=score,
            threat_level=level,
            countermeasure=countermeasure,
            timestamp=timestamp,
            details=event.details(),
        )


class AttackerProfile(BaseModel):
    """Accumulated history for one identity."""

    identity: str
    first_seen: datetime
    last_seen: datetime
    total_incidents: int = 0
    incident_types: dict[str, int] = Field(default_factory=dict)
    user_agents: dict[str, int] = Field(default_factory=dict)
    score_history: list[ScoreSnapshot] = Field(default_factory=list)
    incidents: list[Incident] = Field(default_factory=list)
    forensic_data: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def new(cls, identity: str, now: datetime) -> AttackerProfile:
        return cls(identity=identity, first_seen=now, last_seen=now)

    def merge(self, incident: Incident) -> None:
        """Fold *incident* into the profile, enforcing buffer caps."""
        self.first_seen = min(self.first_seen, incident.timestamp)
        self.last_seen = max(self.last_seen, incident.timestamp)
        self.total_incidents += 1
        self.incident_types[incident.type] = self.incident_types.get(incident.type, 0) + 1
        if incident.user_agent:
            ua_key = incident.user_agent[:MAX_USER_AGENT_KEY]
            self.user_agents[ua_key] = self.user_agents.get(ua_key, 0) + 1
        self.score_history.append(ScoreSnapshot(
            score=incident.threat_score,
            level=incident.threat_level,
            timestamp=incident.timestamp,
            reason=incident.type,
        ))
        self.score_history = self.score_history[-MAX_SCORE_HISTORY:]
        self.incidents.append(incident)
        self.incidents = self.incidents[-MAX_INCIDENTS:]

    def add_forensic(self, entry: Mapping[str, Any], now: datetime) -> None:
        self.last_seen = max(self.last_seen, now)
        self.forensic_data.append(dict(entry))
        self.forensic_data = self.forensic_data[-MAX_FORENSIC_ENTRIES:]


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class BehavioralPattern:
    type: str
    severity: str
    description: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class UserAgentStat:
    user_agent: str
    count: int
    category: str


@dataclass(frozen=True, slots=True)
class UserAgentAnalysis:
    """Distribution of user agents seen for one identity.

    ``diversity`` is unique / total observations (0.0 with no data),
    rounded to three decimals.
    """

    total: int
    unique: int
    diversity: float
    top: UserAgentStat | None
    stats: list[UserAgentStat]


# First matching category wins, in this order.
USER_AGENT_CATEGORIES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("bot", ("bot", "crawler", "spider")),
    ("script", ("curl", "wget", "python")),
    ("api_client", ("postman", "insomnia")),
    ("browser", ("chrome", "firefox", "safari")),
    ("attack_tool", ("nikto", "sqlmap", "wfuzz")),
)

RAPID_ESCALATION_WINDOW = timedelta(hours=1)
RAPID_ESCALATION_DELTA = 5
DIVERSE_ATTACK_TYPES = 3
UA_ROTATION_COUNT = 3
PERSISTENT_INCIDENTS = 10
AUTOMATED_SCAN_SAMPLE = 5
AUTOMATED_SCAN_MEAN_GAP_MS = 5000


def classify_user_agent(user_agent: str) -> str:
    lowered = user_agent.lower()
    for category, needles in USER_AGENT_CATEGORIES:
        if any(n in lowered for n in needles):
            return category
    return "unknown"


def analyze_user_agents(profile: AttackerProfile) -> UserAgentAnalysis:
    counts = Counter(profile.user_agents)
    total = sum(counts.values())
    stats = [
        UserAgentStat(ua, n, classify_user_agent(ua)) for ua, n in counts.most_common()
    ]
    diversity = round(len(stats) / total, 3) if total else 0.0
    return UserAgentAnalysis(
        total=total,
        unique=len(stats),
        diversity=diversity,
        top=stats[0] if stats else None,
        stats=stats,
    )


def analyze_behavioral_patterns(profile: AttackerProfile) -> list[BehavioralPattern]:
    """Detect the named behavioral patterns present in *profile*."""
    patterns: list[BehavioralPattern] = []

    history = profile.score_history
    if len(history) >= 2:
        first, last = history[0], history[-1]
        span = last.timestamp - first.timestamp
        delta = last.score - first.score
        if span < RAPID_ESCALATION_WINDOW and delta >= RAPID_ESCALATION_DELTA:
            patterns.append(BehavioralPattern(
                "rapid_escalation",
                "high",
                f"Score rose by {delta} within {int(span.total_seconds())}s",
                {"delta": delta, "span_seconds": span.total_seconds()},
            ))

    if len(profile.incident_types) >= DIVERSE_ATTACK_TYPES:
        patterns.append(BehavioralPattern(
            "diverse_attacks",
            "high",
            f"{len(profile.incident_types)} distinct incident types",
            {"types": sorted(profile.incident_types)},
        ))

    if len(profile.user_agents) >= UA_ROTATION_COUNT:
        patterns.append(BehavioralPattern(
            "ua_rotation",
            "medium",
            f"{len(profile.user_agents)} distinct user agents",
            {"count": len(profile.user_agents)},
        ))

    if profile.total_incidents >= PERSISTENT_INCIDENTS:
        patterns.append(BehavioralPattern(
            "persistent",
            "high",
            f"{profile.total_incidents} incidents recorded",
            {"total_incidents": profile.total_incidents},
        ))

    recent = profile.incidents[-AUTOMATED_SCAN_SAMPLE:]
    if len(recent) >= AUTOMATED_SCAN_SAMPLE:
        gaps = [
            (b.timestamp - a.timestamp).total_seconds() * 1000
            for a, b in zip(recent, recent[1:])
        ]
        mean_gap = sum(gaps) / len(gaps)
        if mean_gap < AUTOMATED_SCAN_MEAN_GAP_MS:
            patterns.append(BehavioralPattern(
                "automated_scan",
                "high",
                f"Mean gap of {mean_gap:.0f}ms across the last {len(recent)} incidents",
                {"mean_gap_ms": mean_gap},
            ))

    return patterns


@dataclass(frozen=True, slots=True)
class ProfileReport:
    profile: AttackerProfile
    patterns: list[BehavioralPattern]
    user_agents: UserAgentAnalysis


@dataclass(frozen=True, slots=True)
class ProfilePage:
    profiles: list[AttackerProfile]
    total: int
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Journal
# ---------------------------------------------------------------------------

class IncidentJournal:
    """Persists attacker profiles and the global security event log.

    Write operations on the request path (:meth:`record_incident`,
    :meth:`add_forensic_entry`, :meth:`append_event`) never raise; a
    backing-store failure is logged and the write is skipped.
    """

    def __init__(self, store: KVStore, *, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), UTC)

    async def _load(self, identity: str) -> AttackerProfile | None:
        raw = await self._store.get(f"{PROFILE_PREFIX}{identity}")
        if raw is None:
            return None
        try:
            return AttackerProfile.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding malformed profile for %s", identity[:12])
            return None

    async def _save(self, profile: AttackerProfile) -> None:
        await (
            self._store.batch()
            .set(
                f"{PROFILE_PREFIX}{profile.identity}",
                profile.model_dump(mode="json"),
                PROFILE_TTL,
            )
            .sadd(PROFILE_INDEX, profile.identity)
            .execute()
        )

    async def record_incident(
        self, identity: str, incident: Incident
    ) -> AttackerProfile | None:
        """Merge *incident* into the profile; ``None`` if the store failed."""
        try:
            profile = await self._load(identity) or AttackerProfile.new(
                identity, incident.timestamp
            )
            profile.merge(incident)
            await self._save(profile)
        except StoreError:
            logger.error("Incident journal unavailable; dropped %s incident", incident.type)
            return None
        return profile

    async def add_forensic_entry(self, identity: str, entry: Mapping[str, Any]) -> None:
        """Attach *entry* to the profile, creating a minimal one if needed."""
        now = self._now()
        try:
            profile = await self._load(identity) or AttackerProfile.new(identity, now)
            profile.add_forensic(entry, now)
            await self._save(profile)
        except StoreError:
            logger.error("Incident journal unavailable; dropped forensic entry")

    async def get_profile(self, identity: str) -> AttackerProfile | None:
        return await self._load(identity)

    async def get_report(self, identity: str) -> ProfileReport | None:
        profile = await self._load(identity)
        if profile is None:
            return None
        return ProfileReport(
            profile=profile,
            patterns=analyze_behavioral_patterns(profile),
            user_agents=analyze_user_agents(profile),
        )

    async def list_profiles(self, limit: int = 50, offset: int = 0) -> ProfilePage:
        """Page through profiles, most recently active first."""
        limit = max(1, min(limit, 500))
        offset = max(0, offset)
        members = sorted(await self._store.smembers(PROFILE_INDEX))
        profiles: list[AttackerProfile] = []
        stale: list[str] = []
        if members:
            batch = self._store.batch()
            for identity in members:
                batch.get(f"{PROFILE_PREFIX}{identity}")
            for identity, raw in zip(members, await batch.execute()):
                if raw is None:
                    stale.append(identity)
                    continue
                try:
                    profiles.append(AttackerProfile.model_validate(raw))
                except ValidationError:
                    stale.append(identity)
        if stale:
            await self._store.srem(PROFILE_INDEX, *stale)
        profiles.sort(key=lambda p: p.last_seen, reverse=True)
        return ProfilePage(
            profiles=profiles[offset:offset + limit],
            total=len(profiles),
            limit=limit,
            offset=offset,
        )

    async def delete_profile(self, identity: str) -> bool:
        existed = await self._store.get(f"{PROFILE_PREFIX}{identity}") is not None
        await (
            self._store.batch()
            .delete(f"{PROFILE_PREFIX}{identity}")
            .srem(PROFILE_INDEX, identity)
            .execute()
        )
        return existed

    # -- global event log -----------------------------------------------

    async def append_event(self, entry: Mapping[str, Any]) -> None:
        try:
            await (
                self._store.batch()
                .lpush(EVENTS_KEY, dict(entry))
                .ltrim(EVENTS_KEY, 0, MAX_EVENTS - 1)
                .execute()
            )
        except StoreError:
            logger.error("Security event log unavailable; dropped event")

    async def recent_events(self, limit: int = 100) -> list[dict[str, Any]]:
        return await self._store.lrange(EVENTS_KEY, 0, max(1, limit) - 1)

    async def clear_events(self) -> None:
        await self._store.delete(EVENTS_KEY)
