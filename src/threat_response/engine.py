"""Threat response engine -- top-level orchestrator.

The :class:`ThreatResponseEngine` composes every component over a single
backing store and runs the per-request pipeline:

1. Derive the identity.
2. Hard-block fast path.
3. Global circuit breaker (fail-open).
4. Collect incident events (explicit trigger or passive signals).  A
   request without events passes through here, unlimited.
5. Per-identity rate limiting of the hostile request (fail-closed).
6. Score each event.
7. Flag the identity.
8. Select and execute one countermeasure.
9. Journal the incidents and append to the security event log.
10. Alert.
11. Hold the tarpit delay, then return.

Steps 6-10 run in independent failure boundaries.  Whatever fails inside,
:meth:`ThreatResponseEngine.handle` returns a :class:`Verdict`.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from threat_response.core.config import (
    ConfigRepository,
    DeploymentSettings,
    EngineConfig,
)
from threat_response.core.interfaces import KVStore
from threat_response.core.types import (
    Countermeasure,
    DeceptiveResponse,
    IncidentEvent,
    IncidentType,
    RateLimitHit,
    RequestDescriptor,
    ThreatLevel,
    Verdict,
)
from threat_response.deception import payloads
from threat_response.deception.canary import CanaryTokenProtocol
from threat_response.deception.randomness import DecoyRandom
from threat_response.detection.blocklist import BlockEntry, BlockRegistry
from threat_response.detection.circuit_breaker import CircuitBreaker
from threat_response.detection.profiler import (
    Incident,
    IncidentJournal,
    ProfilePage,
    ProfileReport,
)
from threat_response.detection.rate_limit import RateLimitDecision, SlidingWindowRateLimiter
from threat_response.detection.signals import derive_events
from threat_response.detection.threat_scoring import ScoreOutcome, ThreatLedger
from threat_response.identity.hasher import IdentityHasher
from threat_response.response.alerting import (
    AlertDispatcher,
    AlertEvent,
    AlertTransport,
    EmailTransport,
    WebhookTransport,
)
from threat_response.response.countermeasures import (
    FALLBACK_RESPONSE,
    CountermeasureSelector,
    SelectionContext,
)

logger = logging.getLogger(__name__)

# Event kinds that raise an alert regardless of tier.
ALERT_SEVERITY: dict[str, str] = {
    IncidentType.HONEYTOKEN_ACCESS: "high",
    IncidentType.INJECTION_PROBE: "high",
    IncidentType.CANARY_DOCUMENT_OPENED: "critical",
}

# Event kinds that flag the identity for log poisoning.
FLAGGING_EVENTS = frozenset({
    IncidentType.ROBOTS_VIOLATION,
    IncidentType.HONEYTOKEN_ACCESS,
    IncidentType.INJECTION_PROBE,
})


class ThreatResponseEngine:
    """Scores hostile requests and answers them with countermeasures.

    Parameters
    ----------
    store:
        Backing store shared by every component.
    hasher:
        Identity hasher configured with the deployment salt.
    transports:
        Alert transports (may be empty).
    rng:
        Decoy randomness; pin a seed in tests.
    sleep:
        Awaitable used for the tarpit hold.
    clock:
        Seconds since the epoch; shared with components that timestamp.
    rate_limiter:
        Override the default 5-per-10s limiter.
    circuit_breaker:
        Override the default 500-per-10s global breaker.
    """

    def __init__(
        self,
        store: KVStore,
        hasher: IdentityHasher,
        *,
        transports: Sequence[AlertTransport] = (),
        rng: DecoyRandom | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self._rng = rng or DecoyRandom()
        self._sleep = sleep
        self._clock = clock

        self.config = ConfigRepository(store)
        self.blocklist = BlockRegistry(store, clock=clock)
        self.ledger = ThreatLedger(store, self.blocklist, self.config)
        self.journal = IncidentJournal(store, clock=clock)
        self.alerts = AlertDispatcher(store, transports)
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(store, clock=clock)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(store, clock=clock)
        self.canary = CanaryTokenProtocol(
            store, hasher, self.ledger, self.journal, self.alerts, self.config,
            rng=self._rng, clock=clock,
        )
        self.selector = CountermeasureSelector(self.canary, rng=self._rng)

    @classmethod
    def from_settings(
        cls, settings: DeploymentSettings, store: KVStore | None = None, **kwargs: Any
    ) -> ThreatResponseEngine:
        """Wire an engine from deployment settings.

        Uses a Redis store when ``settings.redis_url`` is set (and no
        *store* is given) and registers the transports whose credentials
        are present.
        """
        if store is None:
            if not settings.redis_url:
                raise ValueError("redis_url is required when no store is given")
            from threat_response.core.redis_store import RedisKVStore

            store = RedisKVStore.from_url(
                settings.redis_url, timeout=settings.store_timeout_seconds
            )
        transports: list[AlertTransport] = []
        if settings.webhook_url:
            transports.append(WebhookTransport(settings.webhook_url, site=settings.site_url))
        if settings.email_api_key and settings.alert_email:
            transports.append(EmailTransport(
                settings.email_api_key,
                settings.alert_email,
                sender=settings.email_from,
                site=settings.site_url,
            ))
        return cls(store, IdentityHasher.from_settings(settings), transports=transports, **kwargs)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), UTC)

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    async def admit(self, request: RequestDescriptor) -> RateLimitDecision:
        """Per-identity admission for an endpoint that opts into limiting.

        :meth:`handle` limits only requests that carry incident events;
        ordinary endpoints that need a quota call this themselves.
        """
        return await self.rate_limiter.check(self.hasher.identity_for(request))

    async def handle(
        self, request: RequestDescriptor, event: IncidentEvent | None = None
    ) -> Verdict:
        """Evaluate *request* and return a verdict.  Never raises."""
        identity: str | None = None
        try:
            identity = self.hasher.identity_for(request)
            return await self._handle(identity, request, event)
        except Exception:
            logger.exception("Threat response pipeline failed; serving fallback")
            return Verdict(
                proceed=False,
                response=self._fallback(request),
                countermeasure=Countermeasure.LOG_ONLY,
                identity=identity,
            )

    async def _handle(
        self, identity: str, request: RequestDescriptor, event: IncidentEvent | None
    ) -> Verdict:
        if await self.blocklist.is_blocked(identity):
            logger.debug("Blocked identity %s rejected", identity[:12])
            return Verdict(
                proceed=False,
                response=DeceptiveResponse(403),
                countermeasure=Countermeasure.BLOCK,
                identity=identity,
                level=ThreatLevel.BLOCK,
            )

        overload = await self.circuit_breaker.check()
        if overload is not None:
            return Verdict(proceed=False, response=overload, identity=identity)

        events: list[IncidentEvent] = [event] if event is not None else derive_events(request)
        if not events:
            return Verdict.passthrough(identity)

        config = await self.config.load()

        if config.rules.rate_limit_enabled:
            decision = await self.rate_limiter.check(identity)
            denial = decision.to_response()
            if denial is not None:
                if not decision.unavailable:
                    await self._step(
                        "score", self._score(identity, RateLimitHit(path=request.path), config)
                    )
                return Verdict(proceed=False, response=denial, identity=identity)

        outcomes: list[ScoreOutcome] = []
        for ev in events:
            outcome = await self._step("score", self._score(identity, ev, config))
            outcomes.append(outcome or ScoreOutcome.neutral(ev.kind))
        final = outcomes[-1]
        for outcome in outcomes:
            if outcome.level > final.level:
                final = outcome

        primary = events[0]
        if primary.kind in FLAGGING_EVENTS:
            await self._step("flag", self.blocklist.flag(identity))
        flagged = await self.blocklist.is_flagged(identity)

        applied = await self.selector.apply(SelectionContext(
            identity=identity,
            request=request,
            event=primary,
            level=final.level,
            config=config,
            flagged=flagged,
        ))

        now = self._now()
        for ev, outcome in zip(events, outcomes):
            incident = Incident.from_event(
                ev,
                request,
                score=outcome.score,
                level=outcome.level,
                countermeasure=applied.countermeasure,
                timestamp=now,
            )
            await self._step("journal", self.journal.record_incident(identity, incident))
        await self._step("event-log", self.journal.append_event({
            "type": str(primary.kind),
            "key": primary.key,
            "identity": identity,
            "method": request.method,
            "user_agent": request.user_agent[:200],
            "threat_score": final.score,
            "threat_level": str(final.level),
            "countermeasure": str(applied.countermeasure),
            "timestamp": now.isoformat(),
        }))
        logger.warning(
            "Security event %s from %s: score=%d level=%s countermeasure=%s",
            primary.kind, identity[:12], final.score, final.level, applied.countermeasure,
        )

        if config.rules.alerting_enabled:
            alert = self._alert_for(identity, request, primary, final)
            if alert is not None:
                await self._step("alert", self.alerts.send(alert))

        if applied.response.delay_seconds > 0:
            await self._sleep(applied.response.delay_seconds)

        return Verdict(
            proceed=False,
            response=applied.response,
            countermeasure=applied.countermeasure,
            identity=identity,
            score=final.score,
            level=final.level,
        )

    async def _score(
        self, identity: str, event: IncidentEvent, config: EngineConfig
    ) -> ScoreOutcome:
        if config.rules.threat_scoring_enabled:
            return await self.ledger.increment(identity, event.kind, config=config)
        return await self.ledger.get_score(identity, config=config)

    async def _step(self, name: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except Exception:
            logger.exception("Pipeline step %r failed", name)
            return None

    def _alert_for(
        self,
        identity: str,
        request: RequestDescriptor,
        event: IncidentEvent,
        outcome: ScoreOutcome,
    ) -> AlertEvent | None:
        severity = ALERT_SEVERITY.get(event.kind)
        if outcome.level is ThreatLevel.BLOCK:
            severity = "critical"
        if severity is None:
            return None
        return AlertEvent(
            identity=identity,
            category=str(event.kind),
            title=str(event.kind).replace("_", " ").upper(),
            severity=severity,
            method=request.method,
            user_agent=request.user_agent[:200],
            threat_score=outcome.score,
            threat_level=str(outcome.level),
            timestamp=self._now(),
            context={"key": event.key},
        )

    def _fallback(self, request: RequestDescriptor) -> DeceptiveResponse:
        try:
            return DeceptiveResponse.html(
                403,
                payloads.render_error_page(request.path, self._rng),
                dict(payloads.DEFENSE_HEADERS),
            )
        except Exception:
            return FALLBACK_RESPONSE

    # ------------------------------------------------------------------
    # Canary callbacks and decoy content
    # ------------------------------------------------------------------

    async def canary_callback(self, request: RequestDescriptor) -> DeceptiveResponse:
        """Process a canary phone-home and return the uniform response."""
        result = await self.canary.callback(request)
        return result.response

    def trap_sitemap(self, base_url: str) -> DeceptiveResponse:
        return DeceptiveResponse(
            200,
            {
                "Content-Type": "application/xml; charset=utf-8",
                "Cache-Control": "public, max-age=3600",
            },
            payloads.render_trap_sitemap(base_url).encode(),
        )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def get_config(self) -> EngineConfig:
        return await self.config.load()

    async def update_config(self, changes: Mapping[str, Any]) -> EngineConfig:
        return await self.config.save(changes)

    async def block(
        self, identity: str, reason: str = "manual", ttl_seconds: int | None = None
    ) -> BlockEntry:
        if ttl_seconds is None:
            ttl_seconds = (await self.config.load()).rules.block_ttl_seconds
        return await self.blocklist.block(identity, reason, ttl_seconds)

    async def unblock(self, identity: str) -> bool:
        return await self.blocklist.unblock(identity)

    async def under_attack(self) -> bool:
        return await self.circuit_breaker.is_open()

    async def reset_circuit_breaker(self) -> None:
        await self.circuit_breaker.reset()

    async def list_blocked(self) -> list[BlockEntry]:
        return await self.blocklist.list_blocked()

    async def get_profile(self, identity: str) -> ProfileReport | None:
        return await self.journal.get_report(identity)

    async def list_profiles(self, limit: int = 50, offset: int = 0) -> ProfilePage:
        return await self.journal.list_profiles(limit, offset)

    async def delete_profile(self, identity: str) -> bool:
        return await self.journal.delete_profile(identity)

    async def recent_events(self, limit: int = 100) -> list[dict[str, Any]]:
        return await self.journal.recent_events(limit)

    async def clear_events(self) -> None:
        await self.journal.clear_events()

    async def recent_canary_callbacks(self, limit: int = 100) -> list[dict[str, Any]]:
        return await self.canary.recent_callbacks(limit)
