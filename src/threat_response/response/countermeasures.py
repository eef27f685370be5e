"""Countermeasure selection and execution.

Exactly one countermeasure is applied per triggering event.  Candidates
are evaluated in fixed precedence order and the first applicable one wins:

1. ``BLOCK`` -- tier is BLOCK and hard blocking is enabled.
2. ``OVERSIZED_PAYLOAD`` -- rule-gated, tier TARPIT or above.
3. ``SQL_BACKFIRE`` -- rule-gated, request matches injection heuristics.
4. ``CANARY_DOCUMENT`` -- rule-gated, path is in the decoy catalog.
5. ``TARPIT`` -- tier TARPIT or above, or a crawl-policy violation.
6. ``LOG_ONLY`` -- decoy 403 page with noise headers (always applicable).

A branch that raises (or declines, e.g. no catalog match) falls through
to the next candidate, so :meth:`CountermeasureSelector.apply` always
returns a response.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from threat_response.core.config import EngineConfig
from threat_response.core.types import (
    Countermeasure,
    DeceptiveResponse,
    IncidentEvent,
    IncidentType,
    RequestDescriptor,
    ThreatLevel,
)
from threat_response.deception import payloads
from threat_response.deception.randomness import DecoyRandom
from threat_response.detection.injection import detect_injection

if TYPE_CHECKING:
    from threat_response.deception.canary import CanaryTokenProtocol

logger = logging.getLogger(__name__)

MAX_TARPIT_SECONDS = 60.0

FALLBACK_RESPONSE = DeceptiveResponse(
    403, {"Content-Type": "text/plain; charset=utf-8"}, b"Forbidden"
)


@dataclass(frozen=True, slots=True)
class SelectionContext:
    """Everything the selector needs to decide for one event."""

    identity: str
    request: RequestDescriptor
    event: IncidentEvent
    level: ThreatLevel
    config: EngineConfig
    flagged: bool = False


@dataclass(frozen=True, slots=True)
class AppliedCountermeasure:
    countermeasure: Countermeasure
    response: DeceptiveResponse


class CountermeasureSelector:
    """Decides on and builds the response for a triggering event."""

    def __init__(self, canary: CanaryTokenProtocol, *, rng: DecoyRandom | None = None) -> None:
        self._canary = canary
        self._rng = rng or DecoyRandom()

    def candidates(self, ctx: SelectionContext) -> list[Countermeasure]:
        """Applicable countermeasures in precedence order, ending with LOG_ONLY."""
        rules = ctx.config.rules
        chosen: list[Countermeasure] = []
        if rules.hard_block_enabled and ctx.level is ThreatLevel.BLOCK:
            chosen.append(Countermeasure.BLOCK)
        if rules.oversized_payload_enabled and ctx.level >= ThreatLevel.TARPIT:
            chosen.append(Countermeasure.OVERSIZED_PAYLOAD)
        if rules.sql_backfire_enabled and (
            ctx.event.kind == IncidentType.INJECTION_PROBE or detect_injection(ctx.request)
        ):
            chosen.append(Countermeasure.SQL_BACKFIRE)
        if rules.canary_documents_enabled:
            chosen.append(Countermeasure.CANARY_DOCUMENT)
        if rules.tarpit_enabled and (
            ctx.level >= ThreatLevel.TARPIT or ctx.event.kind == IncidentType.ROBOTS_VIOLATION
        ):
            chosen.append(Countermeasure.TARPIT)
        chosen.append(Countermeasure.LOG_ONLY)
        return chosen

    async def apply(self, ctx: SelectionContext) -> AppliedCountermeasure:
        for countermeasure in self.candidates(ctx):
            try:
                response = await self._build(countermeasure, ctx)
            except Exception:
                logger.exception("Countermeasure %s failed; falling through", countermeasure)
                continue
            if response is not None:
                logger.debug("Applied %s to %s", countermeasure, ctx.identity[:12])
                return AppliedCountermeasure(countermeasure, response)
        return AppliedCountermeasure(Countermeasure.LOG_ONLY, FALLBACK_RESPONSE)

    async def _build(
        self, countermeasure: Countermeasure, ctx: SelectionContext
    ) -> DeceptiveResponse | None:
        if countermeasure is Countermeasure.BLOCK:
            return DeceptiveResponse(403)
        if countermeasure is Countermeasure.OVERSIZED_PAYLOAD:
            body = payloads.oversized_payload()
            headers = dict(payloads.OVERSIZED_HEADERS)
            headers["Content-Length"] = str(len(body))
            return DeceptiveResponse(200, headers, body)
        if countermeasure is Countermeasure.SQL_BACKFIRE:
            return DeceptiveResponse.json(
                500, payloads.sql_backfire_body(self._rng), payloads.SQL_BACKFIRE_HEADERS
            )
        if countermeasure is Countermeasure.CANARY_DOCUMENT:
            return await self._canary.serve(ctx.identity, ctx.request)
        response = self.decoy_response(ctx)
        if countermeasure is Countermeasure.TARPIT:
            response.delay_seconds = self.tarpit_delay(ctx.config)
        return response

    def tarpit_delay(self, config: EngineConfig) -> float:
        rules = config.rules
        delay = self._rng.uniform(rules.tarpit_min_ms, rules.tarpit_max_ms) / 1000
        return min(max(delay, 0.0), MAX_TARPIT_SECONDS)

    def decoy_response(self, ctx: SelectionContext) -> DeceptiveResponse:
        """Decoy 403 page (or poisoned API error for flagged identities)."""
        rules = ctx.config.rules
        headers = dict(payloads.DEFENSE_HEADERS)
        if rules.noise_headers_enabled:
            headers.update(payloads.noise_headers(self._rng, rules.noise_header_count))
        poison = rules.log_poisoning_enabled and ctx.flagged
        if poison:
            headers.update(payloads.log_poison_headers(self._rng))
            if ctx.request.path.startswith("/api/"):
                return DeceptiveResponse.json(
                    500, payloads.poisoned_error_body(self._rng), headers
                )
        page = payloads.render_error_page(ctx.request.path, self._rng)
        return DeceptiveResponse.html(403, page, headers)
