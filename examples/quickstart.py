#!/usr/bin/env python3
"""Threat response quickstart.

Demonstrates the core workflow of the threat response engine:

1. Create an engine over an in-memory store.
2. Enable the countermeasures worth showing off.
3. Let an ordinary browser request through.
4. Walk a scanner up the threat tiers until it is blocked.
5. Serve a canary document and replay its phone-home callback.
6. Inspect the attacker profile and the security event log.

Run:
    python examples/quickstart.py
"""
from __future__ import annotations

import asyncio
import logging
import re

from threat_response import InMemoryKVStore, IdentityHasher, ThreatResponseEngine
from threat_response.core.types import RequestDescriptor, RobotsViolation
from threat_response.wire import create_http_handler

SCANNER = {
    "User-Agent": "python-requests/2.31",
    "Accept": "*/*",
    "X-Forwarded-For": "198.51.100.23",
}
BROWSER = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) Safari/605.1.15",
    "Accept": "text/html",
    "Accept-Language": "en-GB",
    "Accept-Encoding": "gzip, br",
    "X-Forwarded-For": "192.0.2.10",
}


async def _no_tarpit(seconds: float) -> None:
    print(f"    (tarpit would hold the response for {seconds:.1f}s)")


async def main() -> None:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    # -- Step 1: Create the engine -------------------------------------------
    engine = ThreatResponseEngine(
        InMemoryKVStore(), IdentityHasher("quickstart-salt"), sleep=_no_tarpit
    )
    handler = create_http_handler(engine, base_url="https://shop.example")
    print("[1] Engine created")

    # -- Step 2: Enable optional countermeasures -----------------------------
    await engine.update_config({
        "rules": {"canary_documents_enabled": True, "rate_limit_enabled": False},
    })
    print("[2] Canary documents enabled")

    # -- Step 3: Ordinary traffic --------------------------------------------
    result = await handler("GET", "/products?page=2", BROWSER, b"")
    print(f"[3] Browser request -> {'proceed' if result is None else result[0]}")

    # -- Step 4: Escalate a scanner ------------------------------------------
    for raw_path in ("/admin/", "/api/config?key=db-credentials", "/search?q=1%20UNION%20SELECT%201"):
        result = await handler("GET", raw_path, SCANNER, b"")
        status = "proceed" if result is None else result[0]
        print(f"[4] Scanner {raw_path} -> {status}")
    identity = engine.hasher.hash(SCANNER["X-Forwarded-For"])
    outcome = await engine.ledger.get_score(identity)
    print(f"    score={outcome.score} level={outcome.level}")
    print(f"    blocked={[e.reason for e in await engine.list_blocked()]}")

    # -- Step 5: Canary document round trip ----------------------------------
    path = "/internal/admin-notes.html"
    visitor = RequestDescriptor(path=path, headers={**BROWSER, "X-Forwarded-For": "203.0.113.99"})
    verdict = await engine.handle(visitor, RobotsViolation(path=path))
    print(f"[5] Decoy document served via {verdict.countermeasure}")
    if verdict.response is not None:
        match = re.search(rb"\?t=([a-f0-9]{32})", verdict.response.body)
        if match:
            callback = f"/api/canary-callback?t={match.group(1).decode()}&e=img"
            result = await handler("GET", callback, {"X-Forwarded-For": "203.0.113.150"}, b"")
            print(f"    callback answered with {result[0] if result else None}")
    for entry in await engine.recent_canary_callbacks():
        print(f"    opened {entry['document_path']} (event={entry['event']})")

    # -- Step 6: Inspect ------------------------------------------------------
    report = await engine.get_profile(identity)
    if report is not None:
        print(f"[6] Profile: {report.profile.total_incidents} incidents")
        for pattern in report.patterns:
            print(f"    pattern {pattern.type} ({pattern.severity}): {pattern.description}")
    print(f"    security events logged: {len(await engine.recent_events())}")


if __name__ == "__main__":
    asyncio.run(main())
