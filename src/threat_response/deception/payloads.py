"""Deceptive payload generators.

Pure functions producing decoy bodies and headers.  Nothing here touches
the backing store; randomness comes from a :class:`DecoyRandom` so
payloads are reproducible under a fixed seed.

* :func:`oversized_payload` -- small gzip stream inflating to 10 MiB of zeros.
* :func:`sql_backfire_body` / :data:`SQL_BACKFIRE_HEADERS` -- fake database
  error embedding SQL aimed at a scanner's own result store.
* :func:`poisoned_error_body` / :func:`log_poison_headers` -- fake internal
  topology and terminal control sequences for flagged identities.
* :func:`noise_headers` -- high-entropy filler headers.
* :func:`render_error_page` / :func:`render_trap_sitemap` -- decoy HTML
  and XML that lead crawlers back into trap paths.
"""
from __future__ import annotations

import functools
import html
import zlib
from datetime import UTC, datetime
from typing import Any

from threat_response.deception.randomness import DecoyRandom

OVERSIZED_INFLATED_SIZE = 10 * 1024 * 1024
_CHUNK = 64 * 1024

OVERSIZED_HEADERS: dict[str, str] = {
    "Content-Type": "application/zip",
    "Content-Encoding": "gzip",
    "Content-Disposition": 'attachment; filename="data.zip"',
    "Cache-Control": "no-store",
}

DEFENSE_HEADERS: dict[str, str] = {
    "X-Robots-Tag": "noindex, nofollow",
    "Cache-Control": "no-store, no-cache, must-revalidate",
}


# ---------------------------------------------------------------------------
# Oversized payload
# ---------------------------------------------------------------------------

@functools.cache
def oversized_payload() -> bytes:
    """Gzip (level 9) of 10 MiB of zero bytes, built once per process."""
    compressor = zlib.compressobj(9, zlib.DEFLATED, 16 + zlib.MAX_WBITS)
    chunk = bytes(_CHUNK)
    parts: list[bytes] = []
    remaining = OVERSIZED_INFLATED_SIZE
    while remaining > 0:
        size = min(_CHUNK, remaining)
        parts.append(compressor.compress(chunk[:size]))
        remaining -= size
    parts.append(compressor.flush())
    return b"".join(parts)


# ---------------------------------------------------------------------------
# SQL backfire
# ---------------------------------------------------------------------------

BACKFIRE_PAYLOADS: tuple[str, ...] = (
    "'; DROP TABLE IF EXISTS scan_results; --",
    "'; DROP TABLE IF EXISTS vulnerabilities; --",
    "'; DROP TABLE IF EXISTS sessions CASCADE; --",
    "'; DROP TABLE IF EXISTS targets CASCADE; --",
    "'; INSERT INTO scan_results (url, vuln_type, severity) "
    "VALUES ('decoy.example.com', 'NONE', 'FALSE_POSITIVE'); --",
    "'; UPDATE scan_results SET severity = 'FALSE_POSITIVE' WHERE 1=1; --",
    "'; DROP TABLE IF EXISTS sqlmapoutput; --",
    "'; DROP TABLE IF EXISTS sqlmapsession; --",
    "'; DELETE FROM sqlite_master WHERE type='table'; --",
    "'; SELECT RAISE(ABORT, 'SCAN_TERMINATED_BY_TARGET'); --",
    "'; PRAGMA integrity_check; DELETE FROM main WHERE 1=1; --",
)

SQL_BACKFIRE_HEADERS: dict[str, str] = {
    "X-DB-Status": "'; DROP TABLE scan_results; --",
    "X-SQL-Version": "'; UPDATE targets SET status='unreachable'; --",
    "X-Backend-DB": "PostgreSQL'; DELETE FROM sessions WHERE 1=1; --",
    "X-Debug-Query": "SELECT 1'; DROP TABLE IF EXISTS sqlmapoutput; --",
}


def sql_backfire_body(rng: DecoyRandom) -> dict[str, Any]:
    """Fake database error whose fields carry backfire statements."""
    picked = rng.sample(BACKFIRE_PAYLOADS, len(BACKFIRE_PAYLOADS))
    return {
        "error": "Database error",
        "message": picked[0],
        "details": picked[1:4],
        "query": picked[4],
        "stack": (
            f"Error: {picked[0]}\n"
            f"    at Query.execute ({picked[1]})\n"
            f"    at Connection.query ({picked[2]})"
        ),
        "debug": {
            "last_query": picked[3],
            "db_version": "PostgreSQL 15.2'; DROP TABLE IF EXISTS vulnerabilities; --",
            "tables": ["users", "sessions", "scan_results", "admin_backup"],
        },
    }


# ---------------------------------------------------------------------------
# Log poisoning
# ---------------------------------------------------------------------------

FAKE_INTERNAL_PATHS: tuple[str, ...] = (
    "/internal/api/v2/users/export",
    "/internal/graphql?query={users{id,email,password}}",
    "/api/v3/admin/database/dump",
    "/debug/pprof/heap",
    "/actuator/env",
    "/.well-known/openid-configuration",
    "/api/internal/keys/rotate",
    "/admin/phpmyadmin/sql.php",
    "/wp-json/wp/v2/users",
    "/api/v1/secrets/list",
)

# Inert in browsers, disruptive in terminal log viewers.
TERMINAL_POISON: tuple[str, ...] = (
    "\x1b[2J\x1b[H",
    "\x1b]0;SCAN_DETECTED\x07",
    "\x1b[?25l",
    "\x1b[31m[CRITICAL]\x1b[0m Your scanner has been detected and logged.",
    "\x1b[5mWARNING: Intrusion countermeasures activated\x1b[0m",
)


def _fake_server_header(rng: DecoyRandom) -> tuple[str, str]:
    options = (
        ("X-Powered-By", "Express/4.18.2"),
        ("X-AspNet-Version", "4.0.30319"),
        ("X-Backend", "Apache/2.4.54 (Ubuntu)"),
        ("X-Debug-Token", rng.hex(16)),
        ("X-Request-Id", f"req_{rng.hex(12)}"),
        ("X-Upstream", "backend-01.prod.internal:8443"),
        ("X-Cache-Key", f"cache:{rng.hex(8)}:prod"),
    )
    return rng.choice(options)


def log_poison_headers(rng: DecoyRandom) -> dict[str, str]:
    name, value = _fake_server_header(rng)
    return {
        name: value,
        "X-Debug-Route": rng.choice(FAKE_INTERNAL_PATHS),
        "X-Trace-Auth": f"Bearer {rng.b64(32).rstrip('=')}",
        "X-Log-Trace": rng.choice(TERMINAL_POISON),
    }


def poisoned_error_body(rng: DecoyRandom) -> dict[str, Any]:
    return {
        "error": "Internal Server Error",
        "trace": f"at Handler.process ({rng.choice(FAKE_INTERNAL_PATHS)})",
        "debug": {
            "server": "backend-01.prod.internal",
            "db_host": "rds-prod.internal.aws:5432",
            "redis": "redis-sentinel.internal:26379",
            "api_key": f"sk_prod_{rng.hex(20)}",
            "session_store": f"/tmp/sessions/{rng.hex(8)}",
        },
        "internal_routes": list(FAKE_INTERNAL_PATHS[:rng.randint(3, 5)]),
        "timestamp": datetime.now(UTC).isoformat(),
    }


# ---------------------------------------------------------------------------
# Noise headers
# ---------------------------------------------------------------------------

NOISE_HEADER_PREFIX = "X-Request-Noise-"


def noise_headers(rng: DecoyRandom, count: int = 50) -> dict[str, str]:
    """*count* headers named ``X-Request-Noise-000``... with 32-hex values."""
    return {f"{NOISE_HEADER_PREFIX}{i:03d}": rng.hex(16) for i in range(count)}


# ---------------------------------------------------------------------------
# Decoy pages
# ---------------------------------------------------------------------------

NAV_LINKS: tuple[str, ...] = (
    "/admin/login", "/admin/settings", "/admin/users", "/admin/export",
    "/dashboard/", "/dashboard/analytics", "/dashboard/reports",
    "/backup/latest", "/backup/database", "/backup/files",
    "/config/app", "/config/database", "/config/security",
    "/internal/docs", "/internal/api", "/internal/status",
    "/debug/status", "/debug/logs", "/debug/traces",
    "/staging/preview", "/staging/build",
    "/private/data", "/private/keys",
    "/data/export", "/data/users",
    "/logs/access", "/logs/error",
)

TRAP_SITEMAP_PATHS: tuple[str, ...] = (
    "/admin/backup",
    "/admin/export",
    "/data/export",
    "/config/env",
    "/config/database",
    "/backup/latest",
    "/debug/logs",
    "/internal/api",
    "/private/keys",
    "/logs/access",
)

_ERROR_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="robots" content="noindex, nofollow">
<title>403 Forbidden</title>
<style>
body{{font-family:system-ui,-apple-system,sans-serif;background:#0a0a0a;color:#aaa;display:flex;align-items:center;justify-content:center;min-height:100vh;margin:0}}
.c{{max-width:480px;padding:2rem;border:1px solid #222;text-align:center}}
h1{{color:#b91c1c;font-size:3rem;margin:0 0 .5rem}}
p{{margin:.5rem 0;font-size:.9rem}}
.ref{{font-size:.7rem;color:#444;font-family:monospace}}
a{{color:#666;text-decoration:none;font-size:.75rem}}
nav{{margin-top:1.5rem;display:flex;flex-wrap:wrap;gap:.5rem;justify-content:center}}
</style>
</head>
<body>
<div class="c">
<h1>403</h1>
<p>Access to this resource is restricted.</p>
<p>Authorized personnel must authenticate before proceeding.</p>
<p class="ref">Path: {path} &middot; Ref: {ref}</p>
<nav>
{links}
</nav>
</div>
<!-- {padding} -->
</body>
</html>"""


def render_error_page(path: str, rng: DecoyRandom, *, links: int = 8) -> str:
    """Generic 403 page whose navigation points at further trap paths."""
    anchors = "\n".join(
        f'<a href="{link}">{link[1:]}</a>' for link in rng.sample(NAV_LINKS, links)
    )
    return _ERROR_PAGE.format(
        path=html.escape(path),
        ref=rng.hex(4),
        links=anchors,
        padding=rng.b64(3072),
    )


def render_trap_sitemap(
    base_url: str,
    paths: tuple[str, ...] = TRAP_SITEMAP_PATHS,
    *,
    lastmod: str | None = None,
) -> str:
    """Valid XML sitemap listing trap URLs under *base_url*."""
    stamp = lastmod or datetime.now(UTC).date().isoformat()
    root = base_url.rstrip("/")
    entries = "\n".join(
        f"  <url>\n    <loc>{html.escape(root + p)}</loc>\n"
        f"    <lastmod>{stamp}</lastmod>\n  </url>"
        for p in paths
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">\n'
        f"{entries}\n"
        "</urlset>"
    )
