"""Identity derivation: pseudonymous, salted hashes of client origins."""
from __future__ import annotations

from threat_response.identity.hasher import DEFAULT_ORIGIN, IdentityHasher, client_origin

__all__ = [
    "DEFAULT_ORIGIN",
    "IdentityHasher",
    "client_origin",
]
