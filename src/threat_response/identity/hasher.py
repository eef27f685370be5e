"""Identity hashing.

An *identity* is the SHA-256 hex digest of a deployment secret
concatenated with the client's network origin.  Raw origins never leave
this module: every other component only sees the digest.

The origin is the first hop of the ``X-Forwarded-For`` chain (the edge
proxy appends, so the left-most entry is the client), falling back to the
transport peer address and finally to the loopback address.
"""
from __future__ import annotations

import hashlib

from threat_response.core.config import PLACEHOLDER_SALT, DeploymentSettings
from threat_response.core.errors import ConfigurationError
from threat_response.core.types import RequestDescriptor

DEFAULT_ORIGIN = "127.0.0.1"


def client_origin(request: RequestDescriptor) -> str:
    """Return the client network origin for *request*."""
    forwarded = request.header("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.source_origin or DEFAULT_ORIGIN


class IdentityHasher:
    """Derives stable pseudonymous identities from network origins.

    Parameters
    ----------
    secret:
        Deployment salt.  In production an empty or placeholder secret
        is refused at construction time.
    production:
        Whether the placeholder check applies.
    """

    __slots__ = ("_secret",)

    def __init__(self, secret: str = PLACEHOLDER_SALT, *, production: bool = False) -> None:
        if production and secret in ("", PLACEHOLDER_SALT):
            raise ConfigurationError(
                "Identity salt is unset or uses the placeholder value in production"
            )
        self._secret = secret or PLACEHOLDER_SALT

    @classmethod
    def from_settings(cls, settings: DeploymentSettings) -> IdentityHasher:
        return cls(settings.identity_salt, production=settings.is_production)

    def hash(self, origin: str) -> str:
        """Return the 64-character hex identity for *origin*."""
        return hashlib.sha256(f"{self._secret}{origin}".encode()).hexdigest()

    def identity_for(self, request: RequestDescriptor) -> str:
        return self.hash(client_origin(request))
