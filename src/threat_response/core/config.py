"""Threat response configuration.

Two layers of configuration live here:

* :class:`EngineConfig` -- the runtime configuration (tier thresholds,
  reason weights, countermeasure toggles).  It is stored in the backing
  store so operators can change it without a redeploy, and it is re-read
  on every invocation.
* :class:`DeploymentSettings` -- process-level settings read once from the
  environment at startup (identity salt, store URL, alert transports).

Invalid runtime configuration is rejected when it is *written*; a record
that is absent or unreadable at read time degrades to the defaults.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from threat_response.core.errors import ConfigurationError, StoreError
from threat_response.core.interfaces import KVStore
from threat_response.core.types import IncidentType

logger = logging.getLogger(__name__)

CONFIG_KEY = "settings"
"""Store key holding the serialised :class:`EngineConfig`."""

PLACEHOLDER_SALT = "change-me-threat-response-salt"
"""Salt used outside production when none is configured."""

DEFAULT_REASON_POINTS: dict[str, int] = {
    IncidentType.ROBOTS_VIOLATION: 3,
    IncidentType.HONEYTOKEN_ACCESS: 5,
    IncidentType.SUSPICIOUS_UA: 4,
    IncidentType.MISSING_BROWSER_HEADERS: 2,
    IncidentType.GENERIC_ACCEPT: 1,
    IncidentType.RATE_LIMIT_EXCEEDED: 2,
    IncidentType.INJECTION_PROBE: 4,
    IncidentType.CANARY_DOCUMENT_OPENED: 5,
}


# ---------------------------------------------------------------------------
# Runtime configuration
# ---------------------------------------------------------------------------

class ThreatTierThresholds(BaseModel):
    """Score thresholds at which an identity enters each tier."""

    model_config = ConfigDict(extra="ignore")

    warn: int = Field(default=3, ge=1, description="Lowest score classified WARN.")
    tarpit: int = Field(default=7, ge=1, description="Lowest score classified TARPIT.")
    block: int = Field(default=12, ge=1, description="Lowest score classified BLOCK.")

    @model_validator(mode="after")
    def _strictly_increasing(self) -> ThreatTierThresholds:
        if not (0 < self.warn < self.tarpit < self.block):
            raise ValueError(
                "thresholds must satisfy 0 < warn < tarpit < block "
                f"(got warn={self.warn}, tarpit={self.tarpit}, block={self.block})"
            )
        return self


class IncidentReasonWeights(BaseModel):
    """Points added to an identity's score per reason code."""

    model_config = ConfigDict(extra="ignore")

    points: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_REASON_POINTS))
    default_points: int = Field(
        default=1,
        ge=0,
        description="Points for a reason code with no configured weight.",
    )

    @model_validator(mode="after")
    def _non_negative(self) -> IncidentReasonWeights:
        negative = sorted(k for k, v in self.points.items() if v < 0)
        if negative:
            raise ValueError(f"reason weights must be >= 0: {', '.join(negative)}")
        return self

    def points_for(self, reason: str) -> int:
        return self.points.get(str(reason), self.default_points)


class CountermeasureRules(BaseModel):
    """Per-rule toggles and bounds for the countermeasure selector."""

    model_config = ConfigDict(extra="ignore")

    threat_scoring_enabled: bool = True
    rate_limit_enabled: bool = True
    hard_block_enabled: bool = True
    oversized_payload_enabled: bool = False
    sql_backfire_enabled: bool = False
    canary_documents_enabled: bool = False
    log_poisoning_enabled: bool = False
    noise_headers_enabled: bool = True
    tarpit_enabled: bool = True
    alerting_enabled: bool = False
    tarpit_min_ms: int = Field(default=3000, ge=0, le=30_000)
    tarpit_max_ms: int = Field(default=8000, ge=0, le=60_000)
    noise_header_count: int = Field(default=50, ge=0, le=200)
    block_ttl_seconds: int = Field(default=604_800, ge=60, le=2_592_000)

    @model_validator(mode="after")
    def _tarpit_bounds(self) -> CountermeasureRules:
        if self.tarpit_max_ms < self.tarpit_min_ms:
            raise ValueError("tarpit_max_ms must be >= tarpit_min_ms")
        return self


class EngineConfig(BaseModel):
    """Versioned runtime configuration shared by every component.

    Unknown fields are ignored so a record written by a newer release
    still loads.
    """

    model_config = ConfigDict(extra="ignore")

    version: int = 1
    thresholds: ThreatTierThresholds = Field(default_factory=ThreatTierThresholds)
    weights: IncidentReasonWeights = Field(default_factory=IncidentReasonWeights)
    rules: CountermeasureRules = Field(default_factory=CountermeasureRules)


def _deep_merge(base: dict[str, Any], changes: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in changes.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigRepository:
    """Loads and saves :class:`EngineConfig` in the backing store."""

    def __init__(self, store: KVStore, *, key: str = CONFIG_KEY) -> None:
        self._store = store
        self._key = key

    async def load(self) -> EngineConfig:
        """Return the stored configuration, or defaults if unusable."""
        try:
            raw = await self._store.get(self._key)
        except StoreError:
            logger.error("Configuration store unavailable; using defaults")
            return EngineConfig()
        if raw is None:
            return EngineConfig()
        try:
            return EngineConfig.model_validate(raw)
        except ValidationError:
            logger.warning("Stored configuration is invalid; using defaults")
            return EngineConfig()

    async def save(self, changes: Mapping[str, Any]) -> EngineConfig:
        """Merge *changes* over the current configuration and persist it.

        Raises :class:`ConfigurationError` (nothing is written) when the
        merged configuration is invalid.  Store failures propagate.
        """
        current = await self.load()
        merged = _deep_merge(current.model_dump(mode="json"), changes)
        try:
            config = EngineConfig.model_validate(merged)
        except ValidationError as exc:
            raise ConfigurationError(
                "Rejected invalid configuration",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc
        await self._store.set(self._key, config.model_dump(mode="json"))
        logger.info("Configuration updated (version=%d)", config.version)
        return config


# ---------------------------------------------------------------------------
# Deployment settings
# ---------------------------------------------------------------------------

class DeploymentSettings(BaseModel):
    """Process-level settings, normally built with :meth:`from_env`."""

    model_config = ConfigDict(frozen=True)

    identity_salt: str = Field(
        default=PLACEHOLDER_SALT,
        description="Secret mixed into every identity hash.",
    )
    environment: str = Field(default="development")
    redis_url: str | None = None
    store_timeout_seconds: float = Field(default=2.0, gt=0, le=30)
    webhook_url: str | None = None
    email_api_key: str | None = None
    alert_email: str | None = None
    email_from: str = "alerts@localhost"
    site_url: str = "http://localhost"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @model_validator(mode="after")
    def _salt_required_in_production(self) -> DeploymentSettings:
        if self.is_production and self.identity_salt in ("", PLACEHOLDER_SALT):
            raise ValueError("THREAT_RESPONSE_SALT must be set in production")
        return self

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> DeploymentSettings:
        """Build settings from ``THREAT_RESPONSE_*`` environment variables.

        Raises :class:`ConfigurationError` when the settings are unsafe
        (e.g. the placeholder salt in production).
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for field_name, var in _ENV_VARS.items():
            if env.get(var):
                values[field_name] = env[var]
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            raise ConfigurationError(
                "Invalid deployment settings",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc


_ENV_VARS = {
    "identity_salt": "THREAT_RESPONSE_SALT",
    "environment": "THREAT_RESPONSE_ENV",
    "redis_url": "THREAT_RESPONSE_REDIS_URL",
    "store_timeout_seconds": "THREAT_RESPONSE_STORE_TIMEOUT",
    "webhook_url": "THREAT_RESPONSE_WEBHOOK_URL",
    "email_api_key": "THREAT_RESPONSE_EMAIL_API_KEY",
    "alert_email": "THREAT_RESPONSE_ALERT_EMAIL",
    "email_from": "THREAT_RESPONSE_EMAIL_FROM",
    "site_url": "THREAT_RESPONSE_SITE_URL",
}
