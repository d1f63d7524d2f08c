"""
Configuration management for PulsePoint Relay.

Settings come from environment variables or a ``.env`` file.  Webhook URLs
are treated as secrets and never logged.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

DEFAULT_LOCATION_TERMS: tuple[str, ...] = (
    "VANCOUVER",
    "BURNABY",
    "WESTMINSTER",
    "SURREY",
    "DELTA",
    "BELCARRA",
    "MAPLE RIDGE",
    "RICHMOND",
    "COQUITLAM",
    "LANGLEY",
    "ABBOTSFORD",
    "CHILLIWACK",
    "MISSION",
    "YALE",
    "ADDRESS NOT AVAILABLE",
)


@dataclass(frozen=True)
class Config:
    """Immutable runtime configuration."""

    discord_webhook_url: str
    discord_standby_webhook_url: str = ""

    # Feed
    agency_id: str = "EMS1201"
    feed_base_url: str = "https://web.pulsepoint.org"

    # Reconciliation policy
    location_terms: tuple[str, ...] = field(default=DEFAULT_LOCATION_TERMS)
    staleness_hours: float = 24.0
    retention_days: float = 3.0
    standby_call_type: str = "Standby"
    max_concurrency: int = 4

    # HTTP client settings
    request_timeout: float = 30.0
    max_retries: int = 3
    retry_backoff_factor: float = 1.5
    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout: float = 60.0

    # Scheduling
    poll_interval_seconds: float = 60.0

    # Tracking store
    store_backend: str = "memory"
    dynamodb_table: str = "pulsepoint-relay"
    aws_region: Optional[str] = None

    log_level: str = "INFO"

    @property
    def standby_webhook_url(self) -> str:
        """Standby channel, falling back to the primary one when unset."""
        return self.discord_standby_webhook_url or self.discord_webhook_url

    @property
    def feed_url(self) -> str:
        return f"{self.feed_base_url.rstrip('/')}/DB/giba.php?agency_id={self.agency_id}"

    def incident_url(self, incident_id: str) -> str:
        return f"{self.feed_base_url.rstrip('/')}/?agencies={self.agency_id}&incident={incident_id}"


def _split_terms(raw: str) -> tuple[str, ...]:
    return tuple(term.strip() for term in raw.split(",") if term.strip())


def load_config(env_file: Optional[str] = None, **overrides) -> Config:
    """
    Build a Config instance from environment variables.

    Keyword arguments override the corresponding env var (the CLI uses
    this to inject demo values).

    Raises:
        ValueError: If ``DISCORD_WEBHOOK_URL`` is missing or a numeric
            setting cannot be parsed.
    """
    if env_file:
        load_dotenv(env_file, override=False)
    else:
        load_dotenv(override=False)

    def _get(name: str, env: str, default):
        value = overrides.get(name)
        if value is None or value == "":
            value = os.getenv(env, default)
        return value

    webhook_url = _get("discord_webhook_url", "DISCORD_WEBHOOK_URL", "")
    if not webhook_url:
        raise ValueError(
            "DISCORD_WEBHOOK_URL is not set. "
            "Add it to your .env file or export it as an environment variable."
        )

    terms = overrides.get("location_terms")
    if terms is None:
        raw_terms = os.getenv("LOCATION_TERMS", "")
        terms = _split_terms(raw_terms) if raw_terms else DEFAULT_LOCATION_TERMS

    store_backend = str(_get("store_backend", "STORE_BACKEND", "memory")).lower()
    if store_backend not in ("memory", "dynamodb"):
        raise ValueError(f"STORE_BACKEND must be 'memory' or 'dynamodb', got {store_backend!r}")

    try:
        return Config(
            discord_webhook_url=webhook_url,
            discord_standby_webhook_url=_get(
                "discord_standby_webhook_url", "DISCORD_STANDBY_WEBHOOK_URL", ""
            ),
            agency_id=_get("agency_id", "PULSEPOINT_AGENCY_ID", "EMS1201"),
            feed_base_url=_get("feed_base_url", "PULSEPOINT_BASE_URL", "https://web.pulsepoint.org"),
            location_terms=tuple(terms),
            staleness_hours=float(_get("staleness_hours", "STALENESS_HOURS", 24)),
            retention_days=float(_get("retention_days", "RETENTION_DAYS", 3)),
            standby_call_type=_get("standby_call_type", "STANDBY_CALL_TYPE", "Standby"),
            max_concurrency=int(_get("max_concurrency", "MAX_CONCURRENCY", 4)),
            request_timeout=float(_get("request_timeout", "REQUEST_TIMEOUT", 30)),
            max_retries=int(_get("max_retries", "MAX_RETRIES", 3)),
            retry_backoff_factor=float(
                _get("retry_backoff_factor", "RETRY_BACKOFF_FACTOR", 1.5)
            ),
            circuit_breaker_threshold=int(
                _get("circuit_breaker_threshold", "CIRCUIT_BREAKER_THRESHOLD", 5)
            ),
            circuit_breaker_timeout=float(
                _get("circuit_breaker_timeout", "CIRCUIT_BREAKER_TIMEOUT", 60)
            ),
            poll_interval_seconds=float(
                _get("poll_interval_seconds", "POLL_INTERVAL_SECONDS", 60)
            ),
            store_backend=store_backend,
            dynamodb_table=_get("dynamodb_table", "DYNAMODB_TABLE", "pulsepoint-relay"),
            aws_region=_get("aws_region", "AWS_REGION", None),
            log_level=str(_get("log_level", "LOG_LEVEL", "INFO")).upper(),
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid numeric configuration value: {exc}") from exc
