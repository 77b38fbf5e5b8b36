# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""BrokerConfig — immutable service configuration resolved once at startup.

Every setting is read from a ``BROKER_*`` environment variable; CLI flags
parsed in ``server._parse_server_args`` override the environment.
Malformed values fall back to their default with a warning so a typo in a
deployment manifest never takes the broker down. An unknown auth mode is
the one exception: running with an unintended auth mode is worse than not
running at all.

Leaf module — stdlib only.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum

logger = logging.getLogger(__name__)

DEFAULT_REDACTION_FIELDS = (
    "password",
    "ssn",
    "credit_card",
    "api_key",
    "secret",
    "token",
    "authorization",
)

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


class AuthMode(StrEnum):
    """How callers prove their identity."""

    API_KEY = "apikey"
    SIGNED_TOKEN = "signed-token"
    BOTH = "both"


class AuditLevel(StrEnum):
    """How much of each request the auditor captures."""

    NONE = "none"
    BASIC = "basic"
    DETAILED = "detailed"
    FULL = "full"


@dataclass(frozen=True, slots=True)
class BrokerConfig:
    """Immutable broker configuration."""

    # HTTP surface
    host: str = "127.0.0.1"
    port: int = 3000
    require_tls: bool = False
    trust_forwarded_proto: bool = False

    # Browser pool
    max_browsers: int = 5
    acquire_timeout: float = 30.0
    headless: bool = True

    # Authentication
    auth_mode: AuthMode = AuthMode.API_KEY
    api_key: str = ""
    tenant_id: str = ""
    audience: str = ""
    token_key: str = ""
    token_algorithms: tuple[str, ...] = ("RS256",)

    # RBAC
    rbac_enabled: bool = False
    api_key_roles: Mapping[str, str] = field(default_factory=dict)

    # Destination guard
    allowed_domains: tuple[str, ...] = ()
    blocked_domains: tuple[str, ...] = ()
    egress_control: bool = True
    dns_check: bool = True

    # Audit
    audit_level: AuditLevel = AuditLevel.BASIC
    audit_endpoint: str = ""
    audit_flush_interval: float = 10.0
    audit_batch_size: int = 100

    # Redaction
    redaction_enabled: bool = True
    redaction_fields: tuple[str, ...] = DEFAULT_REDACTION_FIELDS
    redaction_patterns: tuple[str, ...] = ()

    # Sessions
    session_recording: bool = False
    session_sweep_interval: float = 60.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> BrokerConfig:
        """Build a config from ``BROKER_*`` variables (``os.environ`` by default).

        Raises:
            ValueError: if ``BROKER_AUTH_MODE`` names an unknown mode.
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        raw_mode = env.get("BROKER_AUTH_MODE", "").strip().lower()
        try:
            auth_mode = AuthMode(raw_mode) if raw_mode else defaults.auth_mode
        except ValueError:
            raise ValueError(
                f"BROKER_AUTH_MODE must be one of {[m.value for m in AuthMode]}, got '{raw_mode}'"
            ) from None

        raw_level = env.get("BROKER_AUDIT_LEVEL", "").strip().lower()
        try:
            audit_level = AuditLevel(raw_level) if raw_level else defaults.audit_level
        except ValueError:
            logger.warning("Unknown BROKER_AUDIT_LEVEL '%s', using '%s'", raw_level, defaults.audit_level)
            audit_level = defaults.audit_level

        redaction_fields = _csv(env.get("BROKER_REDACTION_FIELDS"), lower=True)

        return cls(
            host=env.get("BROKER_HOST", "").strip() or defaults.host,
            port=_int(env, "BROKER_PORT", defaults.port),
            require_tls=_bool(env, "BROKER_REQUIRE_TLS", defaults.require_tls),
            trust_forwarded_proto=_bool(env, "BROKER_TRUST_FORWARDED_PROTO", defaults.trust_forwarded_proto),
            max_browsers=max(1, _int(env, "BROKER_MAX_BROWSERS", defaults.max_browsers)),
            acquire_timeout=_float(env, "BROKER_ACQUIRE_TIMEOUT", defaults.acquire_timeout),
            headless=_bool(env, "BROKER_HEADLESS", defaults.headless),
            auth_mode=auth_mode,
            api_key=env.get("BROKER_API_KEY", ""),
            tenant_id=env.get("BROKER_TENANT_ID", "").strip(),
            audience=env.get("BROKER_AUDIENCE", "").strip(),
            token_key=env.get("BROKER_TOKEN_KEY", "").replace("\\n", "\n"),
            token_algorithms=_csv(env.get("BROKER_TOKEN_ALGORITHMS")) or defaults.token_algorithms,
            rbac_enabled=_bool(env, "BROKER_RBAC_ENABLED", defaults.rbac_enabled),
            api_key_roles=_role_map(env.get("BROKER_API_KEYS", "")),
            allowed_domains=_csv(env.get("BROKER_ALLOWED_DOMAINS"), lower=True),
            blocked_domains=_csv(env.get("BROKER_BLOCKED_DOMAINS"), lower=True),
            egress_control=_bool(env, "BROKER_NETWORK_EGRESS_CONTROL", defaults.egress_control),
            dns_check=_bool(env, "BROKER_DNS_CHECK", defaults.dns_check),
            audit_level=audit_level,
            audit_endpoint=env.get("BROKER_AUDIT_ENDPOINT", "").strip(),
            audit_flush_interval=_float(env, "BROKER_AUDIT_FLUSH_INTERVAL", defaults.audit_flush_interval),
            audit_batch_size=max(1, _int(env, "BROKER_AUDIT_BATCH_SIZE", defaults.audit_batch_size)),
            redaction_enabled=_bool(env, "BROKER_REDACTION_ENABLED", defaults.redaction_enabled),
            redaction_fields=redaction_fields if "BROKER_REDACTION_FIELDS" in env else defaults.redaction_fields,
            redaction_patterns=_csv(env.get("BROKER_REDACTION_PATTERNS")),
            session_recording=_bool(env, "BROKER_SESSION_RECORDING", defaults.session_recording),
            session_sweep_interval=_float(env, "BROKER_SESSION_SWEEP_INTERVAL", defaults.session_sweep_interval),
            log_level=env.get("BROKER_LOG_LEVEL", "").strip().upper() or defaults.log_level,
            log_json=_bool(env, "BROKER_LOG_JSON", defaults.log_json),
        )

    def replace(self, **changes) -> BrokerConfig:
        """Return a copy with *changes* applied (CLI overrides)."""
        return dataclasses.replace(self, **changes)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _csv(raw: str | None, *, lower: bool = False) -> tuple[str, ...]:
    if not raw:
        return ()
    items = (item.strip() for item in raw.split(","))
    return tuple(item.lower() if lower else item for item in items if item)


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    logger.warning("Invalid boolean for %s: '%s', using %s", name, raw, default)
    return default


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s: '%s', using %d", name, raw, default)
        return default


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid number for %s: '%s', using %s", name, raw, default)
        return default
    return value if value > 0 else default


def _role_map(raw: str) -> dict[str, str]:
    """Parse ``{"key": "role"}`` JSON. Invalid JSON yields an empty mapping."""
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("BROKER_API_KEYS is not valid JSON; explicit key roles disabled")
        return {}
    if not isinstance(data, dict):
        logger.warning("BROKER_API_KEYS must be a JSON object; explicit key roles disabled")
        return {}
    return {str(k): str(v).lower() for k, v in data.items()}
