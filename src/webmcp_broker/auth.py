# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Caller authentication — shared API keys and signed bearer tokens.

Modes (``BrokerConfig.auth_mode``):

- ``apikey``: ``X-API-Key`` header compared in constant time against the
  configured key and the keys of the explicit key→role map. With no key
  configured at all, every caller is admitted (development default).
- ``signed-token``: ``Authorization: Bearer <jwt>`` verified with
  python-jose (signature, expiry), then tenant (``tid``), audience
  (``aud`` = audience or ``api://audience``) and issuer checks.
- ``both``: a valid bearer token wins, otherwise a valid API key.

Stdlib plus python-jose. No ASGI code lives here; the pipeline's
``AuthStage`` adapts this to requests.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt

from .audit import fingerprint
from .config import AuthMode, BrokerConfig
from .errors import AuthenticationError

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-api-key"

_ISSUER_PREFIXES = (
    "https://login.microsoftonline.com/",
    "https://sts.windows.net/",
)


@dataclass(frozen=True, slots=True)
class Identity:
    """Authenticated caller. ``credential`` is the raw key and never logged."""

    method: str  # "api_key" | "token" | "anonymous"
    credential: str = field(default="", repr=False)
    subject: str = ""
    claims: Mapping[str, Any] = field(default_factory=dict, repr=False)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.credential)


ANONYMOUS = Identity(method="anonymous")


def _constant_time_in(candidate: str, secrets: tuple[str, ...]) -> bool:
    """Constant-time membership test; every secret is compared."""
    matched = False
    encoded = candidate.encode("utf-8")
    for secret in secrets:
        if hmac.compare_digest(encoded, secret.encode("utf-8")):
            matched = True
    return matched


def _bearer_token(headers: Mapping[str, str]) -> str | None:
    value = headers.get("authorization", "")
    if value[:7].lower() == "bearer " and value[7:].strip():
        return value[7:].strip()
    return None


class Authenticator:
    """Resolves request headers to an ``Identity`` or raises ``AuthenticationError``."""

    def __init__(self, config: BrokerConfig) -> None:
        self.mode = config.auth_mode
        self.tenant_id = config.tenant_id
        self.audience = config.audience
        self.token_key = config.token_key
        self.token_algorithms = list(config.token_algorithms)
        keys = [config.api_key] if config.api_key else []
        keys.extend(k for k in config.api_key_roles if k)
        self._api_keys = tuple(dict.fromkeys(keys))

    @property
    def open_access(self) -> bool:
        """True when API-key mode has no keys configured."""
        return self.mode == AuthMode.API_KEY and not self._api_keys

    def authenticate(self, headers: Mapping[str, str]) -> Identity:
        """Authenticate a request from its lower-cased *headers*."""
        provided_key = headers.get(API_KEY_HEADER, "")

        if self.mode == AuthMode.API_KEY:
            return self._check_api_key(provided_key)

        token = _bearer_token(headers)

        if self.mode == AuthMode.SIGNED_TOKEN:
            if token is None:
                raise AuthenticationError("Bearer token required")
            return self.verify_token(token)

        # AuthMode.BOTH
        if token is not None:
            try:
                return self.verify_token(token)
            except AuthenticationError as e:
                logger.debug("Bearer token rejected, trying API key: %s", e)
        if provided_key and (not self._api_keys or _constant_time_in(provided_key, self._api_keys)):
            return Identity(method="api_key", credential=provided_key)
        raise AuthenticationError("Valid Bearer token or API key required")

    def _check_api_key(self, provided: str) -> Identity:
        if not self._api_keys:
            return Identity(method="api_key", credential=provided) if provided else ANONYMOUS
        if not provided:
            raise AuthenticationError("API key required")
        if not _constant_time_in(provided, self._api_keys):
            raise AuthenticationError("Invalid API key")
        return Identity(method="api_key", credential=provided)

    def verify_token(self, token: str) -> Identity:
        """Verify a signed bearer token and its tenant/audience/issuer claims."""
        if not self.token_key:
            raise AuthenticationError("Token verification key not configured")
        try:
            claims = jwt.decode(
                token,
                self.token_key,
                algorithms=self.token_algorithms,
                options={"verify_aud": False, "verify_iss": False},
            )
        except ExpiredSignatureError:
            raise AuthenticationError("Token expired") from None
        except JWTError:
            raise AuthenticationError("Invalid token") from None

        tid = claims.get("tid")
        if self.tenant_id and tid and tid != self.tenant_id:
            raise AuthenticationError("Invalid tenant")

        if self.audience:
            aud = claims.get("aud")
            audiences = aud if isinstance(aud, list) else [aud]
            accepted = {self.audience, f"api://{self.audience}"}
            if not any(a in accepted for a in audiences):
                raise AuthenticationError("Invalid audience")

        issuer = claims.get("iss")
        if issuer:
            tenant = self.tenant_id or tid or ""
            if not any(issuer.startswith(f"{prefix}{tenant}") for prefix in _ISSUER_PREFIXES):
                raise AuthenticationError("Invalid issuer")

        subject = str(claims.get("oid") or claims.get("sub") or claims.get("appid") or "")
        return Identity(method="token", credential=token, subject=subject, claims=claims)
