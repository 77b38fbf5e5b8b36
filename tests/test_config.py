# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for BrokerConfig.from_env."""

from __future__ import annotations

import pytest

from webmcp_broker.config import DEFAULT_REDACTION_FIELDS, AuditLevel, AuthMode, BrokerConfig


class TestDefaults:
    def test_empty_environment(self):
        config = BrokerConfig.from_env({})
        assert config == BrokerConfig()
        assert config.port == 3000
        assert config.max_browsers == 5
        assert config.auth_mode is AuthMode.API_KEY
        assert config.audit_level is AuditLevel.BASIC
        assert config.redaction_fields == DEFAULT_REDACTION_FIELDS
        assert config.egress_control is True
        assert config.dns_check is True

    def test_frozen(self):
        config = BrokerConfig()
        with pytest.raises(AttributeError):
            config.port = 1  # type: ignore[misc]

    def test_replace(self):
        config = BrokerConfig().replace(port=8080)
        assert config.port == 8080
        assert BrokerConfig().port == 3000


class TestFromEnv:
    def test_values_parsed(self):
        config = BrokerConfig.from_env(
            {
                "BROKER_PORT": "8081",
                "BROKER_MAX_BROWSERS": "2",
                "BROKER_AUTH_MODE": "Both",
                "BROKER_REQUIRE_TLS": "yes",
                "BROKER_ALLOWED_DOMAINS": "Example.com, shop.example.org ,",
                "BROKER_AUDIT_LEVEL": "detailed",
                "BROKER_REDACTION_PATTERNS": r"ACME-\d+",
                "BROKER_TOKEN_ALGORITHMS": "HS256,RS256",
                "BROKER_LOG_LEVEL": "debug",
                "BROKER_DNS_CHECK": "false",
            }
        )
        assert config.port == 8081
        assert config.max_browsers == 2
        assert config.auth_mode is AuthMode.BOTH
        assert config.require_tls is True
        assert config.allowed_domains == ("example.com", "shop.example.org")
        assert config.audit_level is AuditLevel.DETAILED
        assert config.redaction_patterns == (r"ACME-\d+",)
        assert config.token_algorithms == ("HS256", "RS256")
        assert config.log_level == "DEBUG"
        assert config.dns_check is False

    def test_malformed_values_fall_back(self, caplog):
        config = BrokerConfig.from_env(
            {
                "BROKER_PORT": "eighty",
                "BROKER_REQUIRE_TLS": "maybe",
                "BROKER_ACQUIRE_TIMEOUT": "-3",
                "BROKER_AUDIT_LEVEL": "verbose",
            }
        )
        assert config.port == 3000
        assert config.require_tls is False
        assert config.acquire_timeout == 30.0
        assert config.audit_level is AuditLevel.BASIC
        assert "BROKER_PORT" in caplog.text

    def test_max_browsers_floor(self):
        assert BrokerConfig.from_env({"BROKER_MAX_BROWSERS": "0"}).max_browsers == 1

    def test_unknown_auth_mode_raises(self):
        with pytest.raises(ValueError, match="BROKER_AUTH_MODE"):
            BrokerConfig.from_env({"BROKER_AUTH_MODE": "magic"})

    def test_role_map(self):
        config = BrokerConfig.from_env({"BROKER_API_KEYS": '{"k1": "Admin", "k2": "viewer"}'})
        assert config.api_key_roles == {"k1": "admin", "k2": "viewer"}

    @pytest.mark.parametrize("raw", ["{not json", '["k1"]'])
    def test_bad_role_map_is_empty(self, raw):
        assert BrokerConfig.from_env({"BROKER_API_KEYS": raw}).api_key_roles == {}

    def test_redaction_fields_override_may_be_empty(self):
        assert BrokerConfig.from_env({"BROKER_REDACTION_FIELDS": ""}).redaction_fields == ()
        assert BrokerConfig.from_env({"BROKER_REDACTION_FIELDS": "CVV,pin"}).redaction_fields == ("cvv", "pin")

    def test_token_key_newlines_unescaped(self):
        config = BrokerConfig.from_env({"BROKER_TOKEN_KEY": "-----BEGIN-----\\nabc\\n-----END-----"})
        assert config.token_key == "-----BEGIN-----\nabc\n-----END-----"
