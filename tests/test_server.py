# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for server CLI parsing and config assembly."""

from __future__ import annotations

import pytest

from webmcp_broker.config import AuthMode
from webmcp_broker.server import _config_from_args, _parse_server_args, main


class TestParseServerArgs:
    def test_defaults_are_unset(self):
        args = _parse_server_args([])
        assert args.host is None
        assert args.port is None
        assert args.require_tls is None
        assert args.headed is False
        assert args.drain_timeout == 30

    def test_unknown_flags_ignored(self):
        args = _parse_server_args(["--port", "8080", "--frobnicate"])
        assert args.port == 8080

    def test_invalid_auth_mode_rejected(self):
        with pytest.raises(SystemExit):
            _parse_server_args(["--auth-mode", "magic"])


class TestConfigFromArgs:
    def test_env_only(self):
        config = _config_from_args(_parse_server_args([]), {"BROKER_PORT": "4000", "BROKER_API_KEY": "k"})
        assert config.port == 4000
        assert config.api_key == "k"

    def test_flags_override_env(self):
        args = _parse_server_args(
            [
                "--host",
                "0.0.0.0",
                "--port",
                "9000",
                "--max-browsers",
                "0",
                "--auth-mode",
                "both",
                "--require-tls",
                "--headed",
                "--log-level",
                "debug",
                "--console-logs",
            ]
        )
        config = _config_from_args(args, {"BROKER_PORT": "4000", "BROKER_HOST": "10.0.0.1"})
        assert config.host == "0.0.0.0"
        assert config.port == 9000
        assert config.max_browsers == 1
        assert config.auth_mode == AuthMode.BOTH
        assert config.require_tls is True
        assert config.headless is False
        assert config.log_level == "DEBUG"
        assert config.log_json is False

    def test_no_flags_keeps_env_config(self):
        config = _config_from_args(_parse_server_args([]), {"BROKER_REQUIRE_TLS": "true"})
        assert config.require_tls is True


class TestMain:
    def test_bad_config_exits_2(self, monkeypatch, capsys):
        monkeypatch.setenv("BROKER_AUTH_MODE", "nonsense")
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 2
        assert "webmcp-broker:" in capsys.readouterr().err
