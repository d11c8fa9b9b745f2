"""Tests for HostPort parsing and environment-driven configuration."""

import os
from unittest.mock import patch

import pytest

from proxyer.config import HostPort, ProxyerConfig, load_config_from_env
from proxyer.errors import ArgumentError

REQUIRED = {
    "PROXYER_REAL_PROXY": "proxy.corp:3128",
    "PROXYER_THIS_PROXY": "relay.example.net",
    "PROXYER_PROXY_PW": "hunter2",
}


class TestHostPort:
    def test_parse(self):
        assert HostPort.parse("example.com:443") == HostPort("example.com", 443)

    def test_parse_uses_last_colon(self):
        assert HostPort.parse("[::1]:8080") == HostPort("[::1]", 8080)

    @pytest.mark.parametrize("bad", ["example.com", "example.com:", "example.com:https", ":443", ""])
    def test_parse_rejects(self, bad):
        with pytest.raises(ValueError):
            HostPort.parse(bad)

    def test_str(self):
        assert str(HostPort("example.com", 443)) == "example.com:443"


class TestLoadConfig:
    def test_defaults(self):
        with patch.dict(os.environ, REQUIRED, clear=True):
            cfg = load_config_from_env()
        assert cfg.upstream_proxy == HostPort("proxy.corp", 3128)
        assert cfg.tunnel_host == "relay.example.net"
        assert cfg.tunnel_target == HostPort("relay.example.net", 443)
        assert cfg.listen_port == 5000
        assert cfg.status_interval == 0.0
        assert cfg.diag is False

    def test_port_falls_back_to_PORT(self):
        with patch.dict(os.environ, {**REQUIRED, "PORT": "8081"}, clear=True):
            assert load_config_from_env().listen_port == 8081
        with patch.dict(os.environ, {**REQUIRED, "PORT": "8081", "PROXYER_PORT": "9000"}, clear=True):
            assert load_config_from_env().listen_port == 9000

    @pytest.mark.parametrize(
        "missing,message",
        [
            ("PROXYER_REAL_PROXY", "need realProxyUri"),
            ("PROXYER_THIS_PROXY", "need thisProxyUri"),
            ("PROXYER_PROXY_PW", "need proxyPw"),
        ],
    )
    def test_missing_required(self, missing, message):
        env = {k: v for k, v in REQUIRED.items() if k != missing}
        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ArgumentError, match=message):
                load_config_from_env()

    def test_bad_upstream_address(self):
        with patch.dict(os.environ, {**REQUIRED, "PROXYER_REAL_PROXY": "proxy.corp"}, clear=True):
            with pytest.raises(ArgumentError):
                load_config_from_env()

    def test_diag_flag(self):
        with patch.dict(os.environ, {**REQUIRED, "PROXYER_TUNNEL_DIAG": "on"}, clear=True):
            assert load_config_from_env().diag is True

    def test_secret_not_in_repr(self):
        cfg = ProxyerConfig(upstream_proxy=HostPort("p", 1), tunnel_host="t", secret="hunter2")
        assert "hunter2" not in repr(cfg)
