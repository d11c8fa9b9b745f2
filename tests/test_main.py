"""Tests for CLI parsing and startup argument errors."""

import os
from unittest.mock import patch

from proxyer.main import CLI_TO_ENV, _parse_cli_args, main


def test_short_and_long_flags():
    args = _parse_cli_args(["-r", "proxy.corp:3128", "-t", "relay.example.net", "-w", "pw", "-p", "8080"])
    assert args.real_proxy == "proxy.corp:3128"
    assert args.this_proxy == "relay.example.net"
    assert args.proxy_pw == "pw"
    assert args.port == 8080
    assert args.diag is None


def test_original_flag_names_accepted():
    args = _parse_cli_args(["--realProxyUri", "p:1", "--thisProxyUri", "t", "--proxyPw", "x", "--diag"])
    assert (args.real_proxy, args.this_proxy, args.proxy_pw) == ("p:1", "t", "x")
    assert args.diag == "on"


def test_every_flag_maps_to_env():
    args = _parse_cli_args([])
    for attr in CLI_TO_ENV:
        assert hasattr(args, attr)


def test_missing_arguments_print_usage(capsys):
    with patch.dict(os.environ, {}, clear=True):
        assert main([]) == 1
    err = capsys.readouterr().err
    assert "need realProxyUri" in err
    assert "Usage:" in err


def test_missing_password_reported(capsys):
    with patch.dict(os.environ, {}, clear=True):
        assert main(["-r", "proxy.corp:3128", "-t", "relay.example.net"]) == 1
    assert "need proxyPw" in capsys.readouterr().err
