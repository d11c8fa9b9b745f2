from __future__ import annotations

import os
from dataclasses import dataclass, field

from .errors import ArgumentError

# The Tunnel Endpoint always accepts tunnels on the HTTPS port.
TUNNEL_PORT = 443
DEFAULT_LISTEN_PORT = 5000


@dataclass(frozen=True)
class HostPort:
    host: str
    port: int

    @classmethod
    def parse(cls, hp: str) -> "HostPort":
        """
        Parse a `host:port` string. The port is taken after the last ':'.
        Raises ValueError when the port is absent or not numeric, or the host is empty.
        """
        s = (hp or "").strip()
        if ":" not in s:
            raise ValueError(f"no port found in {hp!r}")
        host, port_s = s.rsplit(":", 1)
        host = host.strip()
        port_s = port_s.strip()
        if not host:
            raise ValueError(f"no host found in {hp!r}")
        if not port_s.isdigit():
            raise ValueError(f"port is not numeric in {hp!r}")
        return cls(host=host, port=int(port_s))

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class ProxyerConfig:
    # Where to go: the restrictive proxy, and the relay host behind it
    upstream_proxy: HostPort
    tunnel_host: str
    secret: str = field(repr=False)
    # Listen config
    listen_host: str = "0.0.0.0"
    listen_port: int = DEFAULT_LISTEN_PORT
    # Logging / diagnostics
    log_level: str = "INFO"
    status_interval: float = 0.0
    diag: bool = False

    @property
    def tunnel_target(self) -> HostPort:
        return HostPort(self.tunnel_host, TUNNEL_PORT)


def load_config_from_env() -> ProxyerConfig:
    real_proxy = os.environ.get("PROXYER_REAL_PROXY", "").strip()
    this_proxy = os.environ.get("PROXYER_THIS_PROXY", "").strip()
    proxy_pw = os.environ.get("PROXYER_PROXY_PW", "")

    # Validate required values in the order they are documented in the usage text
    if not real_proxy:
        raise ArgumentError("need realProxyUri")
    if not this_proxy:
        raise ArgumentError("need thisProxyUri")
    if not proxy_pw:
        raise ArgumentError("need proxyPw (proxy password)")

    try:
        upstream = HostPort.parse(real_proxy)
    except ValueError as e:
        raise ArgumentError(f"realProxyUri must be host:port ({e})") from e

    port_s = os.environ.get("PROXYER_PORT") or os.environ.get("PORT") or str(DEFAULT_LISTEN_PORT)
    try:
        listen_port = int(port_s)
    except ValueError as e:
        raise ArgumentError(f"port must be numeric, got {port_s!r}") from e

    try:
        status_interval = float(os.environ.get("PROXYER_STATUS_INTERVAL_SECONDS", "0"))
    except ValueError as e:
        raise ArgumentError("status interval must be a number of seconds") from e

    diag_str = os.environ.get("PROXYER_TUNNEL_DIAG", "off").strip().lower()

    return ProxyerConfig(
        upstream_proxy=upstream,
        tunnel_host=this_proxy,
        secret=proxy_pw,
        listen_host=os.environ.get("PROXYER_HOST", "0.0.0.0"),
        listen_port=listen_port,
        log_level=os.environ.get("PROXYER_LOG_LEVEL", "INFO"),
        status_interval=status_interval,
        diag=diag_str not in ("0", "off", "false", "no"),
    )
