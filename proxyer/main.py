from __future__ import annotations

import argparse
import logging
import os
import queue
import signal
import sys
import threading
import time

from colorama import Fore, Style

from .config import load_config_from_env
from .errors import ArgumentError
from .proxy_server import run_disguise_proxy
from .status import Health, status_consumer, status_ticker

logger = logging.getLogger("proxyer.main")
if not logger.handlers:
    logging.basicConfig(
        level=os.environ.get("PROXYER_LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(levelname)s] %(processName)s(%(process)d)/%(threadName)s: %(message)s",
    )

USAGE = """
Usage: -r REAL_PROXY -t THIS_PROXY -w PROXY_PW [-p PORT]

-r, --real-proxy: Location (`{host}:{port}` form) of the "real proxy" that you are trying to get around.
-t, --this-proxy: Location (just `{host}`, no port; the port is always 80 or 443) of the tunnel endpoint running on the real internet.
-w, --proxy-pw: The proxy password. This must have the same value on both the tunnel endpoint and this client.
-p, --port: Port to listen on. Defaults to 5000.
"""


def _parse_cli_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Command line flags, mapped onto PROXYER_* variables. Precedence: CLI > env > defaults.
    """
    ap = argparse.ArgumentParser(
        prog="proxyer",
        description="Local proxy that tunnels through a restrictive HTTP proxy in disguise.",
    )
    # No argparse defaults: an omitted flag leaves env and config defaults in place.
    ap.add_argument("-r", "--real-proxy", "--realProxyUri", dest="real_proxy", help="Override PROXYER_REAL_PROXY (host:port)")
    ap.add_argument("-t", "--this-proxy", "--thisProxyUri", dest="this_proxy", help="Override PROXYER_THIS_PROXY (host)")
    ap.add_argument("-w", "--proxy-pw", "--proxyPw", dest="proxy_pw", help="Override PROXYER_PROXY_PW")
    ap.add_argument("-p", "--port", dest="port", type=int, help="Override PROXYER_PORT (default 5000)")
    ap.add_argument("--host", dest="host", help="Override PROXYER_HOST (default 0.0.0.0)")
    ap.add_argument("--log-level", dest="log_level", help="Override PROXYER_LOG_LEVEL (e.g., WARNING, INFO)")
    ap.add_argument("--status-interval", dest="status_interval", type=float, help="Override PROXYER_STATUS_INTERVAL_SECONDS (0 disables)")
    ap.add_argument("--diag", dest="diag", action="store_const", const="on", help="Verbose per-connection diagnostics")
    return ap.parse_args(argv)


CLI_TO_ENV = {
    "real_proxy": "PROXYER_REAL_PROXY",
    "this_proxy": "PROXYER_THIS_PROXY",
    "proxy_pw": "PROXYER_PROXY_PW",
    "port": "PROXYER_PORT",
    "host": "PROXYER_HOST",
    "log_level": "PROXYER_LOG_LEVEL",
    "status_interval": "PROXYER_STATUS_INTERVAL_SECONDS",
    "diag": "PROXYER_TUNNEL_DIAG",
}


def main(argv: list[str] | None = None) -> int:
    # Flags win over env by being written into it before config loads
    args = _parse_cli_args(argv)
    for attr, env_key in CLI_TO_ENV.items():
        if getattr(args, attr, None) is not None:
            os.environ[env_key] = str(getattr(args, attr))

    try:
        cfg = load_config_from_env()
    except ArgumentError as e:
        print(f"{Fore.RED}{e}{Style.RESET_ALL}", file=sys.stderr)
        print(USAGE, file=sys.stderr)
        return 1

    logging.getLogger("proxyer").setLevel(cfg.log_level.upper())
    logger.info(
        "config: listen=%s:%d upstream=%s tunnel=%s status_interval=%ss diag=%s",
        cfg.listen_host, cfg.listen_port, cfg.upstream_proxy, cfg.tunnel_target,
        cfg.status_interval, cfg.diag,
    )

    stop_thread = threading.Event()

    def handle_signal(signum, _frame):
        logger.info("signal %s received, shutting down", signum)
        stop_thread.set()

    for sig in ("SIGINT", "SIGTERM"):
        if hasattr(signal, sig):
            signal.signal(getattr(signal, sig), handle_signal)

    # Events emitted by the proxy thread feed the health counters
    status_q: "queue.Queue[dict]" = queue.Queue()
    health = Health()
    consumer_t = threading.Thread(target=status_consumer, name="status-consumer", args=(status_q, health, stop_thread), daemon=True)
    ticker_t = threading.Thread(target=status_ticker, name="status-ticker", args=(health, stop_thread, cfg.status_interval), daemon=True)

    proxy_failed = threading.Event()

    def _proxy_thread():
        try:
            run_disguise_proxy(stop_thread, cfg, emit=status_q.put)
        except OSError as e:
            logger.error("proxy: failed to serve on %s:%d: %s", cfg.listen_host, cfg.listen_port, e)
            proxy_failed.set()
            stop_thread.set()

    proxy_t = threading.Thread(target=_proxy_thread, name="proxy", daemon=True)

    consumer_t.start()
    if cfg.status_interval > 0:
        ticker_t.start()
    proxy_t.start()

    try:
        while not stop_thread.is_set():
            time.sleep(0.5)
    except KeyboardInterrupt:
        stop_thread.set()

    proxy_t.join(timeout=5.0)
    logger.info("stopped")
    return 1 if proxy_failed.is_set() else 0


if __name__ == "__main__":
    raise SystemExit(main())
