from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field

from colorama import Fore, Style, init as colorama_init

colorama_init(autoreset=True)
logger = logging.getLogger("proxyer.status")

__all__ = [
    "Health",
    "humanize_bytes",
    "humanize_duration",
    "status_consumer",
    "status_ticker",
]


def humanize_bytes(n: int) -> str:
    try:
        n = int(n)
    except (TypeError, ValueError):
        return "0B"
    units = ["B", "KB", "MB", "GB", "TB"]
    f = float(n)
    u = 0
    while f >= 1024.0 and u < len(units) - 1:
        f /= 1024.0
        u += 1
    if u == 0:
        return f"{int(f)}{units[u]}"
    return f"{f:.1f}{units[u]}"


def humanize_duration(seconds: float) -> str:
    try:
        s = float(seconds)
    except (TypeError, ValueError):
        s = 0.0
    s = max(0.0, s)
    m, s = divmod(int(round(s)), 60)
    h, m = divmod(m, 60)
    if h:
        return f"{h}h{m}m{s}s"
    if m:
        return f"{m}m{s}s"
    return f"{s}s"


@dataclass
class Health:
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    started: float = field(default_factory=time.time)
    tunnels_opened: int = 0
    tunnels_failed: int = 0
    tunnels_active: int = 0
    http_forwards: int = 0
    http_failed: int = 0
    bytes_up: int = 0
    bytes_down: int = 0
    last_error: str = ""
    last_event_time: float = 0.0

    def apply(self, evt: dict) -> None:
        typ = evt.get("type")
        with self.lock:
            self.last_event_time = float(evt.get("ts") or time.time())
            if typ == "tunnel_open":
                self.tunnels_opened += 1
                self.tunnels_active += 1
            elif typ == "tunnel_closed":
                self.tunnels_active = max(0, self.tunnels_active - 1)
                self.bytes_up += int(evt.get("up") or 0)
                self.bytes_down += int(evt.get("down") or 0)
            elif typ == "tunnel_fail":
                self.tunnels_failed += 1
                self.last_error = str(evt.get("error") or "")
            elif typ == "http_forward":
                self.http_forwards += 1
                self.bytes_down += int(evt.get("bytes") or 0)
            elif typ == "http_fail":
                self.http_failed += 1
                self.last_error = str(evt.get("error") or "")
            # Other event types are informational


def status_consumer(status_q: "queue.Queue[dict]", health: Health, stop_evt: threading.Event) -> None:
    while not stop_evt.is_set():
        try:
            evt = status_q.get(timeout=1.0)
        except queue.Empty:
            continue
        if not isinstance(evt, dict):
            continue
        health.apply(evt)


def format_status(health: Health) -> str:
    with health.lock:
        opened = health.tunnels_opened
        failed = health.tunnels_failed
        active = health.tunnels_active
        forwards = health.http_forwards
        http_failed = health.http_failed
        up = health.bytes_up
        down = health.bytes_down
        last_error = health.last_error
        uptime = time.time() - health.started

    state = (Fore.GREEN + "UP" + Style.RESET_ALL) if failed == 0 or opened > 0 else (Fore.RED + "FAILING" + Style.RESET_ALL)
    msg = (
        f"{Fore.CYAN}tunnels{Style.RESET_ALL}=open:{opened} active:{active} failed:{failed} "
        f"| {Fore.YELLOW}http{Style.RESET_ALL}=ok:{forwards} failed:{http_failed} "
        f"| {Fore.MAGENTA}bytes{Style.RESET_ALL}=up:{humanize_bytes(up)} down:{humanize_bytes(down)} "
        f"| {state} uptime={humanize_duration(uptime)}"
    )
    if last_error:
        msg += f" last_err={last_error[:120]}"
    return msg


def status_ticker(health: Health, stop_evt: threading.Event, interval_s: float) -> None:
    if interval_s <= 0:
        return
    while not stop_evt.wait(interval_s):
        logger.info(format_status(health))
