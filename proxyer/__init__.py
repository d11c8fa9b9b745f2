"""Disguised double-CONNECT tunnel client for restrictive HTTP proxies."""

__version__ = "0.1.0"
