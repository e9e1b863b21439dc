"""Forwarding DNS server with per-domain upstream routing, caching and rewriting."""

__version__ = "0.1.0"