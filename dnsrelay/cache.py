"""Answer cache that refreshes stale entries in background workers."""

from __future__ import annotations

import copy
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any

import cachetools
import dns.message

from .dnsmsg import get_min_ttl

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass
class CacheOptions:
    """Cache sizing and lifetimes; durations are in seconds."""

    max_counters: int = 10000
    max_cost: int = 10000
    buffer_items: int = 64
    ttl: float = 86400.0
    threads: int = 5
    refresh_ttl: float = 300.0


@dataclass(frozen=True)
class CacheValue:
    """A cached answer and the Unix time after which it should be refreshed."""

    message: dns.message.Message
    expire_at: int

    def is_expired(self) -> bool:
        return int(time.time()) > self.expire_at


def _key(domain: str, qtype: int) -> str:
    return f"{domain}-{int(qtype)}"


class DnsCache:
    """Stores answers by name and type, refreshing stale ones on access."""

    def __init__(self, options: CacheOptions | None = None) -> None:
        self.options = options or CacheOptions()
        for name in ("max_counters", "max_cost", "buffer_items"):
            if getattr(self.options, name) <= 0:
                raise ValueError(f"{name.replace('_', '-')} can't be zero")
        if self.options.ttl > 0:
            self._store: cachetools.Cache = cachetools.TTLCache(
                maxsize=self.options.max_cost, ttl=self.options.ttl
            )
        else:
            self._store = cachetools.LRUCache(maxsize=self.options.max_cost)
        self._lock = threading.Lock()
        self._query: Any = None
        self._requests: queue.Queue = queue.Queue(maxsize=256)
        self._workers: list[threading.Thread] = []
        self._closed = False

    def set_query(self, query: Any) -> None:
        """Set the resolver, with a ``resolve(request)`` method, used for refreshes."""
        self._query = query

    def start(self) -> None:
        """Start the refresh workers."""
        for _ in range(self.options.threads):
            worker = threading.Thread(target=self._handle_update, daemon=True)
            worker.start()
            self._workers.append(worker)

    def close(self) -> None:
        """Finish pending refreshes, stop the workers and drop all entries."""
        if self._closed:
            return
        logger.debug("cache close")
        self._closed = True
        for _ in self._workers:
            self._requests.put(_STOP)
        for worker in self._workers:
            worker.join()
        self._workers.clear()
        with self._lock:
            self._store.clear()

    def set(self, domain: str, qtype: int, message: dns.message.Message) -> None:
        """Store a copy of ``message`` for the name and type."""
        if self._closed or self.options.ttl < 0:
            logger.warning("cache set failed domain=%s qtype=%s", domain, int(qtype))
            return
        value = CacheValue(copy.deepcopy(message), int(time.time() + self.options.refresh_ttl))
        with self._lock:
            self._store[_key(domain, qtype)] = value

    def get(self, domain: str, qtype: int) -> CacheValue | None:
        """Return the cached value, or None."""
        if self._closed:
            return None
        with self._lock:
            return self._store.get(_key(domain, qtype))

    def get_and_update(self, domain: str, qtype: int) -> CacheValue | None:
        """Return the cached value and queue a refresh if it is stale."""
        value = self.get(domain, qtype)
        if value is None:
            if self._closed:
                raise RuntimeError("cache is closed")
            return None
        if value.is_expired():
            self._requests.put((domain, qtype))
        return value

    def delete(self, domain: str, qtype: int) -> None:
        """Remove the entry for the name and type."""
        with self._lock:
            self._store.pop(_key(domain, qtype), None)

    def _handle_update(self) -> None:
        for item in iter(self._requests.get, _STOP):
            domain, qtype = item
            if self._query is None:
                logger.error("cache dns query is not set")
                continue
            try:
                message, _ = self._query.resolve(dns.message.make_query(domain, qtype))
            except Exception as exc:
                logger.error("resolve failed domain=%s qtype=%s error=%s", domain, qtype, exc)
                continue
            self.set(domain, qtype, message)
            logger.debug("cache update domain=%s qtype=%s ttl=%s", domain, qtype, get_min_ttl(message))