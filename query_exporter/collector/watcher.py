"""
Push invalidation: change stream watchers.

One daemon thread per (push-mode aggregation, server). Every change event
on the aggregation's database/collection evicts the cached samples for
that pair; the next scrape misses the cache and re-executes. Watchers do
not execute aggregations themselves.

A stream that cannot be opened, or that fails later, is logged and the
thread ends. There is no retry and no fallback to pull polling: the entry
simply stays sticky until the process restarts.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Set

from .cache import CacheKey, ResultCache
from .driver import ChangeStreamEvent, Cursor
from .models import RegisteredAggregation, Server

logger = logging.getLogger(__name__)


class CacheInvalidator:
    """Owns the watcher threads of one collector."""

    def __init__(self, cache: ResultCache) -> None:
        self._cache = cache
        self._lock = threading.Lock()
        self._started: Set[CacheKey] = set()
        self._threads: List[threading.Thread] = []
        self._streams: Dict[CacheKey, Cursor] = {}
        self._stop_event = threading.Event()

    def start(self, aggregation: RegisteredAggregation, server: Server) -> bool:
        """Start watching for one pair. Returns False if already started."""
        key = (aggregation.identity, server.name)
        with self._lock:
            if key in self._started:
                return False
            self._started.add(key)

        thread = threading.Thread(
            target=self._watch,
            args=(aggregation, server),
            name=f"watch-{aggregation.identity}-{server.name}",
            daemon=True,
        )
        self._threads.append(thread)
        thread.start()
        return True

    @property
    def started(self) -> Set[CacheKey]:
        with self._lock:
            return set(self._started)

    def _watch(self, aggregation: RegisteredAggregation, server: Server) -> None:
        key = (aggregation.identity, server.name)
        namespace = f"{aggregation.database}.{aggregation.collection}"
        logger.info(
            f"[WATCH] start changestream on {namespace} ({server.name}), waiting for changes"
        )
        try:
            stream = server.driver.watch(aggregation.database, aggregation.collection, ())
        except Exception as exc:
            logger.error(
                f"[WATCH] failed to start changestream listener on {namespace} "
                f"({server.name}): {exc}"
            )
            return

        with self._lock:
            self._streams[key] = stream
        try:
            for doc in stream:
                if self._stop_event.is_set():
                    break
                try:
                    event = ChangeStreamEvent.from_document(doc)
                except ValueError as exc:
                    logger.error(f"[WATCH] failed to decode change event: {exc}")
                    continue
                self._cache.evict(key)
                logger.debug(
                    f"[WATCH] {event.operation_type} on {event.db}.{event.coll}, "
                    f"invalidated {aggregation.identity} for {server.name}"
                )
        except Exception as exc:
            if not self._stop_event.is_set():
                logger.error(f"[WATCH] changestream on {namespace} ({server.name}) failed: {exc}")
        finally:
            with self._lock:
                self._streams.pop(key, None)
            stream.close()

    def join(self, timeout: Optional[float] = None) -> None:
        for thread in list(self._threads):
            thread.join(timeout)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Signal watchers to end, close open streams and wait for the threads."""
        self._stop_event.set()
        with self._lock:
            streams = list(self._streams.values())
        for stream in streams:
            try:
                stream.close()
            except Exception as exc:
                logger.warning(f"[WATCH] failed to close changestream: {exc}")
        self.join(timeout)
