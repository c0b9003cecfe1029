"""
Explicit per-application importer state.

Everything a batch run shares with other runs (case locks, abort signals,
settings, the clock) hangs off an ``ImportContext`` rather than module globals,
so tests can build one with a fixed clock and small worker pool.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Hashable, Iterator, Mapping

from flask import Flask, current_app

from docket_app.models import Clock, utc_now

CONTEXT_EXTENSION_KEY = "docket_import_context"


@dataclass(frozen=True)
class ImporterSettings:
    max_workers: int = 4
    store_retry_limit: int = 3
    store_retry_backoff: float = 0.05
    progress_flush_rows: int = 25
    preview_row_limit: int = 10
    preview_ttl_minutes: int = 30
    session_ttl_minutes: int = 60

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ImporterSettings":
        return cls(
            max_workers=max(1, int(config.get("IMPORTER_MAX_WORKERS", cls.max_workers))),
            store_retry_limit=max(1, int(config.get("IMPORTER_STORE_RETRY_LIMIT", cls.store_retry_limit))),
            store_retry_backoff=max(0.0, float(config.get("IMPORTER_STORE_RETRY_BACKOFF", cls.store_retry_backoff))),
            progress_flush_rows=max(1, int(config.get("IMPORTER_PROGRESS_FLUSH_ROWS", cls.progress_flush_rows))),
            preview_row_limit=max(1, int(config.get("IMPORTER_PREVIEW_ROW_LIMIT", cls.preview_row_limit))),
            preview_ttl_minutes=max(1, int(config.get("IMPORTER_PREVIEW_TTL_MINUTES", cls.preview_ttl_minutes))),
            session_ttl_minutes=max(1, int(config.get("IMPORTER_SESSION_TTL_MINUTES", cls.session_ttl_minutes))),
        )


class CaseLockRegistry:
    """One lock per case key; entries are dropped once nobody holds them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, list] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class AbortRegistry:
    """In-process abort signals, one event per batch while it is being processed."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._events: dict[int, threading.Event] = {}

    def event_for(self, batch_id: int) -> threading.Event:
        with self._guard:
            return self._events.setdefault(batch_id, threading.Event())

    def request(self, batch_id: int) -> bool:
        """Signal a batch running in this process; returns False when none is registered."""

        with self._guard:
            event = self._events.get(batch_id)
        if event is None:
            return False
        event.set()
        return True

    def is_requested(self, batch_id: int) -> bool:
        with self._guard:
            event = self._events.get(batch_id)
        return bool(event and event.is_set())

    def discard(self, batch_id: int) -> None:
        with self._guard:
            self._events.pop(batch_id, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._events)


@dataclass
class ImportContext:
    app: Flask
    clock: Clock = utc_now
    settings: ImporterSettings = field(default_factory=ImporterSettings)
    locks: CaseLockRegistry = field(default_factory=CaseLockRegistry)
    aborts: AbortRegistry = field(default_factory=AbortRegistry)

    @classmethod
    def for_app(cls, app: Flask, *, clock: Clock = utc_now, **overrides: Any) -> "ImportContext":
        settings = ImporterSettings.from_config(app.config)
        if overrides:
            settings = replace(settings, **overrides)
        return cls(app=app, clock=clock, settings=settings)


def get_import_context(app: Flask | None = None) -> ImportContext:
    """Return the application's shared context, creating it on first use."""

    app = app or current_app._get_current_object()
    context = app.extensions.get(CONTEXT_EXTENSION_KEY)
    if context is None:
        context = ImportContext.for_app(app)
        app.extensions[CONTEXT_EXTENSION_KEY] = context
    return context
