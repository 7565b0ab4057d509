"""Triggers for replay: a fixed interval and connectivity regained."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable

from fieldsync.models.sync import SyncReport
from fieldsync.sync.engine import SyncEngine

_logger = logging.getLogger(__name__)


class Connectivity:
    """Online/offline flag fed by the host runtime.

    Listeners are called with the new state on every transition, never on
    repeated reports of the same state.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: list[Callable[[bool], None]] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        self._listeners.append(callback)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(callback)

        return _remove

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        _logger.info("Connectivity changed: %s", "online" if online else "offline")
        for callback in list(self._listeners):
            try:
                callback(online)
            except Exception:
                _logger.debug("connectivity listener failed", exc_info=True)


class SyncScheduler:
    """Feeds :meth:`SyncEngine.attempt_replay` from a timer and reconnects.

    Usage::

        scheduler = SyncScheduler(engine, connectivity, interval=60.0)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        engine: SyncEngine,
        connectivity: Connectivity,
        *,
        interval: float,
        on_report: Callable[[SyncReport], None] | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._engine = engine
        self._connectivity = connectivity
        self._interval = interval
        self._on_report = on_report
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the background loop. A replay runs immediately if online."""
        if self.is_running:
            return
        self._unsubscribe = self._connectivity.add_listener(self._on_connectivity)
        self._wake.set()
        self._task = asyncio.get_running_loop().create_task(self._run(), name="fieldsync-replay")

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def trigger(self) -> None:
        """Request a replay pass as soon as the loop is free."""
        self._wake.set()

    def _on_connectivity(self, online: bool) -> None:
        if online:
            self.trigger()

    async def _run(self) -> None:
        while True:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wake.wait(), self._interval)
            self._wake.clear()
            if not self._connectivity.is_online:
                continue
            try:
                report = await self._engine.attempt_replay()
            except Exception:
                _logger.exception("Replay pass failed unexpectedly")
                continue
            if self._on_report is not None:
                try:
                    self._on_report(report)
                except Exception:
                    _logger.debug("on_report callback failed", exc_info=True)
