"""Timer-driven detection trigger.

Cycles run in a worker thread so the event loop stays responsive. The
scheduler shares its engine's RunState, so a timer tick that lands while a
manual run is in flight is dropped rather than queued.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import datetime

from trendr.engine import DetectionError, FlowEngine, RunState
from trendr.models import Flow

log = logging.getLogger(__name__)


class DetectionScheduler:
    def __init__(self, engine: FlowEngine, interval_minutes: float | None = None):
        self.engine = engine
        self.interval_minutes = (
            engine.config.detection_interval_minutes if interval_minutes is None else interval_minutes
        )
        self._task: asyncio.Task | None = None
        self._stopping: asyncio.Event | None = None

    @property
    def state(self) -> RunState:
        return self.engine.state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the periodic loop on the running event loop. An interval of 0 disables it."""
        if self.interval_minutes <= 0:
            log.info("Detection timer disabled; cycles run on demand only")
            return
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        log.info("Detection timer started (every %s min)", self.interval_minutes)

    async def stop(self) -> None:
        if self._task is None:
            return
        if self._stopping is not None:
            self._stopping.set()
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        log.info("Detection timer stopped")

    async def trigger_now(self, now: datetime | None = None) -> list[Flow]:
        """Run one cycle in a worker thread. Raises DetectionError if the cycle fails."""
        return await asyncio.to_thread(self.engine.run_detection_cycle, now)

    async def _loop(self) -> None:
        assert self._stopping is not None
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_minutes * 60)
                break
            except asyncio.TimeoutError:
                pass
            try:
                flows = await self.trigger_now()
            except DetectionError as exc:
                # Recorded on the run state; the next tick retries
                log.warning("Scheduled detection cycle failed: %s", exc)
                continue
            log.info("Scheduled detection cycle stored %d flows", len(flows))
