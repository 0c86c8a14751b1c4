"""Background retention scheduler.

Fires one retention run as soon as it starts, then one run per interval
on a fixed-rate grid measured from the start time. At most one run is in
flight at any moment: a tick that finds a run still executing is dropped
and logged as a missed cycle, never queued.

The scheduler is owned by the composition root (the API lifespan or the
CLI ``serve`` command); nothing in this module keeps a global instance.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from errors import ConfigError, OverlapSkipped, StorageError

logger = logging.getLogger(__name__)


class RetentionScheduler:
    """Fixed-rate asyncio timer that serializes retention runs."""

    def __init__(
        self,
        run_once: Optional[Callable[[], Any]] = None,
        *,
        interval_seconds: Optional[float] = None,
        run_on_start: Optional[bool] = None,
        enabled: Optional[bool] = None,
    ):
        if interval_seconds is None or run_on_start is None or enabled is None:
            from config import get_config

            config = get_config()
            if interval_seconds is None:
                interval_seconds = config.retention.interval_seconds
            if run_on_start is None:
                run_on_start = config.maintenance.run_on_start
            if enabled is None:
                enabled = config.maintenance.enabled

        if interval_seconds <= 0:
            raise ConfigError(f"Retention interval must be positive, got {interval_seconds}")

        if run_once is None:
            from retention_run import run_once

        self._run_once = run_once
        self.interval_seconds = float(interval_seconds)
        self.run_on_start = run_on_start
        self.enabled = enabled

        self._timer: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None
        self._running = False
        self._origin: Optional[float] = None

        self.missed_cycles = 0
        self.runs_succeeded = 0
        self.runs_failed = 0
        self._last_run_at: Optional[str] = None
        self._last_outcome: Optional[str] = None
        self._last_report: Optional[Dict[str, Any]] = None
        self._last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def run_in_progress(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the timer. Returns without waiting for the first run."""
        if self._running:
            logger.warning("Retention scheduler already running")
            return
        if not self.enabled:
            logger.info("Retention scheduler disabled; runs only on demand")
            return
        self._running = True
        self._origin = asyncio.get_running_loop().time()
        self._timer = asyncio.create_task(self._loop())
        logger.info(
            "Retention scheduler started (interval=%ss, run_on_start=%s)",
            self.interval_seconds, self.run_on_start,
        )

    async def stop(self) -> None:
        """Cancel the timer. A run already in flight is left to finish."""
        self._running = False
        if self._timer:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        logger.info("Retention scheduler stopped")

    async def wait_for_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for the in-flight run, if any. Returns False on timeout."""
        task = self._run_task
        if task is None or task.done():
            return True
        done, _ = await asyncio.wait({task}, timeout=timeout)
        return bool(done)

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "running": self._running,
            "run_in_progress": self.run_in_progress,
            "interval_seconds": self.interval_seconds,
            "last_run_at": self._last_run_at,
            "last_outcome": self._last_outcome,
            "last_report": self._last_report,
            "last_error": self._last_error,
            "missed_cycles": self.missed_cycles,
            "runs_succeeded": self.runs_succeeded,
            "runs_failed": self.runs_failed,
        }

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def trigger(self):
        """Run retention now through the same gate as scheduled ticks.

        Raises:
            OverlapSkipped: A run is already in progress.
            StorageError: The run failed and was rolled back.
        """
        if self.run_in_progress:
            raise OverlapSkipped("A retention run is already in progress")
        self._run_task = asyncio.create_task(self._run())
        return await asyncio.shield(self._run_task)

    def _on_tick(self) -> None:
        if self.run_in_progress:
            self.missed_cycles += 1
            logger.info(
                "Retention tick skipped: previous run still in progress (missed_cycles=%d)",
                self.missed_cycles,
            )
            return
        self._run_task = asyncio.create_task(self._scheduled_run())

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        tick = 0 if self.run_on_start else 1
        while self._running:
            delay = self._origin + tick * self.interval_seconds - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            if not self._running:
                break
            self._on_tick()
            # Resume on the next grid point if the loop woke up late.
            elapsed = loop.time() - self._origin
            tick = max(tick + 1, int(elapsed // self.interval_seconds) + 1)

    async def _scheduled_run(self) -> None:
        try:
            await self._run()
        except OverlapSkipped as e:
            logger.info("Retention run skipped: %s", e)
        except StorageError as e:
            logger.error("Scheduled retention run failed, retrying next cycle: %s", e)
        except Exception:
            logger.exception("Scheduled retention run crashed")

    async def _run(self):
        try:
            report = await asyncio.to_thread(self._run_once)
        except OverlapSkipped as e:
            self._record("skipped", error=str(e))
            raise
        except Exception as e:
            self.runs_failed += 1
            self._record("failed", error=str(e))
            raise
        self.runs_succeeded += 1
        self._record(
            getattr(report, "outcome", "success"),
            report=report.to_dict() if hasattr(report, "to_dict") else None,
        )
        return report

    def _record(self, outcome: str, report: Optional[Dict[str, Any]] = None, error: Optional[str] = None) -> None:
        self._last_run_at = datetime.now(timezone.utc).isoformat()
        self._last_outcome = outcome
        self._last_report = report
        self._last_error = error
