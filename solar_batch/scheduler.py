"""
SweepScheduler -- runs the portal's recurring tasks on a fixed interval.

Each tick reads the clock once and hands that instant to every registered
task, so the expiry sweep and the overdue sweep agree on "now".  Every task
gets its own session: commit when it returns, rollback when it raises.  One
task failing is logged and the rest of the tick carries on.

Several schedulers may run side by side (one per API process).  Nothing
here coordinates them; the tasks are idempotent and their writes are
conditional, so a duplicate run is a no-op.
"""

from __future__ import annotations

import threading
from typing import Any, Callable

from sqlalchemy.orm import Session

from solar_batch.tasks import SweepTask, TaskRegistry
from solar_kernel.domain.clock import Clock, SystemClock
from solar_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.scheduler")

TickResult = dict[str, dict[str, Any] | None]


class SweepScheduler:
    """Background thread around ``tick()``; ``tick()`` is also callable directly."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        registry: TaskRegistry,
        clock: Clock | None = None,
        tick_interval_seconds: int = 300,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._clock = clock or SystemClock()
        self._interval = tick_interval_seconds
        self._stopping = threading.Event()
        self._worker: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def tick(self) -> TickResult:
        """
        Run each task once.

        Returns task_type -> the task's summary, or None where it failed.
        A stop request is honoured between tasks, never inside one.
        """
        now = self._clock.now()
        results: TickResult = {}
        for task in self._registry:
            if self._stopping.is_set():
                break
            results[task.task_type] = self._run_task(task, now)
        return results

    def start(self) -> None:
        if self.is_running:
            return
        self._stopping.clear()
        self._worker = threading.Thread(
            target=self._loop, name="sweep-scheduler", daemon=True
        )
        self._worker.start()
        logger.info(
            "scheduler_started",
            extra={
                "tick_interval": self._interval,
                "tasks": list(self._registry.task_types()),
            },
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Ask the loop to exit and wait up to ``timeout`` seconds for it."""
        self._stopping.set()
        if self.is_running:
            self._worker.join(timeout=timeout)
        logger.info("scheduler_stopped")

    def _loop(self) -> None:
        while True:
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler_tick_failed")
            if self._stopping.wait(timeout=self._interval):
                return

    def _run_task(self, task: SweepTask, now) -> dict[str, Any] | None:
        session = self._session_factory()
        try:
            with LogContext.bind(correlation_id=f"{task.task_type}@{now.isoformat()}"):
                summary = task.run(session, self._clock, now)
                session.commit()
                logger.info(
                    "task_completed",
                    extra={"task_type": task.task_type, "summary": summary},
                )
                return summary
        except Exception:
            session.rollback()
            logger.exception("task_failed", extra={"task_type": task.task_type})
            return None
        finally:
            session.close()
