"""
Background work for SMServer: fire-and-forget syncs and the status poller.
"""
import asyncio
import time
from typing import Any, Callable, Dict, Hashable, Optional, Set

from config import config
from observability import structured_logger, metrics
from status_poller import status_poller, StatusPoller


class BackgroundTaskManager:
    """
    Runs blocking work (phone syncs) in worker threads without the caller
    awaiting it. Every dispatched task is tracked until it finishes so
    shutdown can drain in-flight work instead of dropping it.
    """

    def __init__(self, poller: Optional[StatusPoller] = None, poller_enabled: Optional[bool] = None):
        self._running = False
        self._tasks: Set[asyncio.Task] = set()
        self._keyed: Dict[Hashable, asyncio.Task] = {}
        self.poller = poller or status_poller
        self.poller_enabled = config.poller_enabled if poller_enabled is None else poller_enabled

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def start(self):
        """Start the status poller."""
        if self._running:
            return

        self._running = True
        structured_logger.log_event("background_tasks.started", poller_enabled=self.poller_enabled)

        if self.poller_enabled:
            await self.poller.start()

    async def stop(self, timeout: float = 30.0):
        """Stop the poller and wait up to timeout seconds for dispatched work."""
        if not self._running:
            return

        self._running = False
        await self.poller.stop()

        pending = list(self._tasks)
        if pending:
            structured_logger.log_event("background_tasks.draining", pending=len(pending))
            done, still_running = await asyncio.wait(pending, timeout=timeout)
            if still_running:
                structured_logger.log_event(
                    "background_tasks.drain_timeout",
                    level="WARN",
                    abandoned=len(still_running)
                )

        structured_logger.log_event("background_tasks.stopped")

    def dispatch(self, label: str, func: Callable[..., Any], *args, **kwargs) -> asyncio.Task:
        """
        Run func(*args, **kwargs) in a worker thread and return immediately.
        Must be called from the event loop. Failures are logged as
        background.<label>.failed and never reach the caller.
        """
        task = asyncio.create_task(self._run(label, func, *args, **kwargs))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def dispatch_once(self, key: Hashable, label: str, func: Callable[..., Any], *args, **kwargs) -> asyncio.Task:
        """
        Like dispatch, but while a task for the same key is still in flight
        that task is returned instead of starting another one.
        """
        existing = self._keyed.get(key)
        if existing is not None and not existing.done():
            metrics.inc_counter("background_tasks_coalesced_total", {"label": label})
            structured_logger.log_event(f"background.{label}.coalesced", level="DEBUG")
            return existing

        task = self.dispatch(label, func, *args, **kwargs)
        self._keyed[key] = task

        def forget(done_task: asyncio.Task):
            if self._keyed.get(key) is done_task:
                del self._keyed[key]

        task.add_done_callback(forget)
        return task

    async def _run(self, label: str, func: Callable[..., Any], *args, **kwargs):
        start = time.monotonic()
        try:
            result = await asyncio.to_thread(func, *args, **kwargs)
            metrics.inc_counter("background_tasks_total", {"label": label, "status": "success"})
            return result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            metrics.inc_counter("background_tasks_total", {"label": label, "status": "error"})
            structured_logger.log_event(
                f"background.{label}.failed",
                level="ERROR",
                error=str(e),
                error_type=type(e).__name__,
                elapsed_ms=round((time.monotonic() - start) * 1000, 2)
            )
            return None


# Global instance
background_tasks = BackgroundTaskManager()
