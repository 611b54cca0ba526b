from __future__ import annotations

import asyncio
import time
from typing import Any, Coroutine, Optional

import structlog

logger = structlog.stdlib.get_logger(__name__)


class SchedulerClosed(RuntimeError):
    """Raised when a task is scheduled after shutdown began."""


class BackgroundScheduler:
    """Runs work after the response has been sent.

    Tasks are detached from the request that scheduled them but tracked in an
    in-flight set, so the application's shutdown hook can wait for them via
    drain(). Each task has its own timeout; failures are logged, never raised.
    """

    def __init__(self, *, default_timeout: float = 300.0) -> None:
        self._default_timeout = default_timeout
        self._inflight: set[asyncio.Task] = set()
        self._closed = False

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(
        self,
        coro: Coroutine[Any, Any, Any],
        *,
        name: str,
        timeout: Optional[float] = None,
    ) -> asyncio.Task:
        if self._closed:
            coro.close()
            raise SchedulerClosed(f"Cannot schedule {name}: scheduler is shut down")

        task = asyncio.create_task(
            self._run(coro, name=name, timeout=timeout or self._default_timeout),
            name=name,
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _run(self, coro: Coroutine[Any, Any, Any], *, name: str, timeout: float) -> None:
        start = time.perf_counter()
        try:
            await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("background_task_timeout", task=name, timeout_s=timeout)
        except asyncio.CancelledError:
            logger.warning("background_task_cancelled", task=name)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("background_task_failed", task=name, error=str(exc), exc_info=True)
        else:
            logger.info(
                "background_task_completed",
                task=name,
                duration_ms=round((time.perf_counter() - start) * 1000, 1),
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Stop accepting work and wait for in-flight tasks.

        Tasks still running after `timeout` seconds are cancelled.
        """
        self._closed = True
        if not self._inflight:
            return

        pending = list(self._inflight)
        logger.info("background_drain_started", tasks=len(pending))
        _done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("background_drain_cancelled", tasks=len(still_running))

    async def wait_idle(self) -> None:
        """Wait for every task scheduled so far, without closing."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def reopen(self) -> None:
        self._closed = False
