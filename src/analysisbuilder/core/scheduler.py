"""Debounced, generation-checked execution of analysis configurations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Generic, Literal, TypeVar

from .settings import DEFAULT_DEBOUNCE_MS

logger = logging.getLogger(__name__)

ExecutionStatus = Literal["idle", "debouncing", "loading", "refreshing", "success", "error"]

ConfigT = TypeVar("ConfigT")
ResultT = TypeVar("ResultT")


class DebounceTimer:
    """Invoke ``callback`` once ``delay_ms`` has passed without a restart."""

    def __init__(self, delay_ms: int, callback: Callable[[], None]) -> None:
        if delay_ms < 0:
            raise ValueError("delay_ms must be non-negative")
        self.delay_ms = delay_ms
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def restart(self) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay_ms / 1000, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._callback()


class ExecutionScheduler(Generic[ConfigT, ResultT]):
    """Run the latest configuration after a quiet period.

    Every execution is stamped with a generation number.  Scheduling,
    running or clearing starts a new generation, and an execution that
    finishes after its generation was superseded is discarded, so results
    never land out of order.  In-flight work is not cancelled.

    A result object exposing ``status == "error"`` moves the scheduler to the
    ``error`` state, as does an exception from ``runner``.
    """

    def __init__(
        self,
        runner: Callable[[ConfigT], Awaitable[ResultT]],
        *,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        on_change: Callable[[ExecutionScheduler[ConfigT, ResultT]], None] | None = None,
    ) -> None:
        self._runner = runner
        self._on_change = on_change
        self._timer = DebounceTimer(debounce_ms, self._on_timer)
        self._generation = 0
        self._pending_config: ConfigT | None = None
        self._last_config: ConfigT | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self.status: ExecutionStatus = "idle"
        self.result: ResultT | None = None
        self.error: BaseException | str | None = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_busy(self) -> bool:
        return self._timer.pending or any(not task.done() for task in self._tasks)

    def _set_status(self, status: ExecutionStatus) -> None:
        self.status = status
        if self._on_change is not None:
            self._on_change(self)

    def schedule(self, config: ConfigT | None) -> None:
        """Debounce execution of ``config``; ``None`` clears the scheduler."""

        if config is None:
            self.clear()
            return
        if not self._timer.pending and config == self._last_config and self.status in ("success", "loading", "refreshing"):
            logger.debug("Configuration unchanged; skipping execution")
            return
        self._pending_config = config
        self._generation += 1
        self._timer.restart()
        self._set_status("debouncing")

    def _on_timer(self) -> None:
        config = self._pending_config
        self._pending_config = None
        if config is None:
            return
        task = asyncio.get_running_loop().create_task(self._execute(config))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def run_now(self, config: ConfigT) -> ResultT | None:
        """Skip the debounce and execute ``config`` immediately.

        Returns ``None`` when a newer generation superseded this one.
        """

        self._timer.cancel()
        self._pending_config = None
        return await self._execute(config)

    async def _execute(self, config: ConfigT) -> ResultT | None:
        self._generation += 1
        generation = self._generation
        self._last_config = config
        self._set_status("refreshing" if self.result is not None else "loading")

        try:
            result = await self._runner(config)
        except Exception as exc:
            if generation != self._generation:
                logger.debug("Discarding error from stale generation %s", generation)
                return None
            logger.warning("Execution failed: %s", exc)
            self.error = exc
            self._last_config = None
            self._set_status("error")
            return None

        if generation != self._generation:
            logger.debug("Discarding result from stale generation %s", generation)
            return None
        self.result = result
        if getattr(result, "status", None) == "error":
            self.error = getattr(result, "error", None)
            self._last_config = None
            self._set_status("error")
        else:
            self.error = None
            self._set_status("success")
        return result

    def clear(self) -> None:
        """Cancel any pending run, invalidate in-flight runs and reset state."""

        self._timer.cancel()
        self._pending_config = None
        self._last_config = None
        self._generation += 1
        self.result = None
        self.error = None
        self._set_status("idle")

    async def wait(self) -> None:
        """Wait until no debounce is pending and every started run finished."""

        while self.is_busy:
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            else:
                await asyncio.sleep(self._timer.delay_ms / 1000)


__all__ = ["DebounceTimer", "ExecutionScheduler", "ExecutionStatus"]
