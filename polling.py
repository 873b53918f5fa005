"""Cancellable recurring fetch tasks."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional


class PollSubscription:
    """Runs ``tick`` every ``interval_s`` seconds until cancelled.

    The owner cancels it exactly once; later ``cancel()`` calls are no-ops.
    ``alive`` goes false the moment ``cancel()`` is called, so a tick that
    was already awaiting a fetch can check it before touching any state.
    Errors raised by ``tick`` are logged and the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        tick: Callable[[], Awaitable[None]],
        interval_s: float,
        initial_delay_s: float = 0.0,
    ) -> None:
        self.name = name
        self.interval_s = interval_s
        self._tick = tick
        self._initial_delay_s = initial_delay_s
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def alive(self) -> bool:
        return not self._cancelled

    @property
    def started(self) -> bool:
        return self._task is not None

    def start(self) -> "PollSubscription":
        if self._cancelled:
            raise RuntimeError(f"{self.name} was already cancelled")
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        return self

    async def _run(self) -> None:
        if self._initial_delay_s > 0:
            await asyncio.sleep(self._initial_delay_s)
        while not self._cancelled:
            try:
                await self._tick()
            except Exception as exc:
                print(f"[poll] {self.name} tick error: {exc}")
            if self._cancelled:
                break
            await asyncio.sleep(self.interval_s)

    def cancel(self) -> bool:
        """Stop the loop. Returns False if it had already been cancelled."""
        if self._cancelled:
            return False
        self._cancelled = True
        task = self._task
        if task is None or task.done():
            return True
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # A tick cancelling its own subscription just lets the loop fall out.
        if task is not current:
            task.cancel()
        return True

    async def wait_closed(self) -> None:
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
