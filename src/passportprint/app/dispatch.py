"""
How image operations are run and how their results come back.

All session state lives on one thread of control (the Tk main loop in the GUI).
Image operations run on a worker thread and their outcome is posted back with
`scheduler.after(0, ...)`, the same way a Tk widget's `after` is used, so state is
only ever touched from the UI thread. Timers for the adjustment coalescer use the
same scheduler.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import traceback
from typing import Any, Callable, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

SuccessCallback = Callable[[Any], None]
ErrorCallback = Callable[[BaseException], None]


class Scheduler(Protocol):
    """The subset of tkinter.Misc used for timers (`Tk` satisfies it)."""

    def after(self, ms: int, func: Callable[[], None]) -> Any:
        ...

    def after_cancel(self, id: Any) -> None:
        ...


class Dispatcher(Protocol):
    def submit(self, fn: Callable[[], Any], on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        ...


class ThreadDispatcher:
    """Run each call on a daemon thread; deliver the outcome on the scheduler's thread."""

    def __init__(self, scheduler: Scheduler):
        self.scheduler = scheduler

    def submit(self, fn: Callable[[], Any], on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        def worker() -> None:
            err: Optional[BaseException] = None
            result: Any = None
            try:
                result = fn()
            except Exception as e:
                err = e
                logger.debug("Worker call failed:\n%s", traceback.format_exc())

            def finish_on_ui_thread() -> None:
                if err is not None:
                    on_error(err)
                else:
                    on_success(result)

            self.scheduler.after(0, finish_on_ui_thread)

        threading.Thread(target=worker, daemon=True).start()


class InlineDispatcher:
    """Run calls synchronously on the caller's thread (CLI and tests)."""

    def submit(self, fn: Callable[[], Any], on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        try:
            result = fn()
        except Exception as e:
            on_error(e)
            return
        on_success(result)


class ManualScheduler:
    """
    Virtual-clock scheduler. Nothing fires until `advance()` (or `run_pending()`),
    which makes timer behaviour deterministic for headless runs and tests.
    """

    def __init__(self) -> None:
        self.now = 0
        self._queue: List[Tuple[int, int, Callable[[], None]]] = []
        self._ids = itertools.count(1)
        self._cancelled: set = set()

    def after(self, ms: int, func: Callable[[], None]) -> int:
        timer_id = next(self._ids)
        heapq.heappush(self._queue, (self.now + max(0, int(ms)), timer_id, func))
        return timer_id

    def after_cancel(self, id: Any) -> None:
        self._cancelled.add(id)

    @property
    def pending(self) -> int:
        return sum(1 for _, tid, _ in self._queue if tid not in self._cancelled)

    def advance(self, ms: int) -> None:
        """Move the clock forward by `ms`, firing every timer that comes due, in order."""
        deadline = self.now + ms
        while self._queue and self._queue[0][0] <= deadline:
            due, timer_id, func = heapq.heappop(self._queue)
            self.now = max(self.now, due)
            if timer_id in self._cancelled:
                self._cancelled.discard(timer_id)
                continue
            func()
        self.now = deadline

    def run_pending(self) -> None:
        """Fire everything queued, including timers queued while firing."""
        while self._queue:
            self.advance(max(0, self._queue[0][0] - self.now))
