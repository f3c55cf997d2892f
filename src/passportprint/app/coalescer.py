from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Set, Tuple

from passportprint.app.dispatch import Dispatcher, Scheduler
from passportprint.core.models import AdjustmentParams

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MS = 300

# Called on the UI thread when a request fires; returns the blocking call to run.
PrepareRequest = Callable[[AdjustmentParams], Callable[[], Any]]
ResultCallback = Callable[[int, AdjustmentParams, Any], None]
ErrorCallback = Callable[[int, AdjustmentParams, BaseException], None]
# Called when a response is dropped without reaching on_result or on_error.
SettledCallback = Callable[[int], None]


class AdjustmentCoalescer:
    """
    Collapse a burst of slider changes into one adjust request per quiet window.

    `schedule()` replaces the pending parameters and restarts a trailing-edge timer;
    nothing is sent until the window passes without another change. Every
    `schedule()` takes a new, strictly increasing sequence number. A response is
    applied only if its sequence number is above the last one applied, so a slow
    response to an old request never overwrites a newer one.
    Dropped responses still reach `on_settled`, so a caller tracking `busy` can
    refresh it.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        dispatcher: Dispatcher,
        prepare: PrepareRequest,
        on_result: ResultCallback,
        on_error: Optional[ErrorCallback] = None,
        on_settled: Optional[SettledCallback] = None,
        window_ms: int = DEFAULT_WINDOW_MS,
    ):
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        self.prepare = prepare
        self.on_result = on_result
        self.on_error = on_error
        self.on_settled = on_settled
        self.window_ms = window_ms

        self._seq = 0
        self._applied_seq = 0
        self._pending: Optional[Tuple[int, AdjustmentParams]] = None
        self._timer: Any = None
        self._in_flight: Set[int] = set()

    # ---------- state ----------

    @property
    def pending(self) -> Optional[AdjustmentParams]:
        return self._pending[1] if self._pending else None

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def busy(self) -> bool:
        return self._pending is not None or bool(self._in_flight)

    @property
    def last_sequence(self) -> int:
        return self._seq

    @property
    def applied_sequence(self) -> int:
        return self._applied_seq

    # ---------- operations ----------

    def schedule(self, params: AdjustmentParams) -> int:
        """Queue `params` (a fresh snapshot) and restart the window. Returns its sequence number."""
        self._seq += 1
        self._pending = (self._seq, params)
        self._cancel_timer()
        self._timer = self.scheduler.after(self.window_ms, self._fire)
        return self._seq

    def flush(self) -> None:
        """Send the pending request now instead of waiting for the window."""
        if self._pending is None:
            return
        self._cancel_timer()
        self._fire()

    def cancel(self) -> None:
        """Drop the pending request and ignore every response still in flight."""
        self._cancel_timer()
        self._pending = None
        self._applied_seq = self._seq
        self._in_flight.clear()

    # ---------- internals ----------

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self.scheduler.after_cancel(self._timer)
            self._timer = None

    def _fire(self) -> None:
        self._timer = None
        if self._pending is None:
            return
        seq, params = self._pending
        self._pending = None

        try:
            call = self.prepare(params)
        except Exception as e:
            self._report_error(seq, params, e)
            return

        self._in_flight.add(seq)
        logger.debug("Sending adjust request #%d %s", seq, params)
        self.dispatcher.submit(
            call,
            on_success=lambda result: self._resolve(seq, params, result),
            on_error=lambda err: self._reject(seq, params, err),
        )

    def _resolve(self, seq: int, params: AdjustmentParams, result: Any) -> None:
        self._in_flight.discard(seq)
        if seq <= self._applied_seq:
            logger.debug("Discarding stale adjust response #%d (applied #%d)", seq, self._applied_seq)
            self._settled(seq)
            return
        self._applied_seq = seq
        self.on_result(seq, params, result)

    def _reject(self, seq: int, params: AdjustmentParams, err: BaseException) -> None:
        self._in_flight.discard(seq)
        if seq < self._seq or seq <= self._applied_seq:
            logger.debug("Ignoring error from superseded adjust request #%d: %s", seq, err)
            self._settled(seq)
            return
        self._report_error(seq, params, err)

    def _settled(self, seq: int) -> None:
        if self.on_settled is not None:
            self.on_settled(seq)

    def _report_error(self, seq: int, params: AdjustmentParams, err: BaseException) -> None:
        logger.warning("Adjust request #%d failed: %s", seq, err)
        if self.on_error is not None:
            self.on_error(seq, params, err)
