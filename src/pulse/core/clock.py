from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol

import simpy
import simpy.rt


class Clock(Protocol):
    def now_ms(self) -> float: ...
    def every(self, interval_s: float, callback: Callable[[], None]) -> TimerHandle: ...
    def after(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle: ...


class TimerHandle:
    """
    Cancellable wrapper around a SimPy timer process.
    """

    def __init__(self, env: simpy.Environment, proc: simpy.Process) -> None:
        self._env = env
        self._proc = proc
        self.cancelled = False

    @property
    def active(self) -> bool:
        return not self.cancelled and self._proc.is_alive

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        # a process may not interrupt itself (callback cancelling its own timer)
        if self._proc.is_alive and self._env.active_process is not self._proc:
            self._proc.interrupt("cancelled")


class SimClock:
    """
    Wall-clock view over a SimPy environment.

    env.now is seconds since `start_epoch_ms`; wire timestamps are epoch ms.
    """

    def __init__(self, env: simpy.Environment, start_epoch_ms: float | None = None) -> None:
        self.env = env
        self.start_epoch_ms = time.time() * 1000.0 if start_epoch_ms is None else start_epoch_ms

    def now_ms(self) -> float:
        return self.start_epoch_ms + float(self.env.now) * 1000.0

    def every(self, interval_s: float, callback: Callable[[], None]) -> TimerHandle:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        handle = TimerHandle(self.env, self.env.process(self._every_proc(interval_s, callback)))
        return handle

    def after(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle:
        return TimerHandle(self.env, self.env.process(self._after_proc(delay_s, callback)))

    def _every_proc(self, interval_s: float, callback: Callable[[], None]):
        try:
            while True:
                yield self.env.timeout(interval_s)
                callback()
        except simpy.Interrupt:
            return

    def _after_proc(self, delay_s: float, callback: Callable[[], None]):
        try:
            yield self.env.timeout(max(0.0, delay_s))
        except simpy.Interrupt:
            return
        callback()


def realtime_environment(factor: float = 1.0) -> simpy.rt.RealtimeEnvironment:
    """
    Environment for live hosts: one simulation second per `factor` wall seconds.
    strict=False so a slow network call does not abort the run.
    """
    return simpy.rt.RealtimeEnvironment(factor=factor, strict=False)
