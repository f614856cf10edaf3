from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class PeriodicJob:
    name: str
    interval_s: float
    fn: Callable[[], object]
    last_run: float | None = None

    def due(self, now: float) -> bool:
        return self.last_run is None or now - self.last_run >= self.interval_s


class Scheduler:
    """Timer-driven loop that fires registered jobs on their interval.

    Each job is expected to be idempotent and to pick its work up from
    persisted state, so a missed or repeated tick is harmless.
    """

    def __init__(
        self,
        check_s: float = 1.0,
        status_fn: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.check_s = check_s
        self.status_fn = status_fn
        self.clock = clock
        self.jobs: list[PeriodicJob] = []
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def add_job(self, name: str, interval_s: float, fn: Callable[[], object]) -> PeriodicJob:
        job = PeriodicJob(name=name, interval_s=interval_s, fn=fn)
        self.jobs.append(job)
        return job

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2)

    def run_forever(self) -> None:
        self._loop()

    def run_pending(self) -> list[str]:
        """Run every due job once; returns the names of the jobs that ran."""
        ran: list[str] = []
        for job in self.jobs:
            now = self.clock()
            if not job.due(now):
                continue
            job.last_run = now
            try:
                job.fn()
            except Exception as exc:  # noqa: BLE001
                self._status(f"{job.name} tick failed: {exc}")
            ran.append(job.name)
        return ran

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_pending()
            self._stop_event.wait(self.check_s)

    def _status(self, message: str) -> None:
        if self.status_fn:
            self.status_fn(message)
