import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from oka.scheduler import Scheduler


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class SchedulerTests(unittest.TestCase):
    def test_jobs_run_on_their_interval(self) -> None:
        clock = FakeClock()
        scheduler = Scheduler(clock=clock)
        calls: list[str] = []
        scheduler.add_job("worker", 10, lambda: calls.append("worker"))
        scheduler.add_job("maintenance", 60, lambda: calls.append("maintenance"))

        self.assertEqual(scheduler.run_pending(), ["worker", "maintenance"])
        clock.now = 5
        self.assertEqual(scheduler.run_pending(), [])
        clock.now = 10
        self.assertEqual(scheduler.run_pending(), ["worker"])
        clock.now = 61
        self.assertEqual(scheduler.run_pending(), ["worker", "maintenance"])
        self.assertEqual(calls.count("worker"), 3)

    def test_failing_job_is_reported_and_loop_continues(self) -> None:
        messages: list[str] = []
        scheduler = Scheduler(status_fn=messages.append, clock=FakeClock())

        def boom() -> None:
            raise RuntimeError("disk full")

        scheduler.add_job("maintenance", 60, boom)
        calls: list[int] = []
        scheduler.add_job("worker", 10, lambda: calls.append(1))
        self.assertEqual(scheduler.run_pending(), ["maintenance", "worker"])
        self.assertEqual(calls, [1])
        self.assertEqual(messages, ["maintenance tick failed: disk full"])

    def test_start_and_stop_thread(self) -> None:
        calls: list[int] = []
        scheduler = Scheduler(check_s=0.01)
        scheduler.add_job("worker", 1000, lambda: calls.append(1))
        scheduler.start()
        scheduler.stop()
        self.assertLessEqual(len(calls), 1)


if __name__ == "__main__":
    unittest.main()
