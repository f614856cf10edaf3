import json
import os
import sys
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from oka.locks import WorkerLease, read_lease


class WorkerLeaseTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.path = Path(self.temp_dir.name) / "background_worker.lock"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_acquire_is_exclusive_until_released(self) -> None:
        first = WorkerLease(self.path)
        second = WorkerLease(self.path)
        self.assertTrue(first.acquire())
        self.assertTrue(first.held)
        self.assertFalse(second.acquire())
        info = read_lease(self.path)
        self.assertEqual(info.pid, os.getpid())
        self.assertIsNotNone(info.acquired_at)
        first.release()
        self.assertFalse(self.path.exists())
        self.assertTrue(second.acquire())
        second.release()

    def test_lease_without_owner_is_stale(self) -> None:
        self.path.write_text("{}", encoding="utf-8")
        lease = WorkerLease(self.path)
        self.assertTrue(lease.acquire())
        lease.release()

    def test_old_lease_from_live_process_expires(self) -> None:
        acquired = datetime.now(timezone.utc) - timedelta(hours=2)
        self.path.write_text(
            json.dumps({"pid": os.getpid(), "acquired_at": acquired.isoformat()}),
            encoding="utf-8",
        )
        self.assertFalse(WorkerLease(self.path, stale_after_s=None).acquire())
        lease = WorkerLease(self.path, stale_after_s=3600)
        self.assertTrue(lease.acquire())
        lease.release()

    def test_context_manager_releases(self) -> None:
        lease = WorkerLease(self.path)
        self.assertTrue(lease.acquire())
        with lease:
            self.assertTrue(self.path.exists())
        self.assertFalse(self.path.exists())
        self.assertFalse(lease.held)


if __name__ == "__main__":
    unittest.main()
