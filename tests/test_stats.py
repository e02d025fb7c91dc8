import json
import tempfile
import unittest
from datetime import date
from pathlib import Path
from unittest.mock import patch

from webai_bridge.stats import RequestStats


class TestRequestStats(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.data_dir = Path(self._tmp.name)
        self.today = date(2024, 3, 1)
        patcher = patch.object(RequestStats, "_current_date", side_effect=lambda: self.today)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _write(self, day, success, failed):
        log_dir = self.data_dir / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        (log_dir / f"stats_{day}.json").write_text(json.dumps({"success": success, "failed": failed}), encoding="utf-8")

    def test_counts_are_persisted_per_day(self):
        stats = RequestStats(self.data_dir)
        stats.increment_success()
        stats.increment_success()
        stats.increment_failed()

        self.assertEqual(stats.get_today_stats(), {"success": 2, "failed": 1})
        saved = json.loads((self.data_dir / "logs" / "stats_2024-03-01.json").read_text(encoding="utf-8"))
        self.assertEqual(saved, {"success": 2, "failed": 1})

    def test_load_today_resumes_existing_file(self):
        self._write("2024-03-01", 5, 2)
        stats = RequestStats(self.data_dir)
        self.assertEqual(stats.load_today_stats(), {"success": 5, "failed": 2})
        stats.increment_failed()
        self.assertEqual(stats.get_today_stats(), {"success": 5, "failed": 3})

    def test_corrupt_file_reads_as_zero(self):
        log_dir = self.data_dir / "logs"
        log_dir.mkdir(parents=True)
        (log_dir / "stats_2024-03-01.json").write_text("{not json", encoding="utf-8")
        self.assertEqual(RequestStats(self.data_dir).load_today_stats(), {"success": 0, "failed": 0})

    def test_rollover_starts_a_new_day(self):
        stats = RequestStats(self.data_dir)
        stats.load_today_stats()
        stats.increment_success()

        self.today = date(2024, 3, 2)
        self.assertEqual(stats.get_today_stats(), {"success": 0, "failed": 0})
        stats.increment_failed()

        self.assertEqual(stats.get_today_stats(), {"success": 0, "failed": 1})
        self.assertEqual(stats.get_stats_range("2024-03-01", "2024-03-01"), {"success": 1, "failed": 0, "days": 1})

    def test_range_sums_existing_days(self):
        self._write("2024-02-28", 1, 1)
        self._write("2024-03-01", 4, 0)
        stats = RequestStats(self.data_dir)

        self.assertEqual(
            stats.get_stats_range("2024-02-27", date(2024, 3, 1)),
            {"success": 5, "failed": 1, "days": 2},
        )
        self.assertEqual(stats.get_stats_range("2024-03-02", "2024-03-01"), {"success": 0, "failed": 0, "days": 0})
        with self.assertRaises(ValueError):
            stats.get_stats_range("yesterday", "2024-03-01")

    def test_range_is_capped_at_a_year(self):
        self._write("2023-03-02", 1, 0)
        stats = RequestStats(self.data_dir)
        self.assertEqual(stats.get_stats_range("2023-03-02", "2024-03-01")["days"], 1)
        with self.assertRaises(ValueError):
            stats.get_stats_range("0001-01-01", "9999-12-31")
        with self.assertRaises(ValueError):
            stats.clear_stats_range("2023-01-01", "2024-03-01")

    def test_clear_range_removes_files_and_resets_today(self):
        self._write("2024-02-29", 3, 0)
        stats = RequestStats(self.data_dir)
        stats.load_today_stats()
        stats.increment_success()

        self.assertEqual(stats.clear_stats_range("2024-02-28", "2024-03-01"), {"deleted": 2})
        self.assertEqual(stats.get_today_stats(), {"success": 0, "failed": 0})
        self.assertEqual(list((self.data_dir / "logs").iterdir()), [])


if __name__ == "__main__":
    unittest.main()
