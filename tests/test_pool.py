import unittest
from unittest.mock import AsyncMock, MagicMock, patch

import webai_bridge.worker as worker_module
from _fakes import TAG1, TAG2, FakeAdapter, FakeLauncher, FakePage, build_registry, make_live, settle

from webai_bridge.errors import ReinitFailedError
from webai_bridge.pool import WorkerPool
from webai_bridge.stats import RequestStats


def _config(*workers):
    return {"pool": {"workers": list(workers)}}


class TestWorkerPool(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.lmarena = FakeAdapter(TAG1, ["foo", "bar"])
        self.gemini = FakeAdapter(TAG2, ["foo", "baz"])
        self.registry = build_registry(self.lmarena, self.gemini)
        self.stats = MagicMock(spec=RequestStats)

    def _pool(self, *workers):
        return WorkerPool(_config(*workers), registry=self.registry, stats=self.stats, login_mode=False)

    def test_duplicate_names_rejected(self):
        with self.assertRaises(ValueError):
            self._pool({"name": "a", "type": "lmarena"}, {"name": "a", "type": "gemini_biz"})

    def test_instances_group_workers(self):
        pool = self._pool(
            {"name": "a", "type": "lmarena", "instance": "x"},
            {"name": "b", "type": "gemini_biz", "instance": "x"},
            {"name": "c", "type": "lmarena"},
        )
        self.assertEqual(pool.instances, {"x": ["a", "b"], "c": ["c"]})
        self.assertEqual(pool.workers["b"].owner_name, "a")
        self.assertIsNone(pool.workers["c"].owner_name)
        self.assertEqual(len(pool), 3)

    def test_candidates_prefer_least_busy(self):
        pool = self._pool({"name": "a", "type": "lmarena"}, {"name": "b", "type": "gemini_biz"})
        self.assertEqual([w.name for w in pool.get_candidates("foo")], ["a", "b"])

        pool.workers["a"].busy_count = 2
        self.assertEqual([w.name for w in pool.get_candidates("foo")], ["b", "a"])
        self.assertEqual([w.name for w in pool.get_candidates("bar")], ["a"])
        self.assertEqual(pool.get_candidates("nope"), [])

    async def test_generate_records_success_and_failure(self):
        pool = self._pool({"name": "a", "type": "lmarena"})
        make_live(pool.workers["a"])

        result = await pool.generate({}, "p", [], "foo", {})
        self.assertEqual(result, {"data": {"text": "lmarena"}})
        self.stats.increment_success.assert_called_once_with()

        self.lmarena.generate = AsyncMock(return_value={"error": "upstream said no"})
        result = await pool.generate({}, "p", [], "foo", {})
        self.assertEqual(result, {"error": "upstream said no"})
        self.stats.increment_failed.assert_called_once_with()

    async def test_unsupported_model(self):
        pool = self._pool({"name": "a", "type": "lmarena"})
        result = await pool.generate({}, "p", [], "baz", {})
        self.assertEqual(result, {"error": "unsupported model: baz"})
        self.assertFalse(pool.supports("baz"))
        self.stats.increment_failed.assert_called_once_with()

    async def test_reinit_failure_is_raised_and_counted(self):
        pool = self._pool({"name": "a", "type": "lmarena"})
        pool.workers["a"].recover = AsyncMock(side_effect=ReinitFailedError("gone"))

        with self.assertRaises(ReinitFailedError):
            await pool.generate({}, "p", [], "foo", {})
        self.stats.increment_failed.assert_called_once_with()

    async def test_stats_errors_do_not_fail_requests(self):
        pool = self._pool({"name": "a", "type": "lmarena"})
        make_live(pool.workers["a"])
        self.stats.increment_success.side_effect = OSError("disk full")

        result = await pool.generate({}, "p", [], "foo", {})
        self.assertEqual(result, {"data": {"text": "lmarena"}})

    def test_models_are_deduplicated(self):
        pool = self._pool({"name": "a", "type": "lmarena"}, {"name": "b", "type": "gemini_biz"})
        ids = [m["id"] for m in pool.get_models()]
        self.assertEqual(ids.count("foo"), 1)
        self.assertIn("lmarena/bar", ids)
        self.assertIn("gemini_biz/baz", ids)

    def test_policy_and_type_lookups(self):
        self.gemini.models = ({"id": "baz", "image_policy": "required", "type": "text"},)
        pool = self._pool({"name": "a", "type": "lmarena"}, {"name": "b", "type": "gemini_biz"})
        self.assertEqual(pool.get_image_policy("baz"), "required")
        self.assertEqual(pool.get_model_type("baz"), "text")
        self.assertEqual(pool.get_image_policy("nope"), "optional")
        self.assertEqual(pool.get_model_type("nope"), "image")

    async def test_init_skips_instance_whose_owner_fails(self):
        launcher = FakeLauncher()
        pool = self._pool(
            {"name": "a", "type": "lmarena", "instance": "x"},
            {"name": "b", "type": "lmarena", "instance": "x"},
            {"name": "c", "type": "gemini_biz"},
        )
        calls = []

        async def launch(global_config, *, user_data_dir, instance_name="", proxy=None):
            calls.append(instance_name)
            if instance_name == "x":
                raise RuntimeError("profile locked")
            return await launcher(global_config, user_data_dir=user_data_dir, instance_name=instance_name, proxy=proxy)

        with patch.object(worker_module, "launch_browser_session", new=launch):
            await pool.init()

        self.assertEqual(calls, ["x", "c"])
        self.assertFalse(pool.workers["a"].is_live())
        self.assertFalse(pool.workers["b"].is_live())
        self.assertTrue(pool.workers["c"].is_live())
        states = {d["name"]: d["state"] for d in pool.describe()}
        self.assertEqual(states, {"a": "uninitialized", "b": "uninitialized", "c": "ready"})

        session = pool.workers["c"].session
        await pool.close()
        self.assertTrue(session.is_closed())

    async def test_idle_merge_worker_returns_to_monitor(self):
        pool = self._pool({
            "name": "m",
            "type": "merge",
            "merge_types": ["lmarena", "gemini_biz"],
            "merge_monitor": "gemini_biz",
        })
        page = FakePage()
        page.url = "https://lmarena.test/c/1"
        make_live(pool.workers["m"], page)

        await pool.generate({}, "p", [], "lmarena/foo", {})
        await settle()

        self.assertEqual(page.url, "https://gemini_biz.test/")


if __name__ == "__main__":
    unittest.main()
