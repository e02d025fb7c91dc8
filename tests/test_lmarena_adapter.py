import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from _fakes import FakePage, FakeResponse

from webai_bridge.adapters import lmarena
from webai_bridge.adapters.lmarena import LMArenaAdapter, handle_cloudflare_navigation, parse_stream_text
from webai_bridge.page_utils import attach_auth_gate, is_page_auth_locked
from webai_bridge.registry import SiteType, build_default_registry
from webai_bridge.response_watcher import CapturedResponse

STREAM_URL = "https://lmarena.test/nextjs-api/stream/create-evaluation"
GOOD_STREAM = (
    'a0:"Here you go"\n'
    'a2:[{"type":"image","image":"https://cdn.test/1.png"},{"type":"heartbeat"}]\n'
    'ad:{"finishReason":"stop"}\n'
)


class TestParseStreamText(unittest.TestCase):
    def test_text_images_and_finish(self):
        parsed = parse_stream_text(GOOD_STREAM)
        self.assertEqual(parsed["text"], "Here you go")
        self.assertEqual(parsed["images"], ["https://cdn.test/1.png"])
        self.assertEqual(parsed["finish_reason"], "stop")
        self.assertIsNone(parsed["error"])

    def test_sse_prefix_and_chunked_text(self):
        parsed = parse_stream_text('data: a0:"Hel"\n\ndata: a0:"lo"\nad:{}\n')
        self.assertEqual(parsed["text"], "Hello")
        self.assertEqual(parsed["finish_reason"], "stop")

    def test_error_line(self):
        self.assertEqual(parse_stream_text('a3:"Model is overloaded"\n')["error"], "Model is overloaded")
        self.assertEqual(parse_stream_text("a3:not json\n")["error"], "not json")

    def test_garbage_is_ignored(self):
        parsed = parse_stream_text("a0:{broken\nxx:1\na2:not-a-list\n")
        self.assertEqual((parsed["text"], parsed["images"], parsed["error"]), ("", [], None))


class TestCloudflareNavigation(unittest.IsolatedAsyncioTestCase):
    async def test_gate_held_while_challenge_clears(self):
        page = FakePage()
        attach_auth_gate(page)
        seen = []

        async def wait_challenge(p):
            seen.append(is_page_auth_locked(p))

        with patch.object(lmarena, "is_cloudflare_challenge_page", AsyncMock(return_value=True)), \
                patch.object(lmarena, "maybe_wait_for_cloudflare_challenge", AsyncMock(side_effect=wait_challenge)):
            await handle_cloudflare_navigation(page)

        self.assertEqual(seen, [True])
        self.assertFalse(is_page_auth_locked(page))

    async def test_gate_released_when_challenge_fails(self):
        page = FakePage()
        attach_auth_gate(page)
        with patch.object(lmarena, "is_cloudflare_challenge_page", AsyncMock(return_value=True)), \
                patch.object(lmarena, "maybe_wait_for_cloudflare_challenge", AsyncMock(side_effect=RuntimeError("gone"))):
            with self.assertRaises(RuntimeError):
                await handle_cloudflare_navigation(page)
        self.assertFalse(is_page_auth_locked(page))

    async def test_normal_pages_are_left_alone(self):
        page = FakePage()
        attach_auth_gate(page)
        wait = AsyncMock()
        with patch.object(lmarena, "is_cloudflare_challenge_page", AsyncMock(return_value=False)), \
                patch.object(lmarena, "maybe_wait_for_cloudflare_challenge", wait):
            await handle_cloudflare_navigation(page)
        wait.assert_not_awaited()


class TestLMArenaAdapter(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.adapter = LMArenaAdapter()
        self.adapter._select_model = AsyncMock()
        self.order = []

        self.textarea = MagicMock()
        self.textarea.fill = AsyncMock()
        self.textarea.press = AsyncMock(side_effect=lambda *_a, **_k: self.order.append("enter"))
        self.file_input = MagicMock()
        self.file_input.set_input_files = AsyncMock()
        self.page = MagicMock()
        self.page.locator.return_value.first = self.file_input

        self.wait_input = AsyncMock()
        self._patch("get_chat_textarea_locator", AsyncMock(return_value=self.textarea))
        self._patch("wait_for_input", self.wait_input)
        self.stream(200, GOOD_STREAM)

    def _patch(self, name, value):
        patcher = patch.object(lmarena, name, value)
        patcher.start()
        self.addCleanup(patcher.stop)

    def stream(self, status, body):
        async def wait_api_response(page, **kwargs):
            self.order.append("watch")
            self.watch_kwargs = kwargs
            return CapturedResponse(FakeResponse(STREAM_URL, status=status, body=body.encode("utf-8")))

        self._patch("wait_api_response", wait_api_response)

    async def _generate(self, paths=()):
        return await self.adapter.generate({"page": self.page}, "a lighthouse", list(paths), "gpt-image-1", {"id": "r1"})

    async def test_successful_generation(self):
        result = await self._generate()

        self.assertEqual(
            result,
            {"data": {"text": "Here you go", "images": ["https://cdn.test/1.png"], "finish_reason": "stop"}},
        )
        self.wait_input.assert_awaited_once()
        self.assertFalse(self.wait_input.await_args.kwargs["click"])
        self.adapter._select_model.assert_awaited_once_with(self.page, "gpt-image-1")
        self.textarea.fill.assert_awaited_once_with("a lighthouse")
        self.file_input.set_input_files.assert_not_awaited()
        self.assertEqual(self.order, ["watch", "enter"])
        self.assertEqual(self.watch_kwargs["url_match"], "/nextjs-api/stream")
        self.assertEqual(self.watch_kwargs["meta"], {"id": "r1"})

    async def test_reference_images_are_uploaded(self):
        await self._generate(["/tmp/a.png", "/tmp/b.png"])
        self.assertEqual(self.file_input.set_input_files.await_args.args[0], ["/tmp/a.png", "/tmp/b.png"])

    async def test_http_error(self):
        self.stream(429, "Too Many Requests")
        result = await self._generate()
        self.assertIn("HTTP 429", result["error"])

    async def test_upstream_error_line(self):
        self.stream(200, 'a3:"content blocked"\n')
        self.assertEqual(await self._generate(), {"error": "content blocked"})

    async def test_empty_stream(self):
        self.stream(200, 'ad:{"finishReason":"stop"}\n')
        self.assertIn("empty", (await self._generate())["error"])

    async def test_send_failure_cancels_watcher(self):
        cancelled = asyncio.Event()

        async def never(page, **kwargs):
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.set()
                raise

        self._patch("wait_api_response", never)
        self.textarea.press = AsyncMock(side_effect=RuntimeError("detached"))

        with self.assertRaises(RuntimeError):
            await self._generate()
        await asyncio.wait_for(cancelled.wait(), 1)


class TestDefaultRegistry(unittest.TestCase):
    def test_lmarena_models_and_policies(self):
        registry = build_default_registry()
        self.assertTrue(registry.supports_model(SiteType.LMARENA, "qwen-image-edit"))
        self.assertEqual(registry.get_image_policy(SiteType.LMARENA, "qwen-image-edit"), "required")
        self.assertEqual(registry.get_image_policy(SiteType.LMARENA, "imagen-4.0-generate-preview-06-06"), "forbidden")
        self.assertEqual(registry.get_navigation_handlers(SiteType.LMARENA), [handle_cloudflare_navigation])

        listed = registry.get_models_for_adapter(SiteType.LMARENA)
        self.assertEqual(listed["object"], "list")
        self.assertIn("gpt-image-1", [m["id"] for m in listed["data"]])

    def test_target_url_prefers_worker_override(self):
        registry = build_default_registry()
        config = {"sites": {"lmarena": {"url": "https://site.test/"}}}
        self.assertEqual(registry.get_target_url(SiteType.LMARENA, config), "https://site.test/")
        self.assertEqual(
            registry.get_target_url(SiteType.LMARENA, config, {"url": "https://worker.test/"}),
            "https://worker.test/",
        )


if __name__ == "__main__":
    unittest.main()
