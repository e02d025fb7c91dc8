import asyncio
import json
import re
from typing import List, Optional

from ..browser_automation import debug_print, is_cloudflare_challenge_page, maybe_wait_for_cloudflare_challenge
from ..constants import Timeouts
from ..page_utils import lock_page_auth, safe_click, unlock_page_auth, wait_for_input
from ..registry import SiteAdapter, SiteType
from ..response_watcher import wait_api_response

STREAM_URL_MATCH = "/nextjs-api/stream"

LMARENA_ERROR_TEXT = (
    "Something went wrong",
    "Too many requests",
    re.compile(r"rate limit", re.IGNORECASE),
)

LMARENA_MODELS = (
    {"id": "gemini-2.5-flash-image-preview", "image_policy": "optional", "type": "image"},
    {"id": "gpt-image-1", "image_policy": "optional", "type": "image"},
    {"id": "imagen-4.0-generate-preview-06-06", "image_policy": "forbidden", "type": "image"},
    {"id": "flux-1-kontext-pro", "image_policy": "optional", "type": "image"},
    {"id": "seedream-4-high-res", "image_policy": "optional", "type": "image"},
    {"id": "qwen-image-edit", "image_policy": "required", "type": "image"},
)


async def get_chat_textarea_locator(page):  # noqa: ANN001
    for selector in ("textarea[name='message']", "textarea[placeholder*='Ask']"):
        locator = page.locator(selector).first
        try:
            if await locator.count():
                return locator
        except Exception:
            pass
    return page.locator("textarea").first


async def handle_cloudflare_navigation(page) -> None:  # noqa: ANN001
    """Hold the auth gate while a Cloudflare interstitial is being cleared."""
    if not await is_cloudflare_challenge_page(page):
        return
    lock_page_auth(page)
    try:
        debug_print("  🛡️ Cloudflare challenge detected, waiting for it to clear...")
        await maybe_wait_for_cloudflare_challenge(page)
    finally:
        unlock_page_auth(page)


def parse_stream_text(text: str) -> dict:
    """
    Collect text, image URLs, finish reason and upstream error from `a0:`/`a2:`/`a3:`/`ad:` lines.
    """
    response_text = ""
    images: List[str] = []
    finish_reason: Optional[str] = None
    error_message: Optional[str] = None

    for line in str(text or "").splitlines():
        line = line.strip()
        if line.startswith("data:"):
            line = line[5:].lstrip()
        if not line:
            continue

        if line.startswith("a0:"):
            try:
                response_text += str(json.loads(line[3:]) or "")
            except json.JSONDecodeError:
                continue
        elif line.startswith("a2:"):
            try:
                image_list = json.loads(line[3:])
            except json.JSONDecodeError:
                continue
            if isinstance(image_list, list):
                for image_obj in image_list:
                    if isinstance(image_obj, dict) and image_obj.get("type") == "image":
                        image_url = str(image_obj.get("image") or "").strip()
                        if image_url:
                            images.append(image_url)
        elif line.startswith("a3:"):
            try:
                error_message = str(json.loads(line[3:]))
            except json.JSONDecodeError:
                error_message = line[3:]
        elif line.startswith("ad:"):
            try:
                metadata = json.loads(line[3:])
            except json.JSONDecodeError:
                metadata = None
            finish_reason = "stop"
            if isinstance(metadata, dict) and metadata.get("finishReason"):
                finish_reason = str(metadata["finishReason"])

    return {
        "text": response_text,
        "images": images,
        "finish_reason": finish_reason,
        "error": error_message,
    }


class LMArenaAdapter(SiteAdapter):
    site_type = SiteType.LMARENA
    models = LMARENA_MODELS

    def get_navigation_handlers(self):
        return [handle_cloudflare_navigation]

    async def _select_model(self, page, model_id: str) -> None:  # noqa: ANN001
        trigger = page.locator("button[aria-haspopup='listbox'], button[role='combobox']").first
        if not await safe_click(page, trigger):
            debug_print(f"  ⚠️ Model picker not found, keeping the current model (wanted {model_id})")
            return
        try:
            await page.keyboard.type(model_id)
        except Exception:
            pass
        if not await safe_click(page, page.get_by_role("option", name=model_id)):
            debug_print(f"  ⚠️ Model option {model_id} not found")
            try:
                await page.keyboard.press("Escape")
            except Exception:
                pass

    async def generate(self, ctx, prompt, paths, model_id, meta):  # noqa: ANN001
        page = ctx["page"]
        meta = meta or {}

        textarea = await get_chat_textarea_locator(page)
        await wait_for_input(page, textarea, timeout_ms=Timeouts.INPUT_WAIT, click=False)
        await self._select_model(page, model_id)

        if paths:
            debug_print(f"  📎 Attaching {len(paths)} image(s)")
            file_input = page.locator("input[type='file']").first
            await file_input.set_input_files(list(paths), timeout=Timeouts.UPLOAD_CONFIRM)

        await textarea.fill(str(prompt or ""))

        watch = asyncio.create_task(
            wait_api_response(
                page,
                url_match=STREAM_URL_MATCH,
                method="POST",
                timeout_ms=Timeouts.API_RESPONSE,
                error_text=LMARENA_ERROR_TEXT,
                meta=meta,
            )
        )
        # Let the watcher register its listeners before the request can fire.
        await asyncio.sleep(0)
        try:
            await textarea.press("Enter")
        except Exception:
            watch.cancel()
            raise

        response = await watch
        status = int(response.status or 0)
        text = await response.text()
        if status >= 400:
            return {"error": f"lmarena returned HTTP {status}: {text[:200]}"}

        parsed = parse_stream_text(text)
        if parsed["error"]:
            return {"error": parsed["error"]}
        if not parsed["text"] and not parsed["images"]:
            return {"error": "lmarena returned an empty response"}
        return {"data": {"text": parsed["text"], "images": parsed["images"], "finish_reason": parsed["finish_reason"] or "stop"}}
