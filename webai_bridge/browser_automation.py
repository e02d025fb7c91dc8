import asyncio
import sys
import builtins as _builtins
from pathlib import Path
from typing import Any, Callable, List

from camoufox.async_api import AsyncCamoufox

from .errors import SessionLostError

# ============================================================
# LOGGING HELPER
# ============================================================
DEBUG = True

def _safe_print(*args, **kwargs) -> None:
    """
    Print without crashing on Windows console encoding issues.
    """
    try:
        _builtins.print(*args, **kwargs)
    except UnicodeEncodeError:
        file = kwargs.get("file") or sys.stdout
        sep = kwargs.get("sep", " ")
        end = kwargs.get("end", "\n")
        flush = bool(kwargs.get("flush", False))

        try:
            text = sep.join(str(a) for a in args) + end
            encoding = getattr(file, "encoding", None) or getattr(sys.stdout, "encoding", None) or "utf-8"
            safe_text = text.encode(encoding, errors="backslashreplace").decode(encoding, errors="ignore")
            file.write(safe_text)
            if flush:
                try:
                    file.flush()
                except Exception:
                    pass
        except Exception:
            return

def debug_print(*args, **kwargs):
    if DEBUG:
        _safe_print(*args, **kwargs)

def set_debug(enabled: bool) -> None:
    global DEBUG
    DEBUG = bool(enabled)

# ============================================================
# CONSTANTS
# ============================================================
WEBDRIVER_STEALTH_INIT_SCRIPT = "Object.defineProperty(navigator, 'webdriver', {get: () => undefined});"

CLOUDFLARE_CHALLENGE_TITLES = ("Just a moment", "Attention Required")

# ============================================================
# PHYSICAL SESSION HANDLE
# ============================================================

class BrowserSession:
    """
    One launched Camoufox persistent context.

    Several workers may open pages on the same session; only the worker that launched it
    registers close callbacks and recreates it after a crash.
    """

    def __init__(self, browser_cm, context, *, instance_name: str = "") -> None:  # noqa: ANN001
        self._browser_cm = browser_cm
        self.context = context
        self.instance_name = str(instance_name or "")
        self._closed = False
        self._close_callbacks: List[Callable[["BrowserSession"], Any]] = []
        try:
            context.on("close", self._handle_context_close)
        except Exception:
            pass

    @property
    def pages(self) -> list:
        try:
            return list(self.context.pages or [])
        except Exception:
            return []

    def is_closed(self) -> bool:
        return self._closed

    def on_close(self, callback: Callable[["BrowserSession"], Any]) -> None:
        self._close_callbacks.append(callback)

    async def _handle_context_close(self, _context=None) -> None:  # noqa: ANN001
        if self._closed:
            return
        self._closed = True
        for callback in list(self._close_callbacks):
            try:
                result = callback(self)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                debug_print(f"❌ [{self.instance_name}] Session close callback failed: {e}")

    async def new_page(self):
        if self._closed:
            raise SessionLostError(f"browser session '{self.instance_name}' is closed")
        return await self.context.new_page()

    async def close(self) -> None:
        """Explicit shutdown: close callbacks are dropped so no recovery is triggered."""
        self._close_callbacks.clear()
        if self._closed:
            return
        self._closed = True
        try:
            await self._browser_cm.__aexit__(None, None, None)
        except Exception as e:
            debug_print(f"⚠️ [{self.instance_name}] Error while closing browser: {e}")


async def maybe_add_webdriver_stealth_script(context) -> None:  # noqa: ANN001
    try:
        await context.add_init_script(WEBDRIVER_STEALTH_INIT_SCRIPT)
    except Exception:
        return

async def launch_browser_session(
    global_config: dict,
    *,
    user_data_dir: str,
    instance_name: str = "",
    proxy=None,  # noqa: ANN001
) -> tuple[BrowserSession, Any]:
    """
    Launch a persistent Camoufox context for `user_data_dir` and return it with its first page.

    Launch failures propagate; callers decide whether they are fatal.
    """
    browser_cfg = (global_config or {}).get("browser") or {}
    headless = bool(browser_cfg.get("headless", False))
    try:
        launch_timeout = float(browser_cfg.get("launch_timeout_seconds", 90))
    except (TypeError, ValueError):
        launch_timeout = 90.0
    launch_timeout = max(20.0, min(launch_timeout, 300.0))

    profile_dir = Path(str(user_data_dir)).expanduser()
    profile_dir.mkdir(parents=True, exist_ok=True)

    launch_kwargs: dict = {
        "headless": headless,
        "main_world_eval": True,
        "persistent_context": True,
        "user_data_dir": str(profile_dir),
    }
    proxy_settings = proxy.as_browser_proxy() if proxy is not None else None
    if proxy_settings:
        launch_kwargs["proxy"] = proxy_settings

    debug_print(f"🦊 [{instance_name}] Launching Camoufox (headless={headless}, profile={profile_dir})...")
    browser_cm = AsyncCamoufox(**launch_kwargs)
    try:
        context = await asyncio.wait_for(browser_cm.__aenter__(), timeout=launch_timeout)
    except Exception as e:
        debug_print(f"❌ [{instance_name}] Camoufox launch failed ({type(e).__name__}): {e}")
        try:
            await browser_cm.__aexit__(None, None, None)
        except Exception:
            pass
        raise

    await maybe_add_webdriver_stealth_script(context)

    session = BrowserSession(browser_cm, context, instance_name=instance_name)
    pages = session.pages
    page = pages[0] if pages else await context.new_page()
    return session, page

# ============================================================
# CLOUDFLARE HELPERS
# ============================================================

async def click_turnstile(page) -> bool:  # noqa: ANN001
    try:
        selectors = [
            '#cf-turnstile',
            'iframe[src*="challenges.cloudflare.com"]',
            '[style*="display: grid"] iframe'
        ]

        for selector in selectors:
            try:
                element = await page.query_selector(selector)
            except Exception:
                element = None
            if not element:
                continue

            debug_print(f"  🖱️  Attempting to click Cloudflare Turnstile (found {selector})...")
            try:
                frame = await element.content_frame()
            except Exception:
                frame = None

            if frame is not None:
                for inner_sel in ("input[type='checkbox']", "div[role='checkbox']", "label"):
                    try:
                        inner = await frame.query_selector(inner_sel)
                        if inner:
                            await inner.click(force=True)
                            await asyncio.sleep(2)
                            return True
                    except Exception:
                        continue

            try:
                box = await element.bounding_box()
            except Exception:
                box = None
            if box:
                x = box['x'] + (box['width'] / 2)
                y = box['y'] + (box['height'] / 2)
                debug_print(f"  🎯 Found widget at {x},{y}. Clicking...")
                await page.mouse.click(x, y)
                await asyncio.sleep(2)
                return True
        return False
    except Exception as e:
        debug_print(f"  ⚠️ Error clicking turnstile: {e}")
        return False

async def is_cloudflare_challenge_page(page) -> bool:  # noqa: ANN001
    try:
        title = await page.title()
    except Exception:
        title = ""
    if any(marker in str(title or "") for marker in CLOUDFLARE_CHALLENGE_TITLES):
        return True

    try:
        if await page.locator('iframe[src*="challenges.cloudflare.com"]').count():
            return True
    except Exception:
        pass
    return False

async def maybe_wait_for_cloudflare_challenge(  # noqa: ANN001
    page,
    *,
    max_attempts: int = 5,
    sleep_seconds: float = 2.0,
) -> None:
    try:
        attempts = max(0, int(max_attempts))
    except Exception:
        attempts = 0

    for _ in range(attempts):
        try:
            if not await is_cloudflare_challenge_page(page):
                break
            await click_turnstile(page)
            await asyncio.sleep(float(sleep_seconds))
        except Exception:
            break
