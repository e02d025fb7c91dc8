import asyncio
from typing import Any, Optional

from .browser_automation import debug_print
from .constants import Timeouts
from .errors import (
    BridgeError,
    ElementNotFoundError,
    NavigationFailedError,
    NavigationTimeoutError,
    PageInvalidError,
    is_timeout_error,
)

# ============================================================
# AUTH GATE
# ============================================================

class AuthGate:
    """
    Per-page flag raised while an unattended login/verification flow owns the page.

    Automated interaction (typing, clicking) checks the flag first so it does not race the flow.
    """

    def __init__(self) -> None:
        self.locked = False

    def lock(self) -> None:
        self.locked = True

    def unlock(self) -> None:
        self.locked = False

    def is_locked(self) -> bool:
        return self.locked is True

    async def wait_for_unlock(
        self,
        timeout_ms: float = Timeouts.OAUTH_FLOW,
        *,
        poll_interval_ms: float = Timeouts.POLL_INTERVAL,
    ) -> bool:
        """
        Poll until the gate clears or `timeout_ms` elapses.

        Never raises on timeout: returns False and lets the caller proceed with whatever
        time budget it has left.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, float(timeout_ms)) / 1000.0
        interval = max(0.001, float(poll_interval_ms) / 1000.0)
        while self.is_locked():
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(interval, remaining))
        return True


def attach_auth_gate(page) -> AuthGate:  # noqa: ANN001
    gate = AuthGate()
    page.auth_gate = gate
    return gate

def get_auth_gate(page) -> Optional[AuthGate]:  # noqa: ANN001
    gate = getattr(page, "auth_gate", None)
    return gate if isinstance(gate, AuthGate) else None

def lock_page_auth(page) -> None:  # noqa: ANN001
    gate = get_auth_gate(page)
    if gate is not None:
        gate.lock()

def unlock_page_auth(page) -> None:  # noqa: ANN001
    gate = get_auth_gate(page)
    if gate is not None:
        gate.unlock()

def is_page_auth_locked(page) -> bool:  # noqa: ANN001
    gate = get_auth_gate(page)
    return gate is not None and gate.is_locked()

async def wait_for_page_auth(page, timeout_ms: float = Timeouts.OAUTH_FLOW) -> bool:  # noqa: ANN001
    gate = get_auth_gate(page)
    if gate is None:
        return True
    return await gate.wait_for_unlock(timeout_ms)

# ============================================================
# PAGE STATE
# ============================================================

def is_page_valid(page) -> bool:  # noqa: ANN001
    if page is None:
        return False
    try:
        return not page.is_closed()
    except Exception:
        return False


class PageCloseWatcher:
    """Future that fails with PageInvalidError once the page closes or crashes."""

    EVENTS = ("close", "crash")

    def __init__(self, page) -> None:  # noqa: ANN001
        self._page = page
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()
        for event in self.EVENTS:
            page.on(event, self._on_event)

    def _on_event(self, *_args) -> None:
        if not self.future.done():
            self.future.set_exception(PageInvalidError("page closed while waiting"))

    def cleanup(self) -> None:
        for event in self.EVENTS:
            try:
                self._page.remove_listener(event, self._on_event)
            except Exception:
                pass
        if not self.future.done():
            self.future.cancel()
        elif not self.future.cancelled():
            # Mark a stored close failure as observed.
            self.future.exception()


def create_page_close_watcher(page) -> PageCloseWatcher:  # noqa: ANN001
    return PageCloseWatcher(page)

# ============================================================
# NAVIGATION
# ============================================================

async def goto_with_check(page, url: str, *, timeout_ms: float = Timeouts.NAVIGATION) -> None:  # noqa: ANN001
    try:
        response = await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
    except Exception as e:
        if is_timeout_error(e):
            raise NavigationTimeoutError(f"page load timed out ({url})") from e
        raise NavigationFailedError(f"page load failed: {e}") from e

    if response is None:
        raise NavigationFailedError("page load failed: no response")
    status = int(response.status or 0)
    if status >= 400:
        raise NavigationFailedError(f"site unreachable (HTTP {status})")

async def try_goto_with_check(page, url: str, *, timeout_ms: float = Timeouts.NAVIGATION) -> dict:  # noqa: ANN001
    try:
        await goto_with_check(page, url, timeout_ms=timeout_ms)
        return {"success": True}
    except BridgeError as e:
        return {"error": str(e)}

# ============================================================
# ELEMENTS & INPUT
# ============================================================

def _as_locator(page, selector_or_locator: Any):  # noqa: ANN001
    if isinstance(selector_or_locator, str):
        return page.locator(selector_or_locator)
    return selector_or_locator

async def safe_click(page, selector_or_locator: Any, *, timeout_ms: float = Timeouts.ELEMENT_CLICK) -> bool:  # noqa: ANN001
    locator = _as_locator(page, selector_or_locator).first
    try:
        await locator.scroll_into_view_if_needed(timeout=timeout_ms)
    except Exception:
        pass
    try:
        await locator.click(timeout=timeout_ms)
        return True
    except Exception as e:
        debug_print(f"  ⚠️ Click failed: {e}")
        return False

async def wait_for_input(
    page,  # noqa: ANN001
    selector_or_locator: Any,
    *,
    timeout_ms: float = Timeouts.INPUT_WAIT,
    click: bool = True,
) -> None:
    """
    Wait for an input box, letting an in-progress auth flow finish first.

    Whatever the auth gate leaves of `timeout_ms` (never less than MIN_INPUT_WAIT) is spent
    waiting for the element itself.
    """
    is_locator = not isinstance(selector_or_locator, str)
    display_name = "Locator" if is_locator else selector_or_locator

    loop = asyncio.get_running_loop()
    started = loop.time()
    await wait_for_page_auth(page, timeout_ms)
    elapsed_ms = (loop.time() - started) * 1000.0
    remaining_ms = max(float(timeout_ms) - elapsed_ms, float(Timeouts.MIN_INPUT_WAIT))

    try:
        if is_locator:
            await selector_or_locator.first.wait_for(state="visible", timeout=remaining_ms)
        else:
            await page.wait_for_selector(selector_or_locator, timeout=remaining_ms)
    except Exception as e:
        raise ElementNotFoundError(f"input box not found ({display_name})") from e

    if click:
        await safe_click(page, selector_or_locator)
        await asyncio.sleep(0.5)

async def scroll_to_element(
    page,  # noqa: ANN001
    selector_or_locator: Any,
    *,
    timeout_ms: float = Timeouts.ELEMENT_SCROLL,
):
    try:
        if isinstance(selector_or_locator, str):
            element = await page.wait_for_selector(selector_or_locator, timeout=timeout_ms, state="attached")
        else:
            first = selector_or_locator.first
            await first.wait_for(state="attached", timeout=timeout_ms)
            element = await first.element_handle()
        if element:
            await element.scroll_into_view_if_needed()
            return element
    except Exception:
        pass
    return None
