"""
Response capture for page-driven operations.

Adapters trigger something in the page (submit a prompt, click "generate") and then call
`wait_api_response` to learn when the site's own network call has produced its result.
The wait races four signals:

* the page closing or crashing (fails with PageInvalidError),
* optional error text becoming visible in the page (PageErrorDetected),
* the first network response matching the wait spec,
* a timer (ApiTimeoutError) which is dropped once a streaming response is matched; from then
  on the wait ends when the underlying request finishes (or fails with NetworkFailedError).

Every listener and timer is removed on every exit path.
"""

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Union

from .browser_automation import debug_print
from .constants import STREAMING_CONTENT_TYPES, Timeouts
from .errors import (
    ApiErrorDetected,
    ApiTimeoutError,
    NetworkFailedError,
    PageErrorDetected,
    PageInvalidError,
    is_timeout_error,
)
from .page_utils import create_page_close_watcher, is_page_valid

ErrorPattern = Union[str, "re.Pattern[str]"]


def _as_tuple(value: Any) -> tuple:
    if value is None:
        return ()
    if isinstance(value, (list, tuple, set)):
        return tuple(v for v in value if v)
    return (value,) if value else ()

def is_streaming_content_type(content_type: Optional[str]) -> bool:
    ct = str(content_type or "").lower()
    return any(marker in ct for marker in STREAMING_CONTENT_TYPES)


@dataclass(frozen=True)
class ResponseWaitSpec:
    url_match: str
    url_contains: tuple = ()
    method: str = "POST"
    timeout_ms: float = Timeouts.API_RESPONSE
    error_text: tuple = field(default_factory=tuple)

    @classmethod
    def build(
        cls,
        url_match: str,
        *,
        url_contains: Union[str, Iterable[str], None] = None,
        method: str = "POST",
        timeout_ms: float = Timeouts.API_RESPONSE,
        error_text: Union[ErrorPattern, Iterable[ErrorPattern], None] = None,
    ) -> "ResponseWaitSpec":
        return cls(
            url_match=str(url_match),
            url_contains=tuple(str(s) for s in _as_tuple(url_contains)),
            method=str(method or "POST").upper(),
            timeout_ms=float(timeout_ms),
            error_text=_as_tuple(error_text),
        )

    def matches(self, url: str, method: str, status: int) -> bool:
        url = str(url or "")
        if self.url_match not in url:
            return False
        if not all(part in url for part in self.url_contains):
            return False
        if str(method or "").upper() != self.method:
            return False
        # 200 or any failure status; redirects and informational responses are skipped
        return status == 200 or status >= 400

    @property
    def error_keywords(self) -> list[str]:
        keywords = []
        for pattern in self.error_text:
            keywords.append(pattern.pattern if isinstance(pattern, re.Pattern) else str(pattern))
        return keywords


class CapturedResponse:
    """Response wrapper whose body accessors replay a single read of the underlying body."""

    def __init__(self, response, body: Optional[bytes] = None) -> None:  # noqa: ANN001
        self._response = response
        self._body = body

    @property
    def raw(self):
        return self._response

    def __getattr__(self, name: str):
        return getattr(self._response, name)

    async def body(self) -> bytes:
        if self._body is None:
            self._body = await self._response.body()
        return self._body

    async def text(self) -> str:
        return (await self.body()).decode("utf-8", errors="replace")

    async def json(self):
        return json.loads(await self.text())


def _same_request(a, b) -> bool:  # noqa: ANN001
    if a is b:
        return True
    impl_a = getattr(a, "_impl_obj", None)
    return impl_a is not None and impl_a is getattr(b, "_impl_obj", None)


class ResponseWatcher:
    def __init__(self, page, spec: ResponseWaitSpec, *, meta: Optional[dict] = None) -> None:  # noqa: ANN001
        self.page = page
        self.spec = spec
        self.meta = meta or {}
        self._result: Optional[asyncio.Future] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._listening_for_response = False
        self._request_handlers: list[tuple[str, Any]] = []

    def _tag(self) -> str:
        request_id = self.meta.get("id") or self.meta.get("request_id")
        return f"[{request_id}] " if request_id else ""

    async def wait(self) -> CapturedResponse:
        if not is_page_valid(self.page):
            raise PageInvalidError("page is closed or unusable")

        loop = asyncio.get_running_loop()
        self._result = loop.create_future()
        close_watcher = create_page_close_watcher(self.page)
        ui_task = self._start_ui_error_watch()

        try:
            self._timer = loop.call_later(self.spec.timeout_ms / 1000.0, self._on_timeout)
            self._listening_for_response = True
            self.page.on("response", self._on_response)

            response = await self._race(close_watcher.future, ui_task)
            return await self._inspect_body(response)
        except Exception as e:
            if is_timeout_error(e) and not isinstance(e, ApiTimeoutError):
                raise ApiTimeoutError(str(e)) from e
            raise
        finally:
            self._cleanup()
            close_watcher.cleanup()
            if ui_task is not None:
                if not ui_task.done():
                    ui_task.cancel()
                elif not ui_task.cancelled():
                    ui_task.exception()

    async def _race(self, close_future: asyncio.Future, ui_task: Optional[asyncio.Task]):
        pending = {self._result, close_future}
        if ui_task is not None:
            pending.add(ui_task)

        while True:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for fut in (close_future, ui_task, self._result):
                if fut is None or fut not in done:
                    continue
                if fut is ui_task and not fut.cancelled() and fut.exception() is None:
                    # The UI watcher gave up without seeing error text; keep waiting.
                    continue
                return fut.result()

    # ---------------------------------------------------------- UI error text

    def _start_ui_error_watch(self) -> Optional[asyncio.Task]:
        if not self.spec.error_text:
            return None
        combined = None
        for pattern in self.spec.error_text:
            loc = self.page.get_by_text(pattern)
            combined = loc if combined is None else combined.or_(loc)
        if combined is None:
            return None
        return asyncio.create_task(self._watch_ui_errors(combined))

    async def _watch_ui_errors(self, locator) -> None:  # noqa: ANN001
        try:
            await locator.first.wait_for(state="attached", timeout=self.spec.timeout_ms)
        except Exception as e:
            # Timeout or detached page: stop watching, the other signals decide the outcome.
            debug_print(f"  {self._tag()}UI error watcher stopped: {type(e).__name__}")
            return None

        try:
            matched = await locator.first.text_content()
        except Exception:
            matched = None
        raise PageErrorDetected(str(matched or "unknown error").strip())

    # ---------------------------------------------------------- network

    def _on_response(self, response) -> None:  # noqa: ANN001
        if not self._listening_for_response or self._result is None or self._result.done():
            return
        try:
            url = response.url
            request = response.request
            status = int(response.status or 0)
            method = request.method
        except Exception:
            return
        if not self.spec.matches(url, method, status):
            return

        # Only the first qualifying response is ever inspected.
        self._remove_response_listener()

        try:
            content_type = (response.headers or {}).get("content-type", "")
        except Exception:
            content_type = ""

        if is_streaming_content_type(content_type):
            self._cancel_timer()
            self._watch_request_completion(request, response)
        else:
            self._result.set_result(response)

    def _watch_request_completion(self, request, response) -> None:  # noqa: ANN001
        def on_finished(req) -> None:  # noqa: ANN001
            if not _same_request(req, request):
                return
            self._remove_request_listeners()
            if not self._result.done():
                self._result.set_result(response)

        def on_failed(req) -> None:  # noqa: ANN001
            if not _same_request(req, request):
                return
            self._remove_request_listeners()
            if not self._result.done():
                self._result.set_exception(NetworkFailedError("streaming request failed"))

        self._request_handlers = [("requestfinished", on_finished), ("requestfailed", on_failed)]
        for event, handler in self._request_handlers:
            self.page.on(event, handler)

    def _on_timeout(self) -> None:
        self._timer = None
        if self._result is not None and not self._result.done():
            seconds = round(self.spec.timeout_ms / 1000.0)
            self._result.set_exception(ApiTimeoutError(f"timed out waiting for response ({seconds}s)"))

    async def _inspect_body(self, response) -> CapturedResponse:  # noqa: ANN001
        captured = CapturedResponse(response)
        keywords = self.spec.error_keywords
        if not keywords:
            return captured

        try:
            body = await captured.body()
        except Exception as e:
            debug_print(f"  ⚠️ {self._tag()}Could not read response body for error scan: {e}")
            return captured

        text = body.decode("utf-8", errors="replace")
        for keyword in keywords:
            if keyword and keyword in text:
                raise ApiErrorDetected(keyword)
        return captured

    # ---------------------------------------------------------- teardown

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _remove_response_listener(self) -> None:
        if self._listening_for_response:
            self._listening_for_response = False
            try:
                self.page.remove_listener("response", self._on_response)
            except Exception:
                pass

    def _remove_request_listeners(self) -> None:
        handlers, self._request_handlers = self._request_handlers, []
        for event, handler in handlers:
            try:
                self.page.remove_listener(event, handler)
            except Exception:
                pass

    def _cleanup(self) -> None:
        self._cancel_timer()
        self._remove_response_listener()
        self._remove_request_listeners()
        if self._result is not None:
            if not self._result.done():
                self._result.cancel()
            elif not self._result.cancelled():
                self._result.exception()


async def wait_api_response(
    page,  # noqa: ANN001
    *,
    url_match: str,
    url_contains: Union[str, Iterable[str], None] = None,
    method: str = "POST",
    timeout_ms: float = Timeouts.API_RESPONSE,
    error_text: Union[ErrorPattern, Iterable[ErrorPattern], None] = None,
    meta: Optional[dict] = None,
) -> CapturedResponse:
    spec = ResponseWaitSpec.build(
        url_match,
        url_contains=url_contains,
        method=method,
        timeout_ms=timeout_ms,
        error_text=error_text,
    )
    return await ResponseWatcher(page, spec, meta=meta).wait()
