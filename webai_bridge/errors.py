import asyncio

from playwright.async_api import TimeoutError as PlaywrightTimeoutError


class BridgeError(Exception):
    """Base class for every error kind raised by the pool and its page helpers."""

    code = "BRIDGE_ERROR"

    def __init__(self, message: str = "") -> None:
        self.message = str(message or "")
        super().__init__(f"{self.code}: {self.message}" if self.message else self.code)


class UnsupportedModelError(BridgeError):
    code = "UNSUPPORTED_MODEL"


class SessionLostError(BridgeError):
    code = "SESSION_LOST"


class PageInvalidError(BridgeError):
    code = "PAGE_INVALID"


class NavigationTimeoutError(BridgeError):
    code = "NAVIGATION_TIMEOUT"


class NavigationFailedError(BridgeError):
    code = "NAVIGATION_FAILED"


class ApiTimeoutError(BridgeError):
    code = "API_TIMEOUT"


class ApiErrorDetected(BridgeError):
    """An error signature was found in the captured response body."""

    code = "API_ERROR_DETECTED"


class PageErrorDetected(BridgeError):
    """An error signature became visible in the page UI."""

    code = "PAGE_ERROR_DETECTED"


class NetworkFailedError(BridgeError):
    code = "NETWORK_FAILED"


class ElementNotFoundError(BridgeError):
    code = "ELEMENT_NOT_FOUND"


class ReinitFailedError(BridgeError):
    code = "REINIT_FAILED"


def is_timeout_error(exc: BaseException) -> bool:
    if isinstance(exc, ApiTimeoutError):
        return True
    if isinstance(exc, BridgeError):
        return False
    if isinstance(exc, (asyncio.TimeoutError, PlaywrightTimeoutError)):
        return True
    message = str(exc)
    return "TIMEOUT" in message or "Timeout" in message
