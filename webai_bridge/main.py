import asyncio
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import FastAPI

from . import browser_automation
from .api_server import build_router
from .browser_automation import debug_print
from .config import get_config, get_data_dir
from .pool import WorkerPool
from .proxy import proxy_lifespan
from .stats import RequestStats
from .worker import is_login_mode


class BridgeCore:
    """Process-wide state shared by the HTTP routes."""

    def __init__(self, config: Optional[dict] = None) -> None:
        self._config = config
        self.pool: Optional[WorkerPool] = None
        self.stats: Optional[RequestStats] = None
        self.proxy = None

    def get_config(self) -> dict:
        if self._config is None:
            self._config = get_config()
        return self._config


def create_app(core: Optional[BridgeCore] = None, *, start_pool: bool = True) -> FastAPI:
    core = core or BridgeCore()

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ARG001
        if not start_pool:
            yield
            return

        config = core.get_config()
        browser_automation.set_debug(config.get("debug", True))
        core.stats = RequestStats(get_data_dir(config))
        core.stats.load_today_stats()

        async with proxy_lifespan(config) as proxy:
            core.proxy = proxy
            core.pool = WorkerPool(config, proxy=proxy, stats=core.stats, login_mode=False)
            await core.pool.init()
            try:
                yield
            finally:
                await core.pool.close()
                core.pool = None

    app = FastAPI(title="WebAI Bridge", lifespan=lifespan)
    app.state.core = core
    app.include_router(build_router(core))
    return app


async def run_login_mode(config: dict) -> None:
    """Open every browser for manual login; closing an owner's browser ends the process."""
    async with proxy_lifespan(config) as proxy:
        pool = WorkerPool(config, proxy=proxy, login_mode=True)
        await pool.init()
        debug_print("🔐 Login mode: log in inside the opened browser(s), then close them to exit")
        try:
            await asyncio.Event().wait()
        finally:
            await pool.close()


def main(argv: Optional[List[str]] = None) -> None:
    args = sys.argv[1:] if argv is None else argv
    config = get_config()
    browser_automation.set_debug(config.get("debug", True))

    if is_login_mode(args):
        asyncio.run(run_login_mode(config))
        return

    server = config.get("server") or {}
    host = str(server.get("host") or "0.0.0.0")
    port = int(server.get("port") or 3000)

    print("=" * 60)
    print("🚀 WebAI Bridge Server Starting...")
    print("=" * 60)
    print(f"📚 API Base URL: http://localhost:{port}/v1")
    print("=" * 60)
    uvicorn.run(create_app(BridgeCore(config)), host=host, port=port)


if __name__ == "__main__":
    main()
