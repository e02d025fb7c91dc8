import asyncio
import os
import sys
from contextlib import suppress
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from .browser_automation import BrowserSession, debug_print, launch_browser_session
from .config import get_data_dir, get_failover_config
from .constants import (
    DEFAULT_IMAGE_POLICY,
    DEFAULT_MODEL_TYPE,
    IMAGE_POLICY_ORDER,
    INTERNAL_OWNER,
    MERGE_TYPE,
    Timeouts,
)
from .errors import PageInvalidError, ReinitFailedError, SessionLostError
from .page_utils import attach_auth_gate, is_page_valid, try_goto_with_check
from .registry import AdapterRegistry, SiteType, coerce_site_type


class WorkerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    DETACHED = "detached"
    REINITIALIZING = "reinitializing"


class WorkerRole(str, Enum):
    OWNER = "owner"
    SHARED = "shared"


def is_login_mode(argv: Optional[List[str]] = None) -> bool:
    args = sys.argv[1:] if argv is None else argv
    return any(str(arg).startswith("-login") for arg in args)


def _split_model_id(model_id: str) -> Tuple[Optional[str], str]:
    model_id = str(model_id or "")
    if "/" not in model_id:
        return None, model_id
    prefix, rest = model_id.split("/", 1)
    return prefix, rest


def _site_type(tag) -> SiteType:  # noqa: ANN001
    site_type = coerce_site_type(tag)
    if site_type is None:
        raise ValueError(f"unknown site type: {tag!r}")
    return site_type


class Worker:
    """
    One logical unit of automation capacity: a page on a browser session.

    The first worker of an instance launches the browser session and owns its lifecycle
    (OWNER); the others open their own page on it (SHARED). Owner and shared workers refer to
    each other by name through the pool's `workers` table.
    """

    def __init__(
        self,
        global_config: dict,
        worker_config: dict,
        *,
        registry: AdapterRegistry,
        workers: Optional[Dict[str, "Worker"]] = None,
        proxy=None,  # noqa: ANN001
        login_mode: Optional[bool] = None,
    ) -> None:
        self.global_config = global_config or {}
        self.worker_config = worker_config or {}
        self.registry = registry
        self.proxy = proxy
        self.login_mode = is_login_mode() if login_mode is None else bool(login_mode)

        self.name = str(self.worker_config.get("name") or "").strip()
        if not self.name:
            raise ValueError("worker config needs a name")

        raw_type = str(self.worker_config.get("type") or "").strip().lower()
        if raw_type == MERGE_TYPE:
            self.type = MERGE_TYPE
            self.merge_types = [_site_type(t) for t in (self.worker_config.get("merge_types") or [])]
            if not self.merge_types:
                raise ValueError(f"merge worker [{self.name}] needs merge_types")
            monitor = self.worker_config.get("merge_monitor")
            self.merge_monitor = _site_type(monitor) if monitor else None
        else:
            self.type = _site_type(raw_type)
            self.merge_types = []
            self.merge_monitor = None

        self.instance_name = str(self.worker_config.get("instance") or self.name)
        self.user_data_dir = str(
            self.worker_config.get("user_data_dir")
            or Path(get_data_dir(self.global_config)) / "profiles" / self.instance_name
        )

        self.workers = workers if workers is not None else {}
        self.workers[self.name] = self

        self.state = WorkerState.UNINITIALIZED
        self.role: Optional[WorkerRole] = None
        self.owner_name: Optional[str] = None
        self.shared_names: List[str] = []
        self.session: Optional[BrowserSession] = None
        self.page = None
        self.busy_count = 0
        self._recovery_task: Optional[asyncio.Future] = None

        self._target_url = self._resolve_target_url()
        self._navigation_handlers = [] if self.login_mode else self._collect_navigation_handlers()

    def __repr__(self) -> str:
        return f"<Worker {self.name} type={self.type_label} state={self.state.value}>"

    @property
    def is_merge(self) -> bool:
        return self.type == MERGE_TYPE

    @property
    def type_label(self) -> str:
        return MERGE_TYPE if self.is_merge else self.type.value

    @property
    def member_types(self) -> List[SiteType]:
        return list(self.merge_types) if self.is_merge else [self.type]

    # ------------------------------------------------------------------ ownership

    def bind_shared(self, other: "Worker") -> None:
        if other is self:
            raise ValueError(f"worker [{self.name}] cannot share with itself")
        if other.owner_name is not None or other.shared_names:
            raise ValueError(f"worker [{other.name}] is already bound to a browser session")
        if self.owner_name is not None:
            raise ValueError(f"worker [{self.name}] is shared and cannot own other workers")
        other.owner_name = self.name
        self.shared_names.append(other.name)

    def _owner(self) -> Optional["Worker"]:
        return self.workers.get(self.owner_name) if self.owner_name else None

    def _shared_workers(self) -> List["Worker"]:
        return [self.workers[n] for n in self.shared_names if n in self.workers]

    # ------------------------------------------------------------------ setup

    def _resolve_target_url(self) -> Optional[str]:
        first = self.member_types[0]
        return self.registry.get_target_url(first, self.global_config, self.worker_config)

    def _collect_navigation_handlers(self) -> list:
        handlers = []
        for site_type in self.member_types:
            handlers.extend(self.registry.get_navigation_handlers(site_type))
        return handlers

    def is_live(self) -> bool:
        return (
            self.state == WorkerState.READY
            and self.session is not None
            and not self.session.is_closed()
            and is_page_valid(self.page)
        )

    async def init(self, shared_session: Optional[BrowserSession] = None) -> None:
        if self.state != WorkerState.UNINITIALIZED:
            return

        self.state = WorkerState.INITIALIZING
        debug_print(f"🚀 [{self.name}] Initializing browser...")
        if self.proxy is not None:
            debug_print(f"  [{self.name}] Using proxy ({self.proxy.kind}): {self.proxy.server}")
        else:
            debug_print(f"  [{self.name}] Direct connection")

        try:
            if shared_session is not None:
                await self._init_with_shared_session(shared_session)
            else:
                await self._init_new_session()
        except Exception:
            self.state = WorkerState.UNINITIALIZED
            self.session = None
            self.page = None
            raise

        self.state = WorkerState.READY
        debug_print(f"✅ [{self.name}] Initialized ({self.role.value})")

    async def _init_with_shared_session(self, session: BrowserSession) -> None:
        debug_print(f"  [{self.name}] Reusing browser '{session.instance_name}', opening a new tab...")
        self.role = WorkerRole.SHARED
        self.session = session
        self._bind_page(await session.new_page())
        await self._navigate_to_target()

    async def _init_new_session(self) -> None:
        session, page = await launch_browser_session(
            self.global_config,
            user_data_dir=self.user_data_dir,
            instance_name=self.instance_name,
            proxy=self.proxy,
        )
        self.role = WorkerRole.OWNER
        self.session = session
        self._bind_page(page)

        debug_print(f"  [{self.name}] Connecting to target page...")
        await self._navigate_to_target()

        if self.login_mode:
            debug_print(f"🔐 [{self.name}] Login mode ready, finish logging in inside the browser")
            session.on_close(self._handle_login_session_close)
        else:
            session.on_close(self._handle_session_lost)

    def _bind_page(self, page) -> None:  # noqa: ANN001
        attach_auth_gate(page)
        if self._navigation_handlers:
            page.on("framenavigated", self._make_navigation_listener(page))
        # In login mode the owner's tab belongs to the operator.
        if not (self.login_mode and self.role is WorkerRole.OWNER):
            page.on("close", self._make_page_close_listener(page))
        self.page = page

    def _make_navigation_listener(self, page):  # noqa: ANN001
        async def on_frame_navigated(frame=None) -> None:  # noqa: ANN001
            if frame is not None and getattr(frame, "parent_frame", None) is not None:
                return
            for handler in self._navigation_handlers:
                try:
                    await handler(page)
                except Exception as e:
                    debug_print(f"  ⚠️ [{self.name}] Navigation handler failed: {e}")

        return on_frame_navigated

    def _make_page_close_listener(self, page):  # noqa: ANN001
        async def on_page_close(*_args) -> None:
            await self._handle_page_close(page)

        return on_page_close

    async def _navigate_to_target(self) -> None:
        """Navigation failures are logged only; the worker comes up regardless."""
        if self.is_merge:
            for site_type in self.merge_types:
                url = self.registry.get_target_url(site_type, self.global_config, self.worker_config)
                if not url:
                    continue
                result = await try_goto_with_check(self.page, url, timeout_ms=Timeouts.MERGE_NAVIGATION)
                if not result.get("error"):
                    debug_print(f"  [{self.name}] Initialized on {site_type.value}")
                    return
                debug_print(f"⚠️ [{self.name}] {site_type.value} unreachable, trying next: {result['error']}")
            debug_print(f"⚠️ [{self.name}] No member site reachable; requests may fail until it recovers")
            return

        if not self._target_url:
            return
        result = await try_goto_with_check(self.page, self._target_url, timeout_ms=Timeouts.WORKER_NAVIGATION)
        if result.get("error"):
            debug_print(f"⚠️ [{self.name}] Target site unreachable: {result['error']}; worker starts anyway")

    # ------------------------------------------------------------------ recovery

    async def _handle_page_close(self, page) -> None:  # noqa: ANN001
        if page is not self.page:
            return
        if self.session is None or self.session.is_closed():
            # Browser-level loss; the owner's session callback drives recovery.
            return
        debug_print(f"⚠️ [{self.name}] Tab closed, recreating...")
        self.state = WorkerState.DETACHED
        self.page = None
        try:
            await self.recover()
        except Exception as e:
            debug_print(f"❌ [{self.name}] Failed to recreate tab: {e}")

    def _detach(self) -> None:
        self.state = WorkerState.DETACHED
        self.session = None
        self.page = None

    async def _handle_session_lost(self, session: BrowserSession) -> None:
        if session is not self.session:
            return
        debug_print(f"⚠️ [{self.name}] Browser disconnected, reinitializing...")
        self._detach()
        for shared in self._shared_workers():
            shared._detach()
        try:
            await self.recover()
        except Exception as e:
            debug_print(f"❌ [{self.name}] Automatic reinitialization failed: {e}")

    async def _handle_login_session_close(self, session: BrowserSession) -> None:  # noqa: ARG002
        debug_print(f"🔐 [{self.name}] Browser closed, login mode finished")
        self._exit_process()

    def _exit_process(self) -> None:
        os._exit(0)

    async def recover(self) -> None:
        """
        Bring the worker back to READY. Concurrent callers share one in-flight recovery.

        Raises ReinitFailedError if the worker cannot be restored.
        """
        task = self._recovery_task
        if task is not None and not task.done():
            with suppress(Exception):
                await asyncio.shield(task)
            if self.is_live():
                return

        task = self._recovery_task
        if task is None or task.done():
            task = asyncio.ensure_future(self._recover())
            self._recovery_task = task
        await asyncio.shield(task)

    async def _recover(self) -> None:
        try:
            if self.is_live():
                return
            if self.owner_name is not None:
                await self._recover_shared()
            elif self.session is not None and not self.session.is_closed():
                await self._recreate_page()
            else:
                await self._reinit_session()
        except ReinitFailedError:
            raise
        except Exception as e:
            raise ReinitFailedError(f"worker [{self.name}] reinitialization failed: {e}") from e

    async def _recover_shared(self) -> None:
        owner = self._owner()
        if owner is None:
            raise ReinitFailedError(f"owner '{self.owner_name}' of worker [{self.name}] is not registered")

        owner_task = owner._recovery_task
        if owner_task is not None and not owner_task.done():
            # The owner restores this worker's tab itself once its own recovery is done.
            with suppress(Exception):
                await asyncio.shield(owner_task)
        if not owner.is_live():
            # Only the owner recreates the browser; it restores this worker's tab as well.
            await owner.recover()
        if self.is_live():
            return

        self.session = owner.session
        await self._recreate_page()

    async def _recreate_page(self) -> None:
        session = self.session
        if session is None or session.is_closed():
            raise SessionLostError(f"browser session of worker [{self.name}] is closed")

        await self._discard_page()
        self.state = WorkerState.REINITIALIZING
        try:
            if self.role is None:
                self.role = WorkerRole.SHARED if self.owner_name else WorkerRole.OWNER
            self._bind_page(await session.new_page())
            await self._navigate_to_target()
        except Exception:
            self.state = WorkerState.DETACHED
            raise
        self.state = WorkerState.READY
        debug_print(f"✅ [{self.name}] Tab recreated")

    async def _reinit_session(self) -> None:
        self.state = WorkerState.REINITIALIZING
        self.session = None
        self.page = None
        try:
            await self._init_new_session()
        except Exception:
            self.state = WorkerState.DETACHED
            raise
        self.state = WorkerState.READY
        debug_print(f"✅ [{self.name}] Browser reinitialized")

        for shared in self._shared_workers():
            debug_print(f"🔄 [{shared.name}] Restoring shared browser connection...")
            try:
                await shared._restore_on(self.session)
                debug_print(f"✅ [{shared.name}] Shared browser connection restored")
            except Exception as e:
                debug_print(f"❌ [{shared.name}] Failed to restore shared browser connection: {e}")

    async def _restore_on(self, session: BrowserSession) -> None:
        if self.session is session and self.is_live():
            return
        self.session = session
        await self._recreate_page()

    async def _discard_page(self) -> None:
        page, self.page = self.page, None
        if not is_page_valid(page):
            return
        try:
            await page.close()
        except Exception as e:
            debug_print(f"⚠️ [{self.name}] Failed to close replaced tab: {e}")

    async def _ensure_live(self, meta: dict) -> None:
        if self.is_live():
            return
        debug_print(f"🔄 [{self.name}] Browser unavailable, reinitializing before request {meta.get('id', '')}")
        try:
            await self.recover()
        except ReinitFailedError as e:
            debug_print(f"❌ [{self.name}] {e}")
            raise
        if not self.is_live():
            raise ReinitFailedError(f"worker [{self.name}] is still unavailable after reinitialization")

    # ------------------------------------------------------------------ routing

    def _member_for(self, model_id: str) -> Tuple[Optional[SiteType], str]:
        """Resolve a `tag/model` qualified id to (member, model) when tag names a member."""
        prefix, rest = _split_model_id(model_id)
        if prefix is not None:
            site_type = coerce_site_type(prefix)
            if site_type is not None and site_type in self.member_types:
                return site_type, rest
        return None, str(model_id or "")

    def supports(self, model_id: str) -> bool:
        member, actual = self._member_for(model_id)
        if member is not None:
            return self.registry.supports_model(member, actual)
        return any(self.registry.supports_model(t, actual) for t in self.member_types)

    def _get_adapter_type(self, model_id: str) -> Tuple[SiteType, str]:
        member, actual = self._member_for(model_id)
        if member is not None:
            return member, actual
        for site_type in self.member_types:
            if self.registry.supports_model(site_type, actual):
                return site_type, actual
        return self.member_types[0], actual

    def _get_candidate_types(self, model_id: str) -> List[Tuple[SiteType, str]]:
        member, actual = self._member_for(model_id)
        if member is not None:
            return [(member, actual)] if self.registry.supports_model(member, actual) else []
        return [(t, actual) for t in self.member_types if self.registry.supports_model(t, actual)]

    def _unsupported(self, model_id: str) -> dict:
        return {"error": f"unsupported model: {model_id} (worker [{self.name}])"}

    async def generate(self, ctx: dict, prompt: str, paths: List[str], model_id: str, meta: Optional[dict] = None) -> dict:
        meta = meta or {}
        failover = get_failover_config(self.global_config)
        if self.is_merge and failover["enabled"]:
            return await self._generate_with_failover(ctx, prompt, paths, model_id, meta, failover["max_retries"])

        if not self.supports(model_id):
            return self._unsupported(model_id)
        site_type, actual = self._get_adapter_type(model_id)
        return await self._execute_adapter(ctx, site_type, actual, prompt, paths, meta)

    async def _generate_with_failover(self, ctx, prompt, paths, model_id, meta, max_retries: int) -> dict:  # noqa: ANN001
        candidates = self._get_candidate_types(model_id)
        if not candidates:
            return self._unsupported(model_id)

        attempts = len(candidates) if max_retries == 0 else min(max_retries + 1, len(candidates))
        last_error = None
        for i, (site_type, actual) in enumerate(candidates[:attempts]):
            result = await self._execute_adapter(ctx, site_type, actual, prompt, paths, meta)
            if not result.get("error"):
                return result
            last_error = result["error"]
            if i < attempts - 1:
                debug_print(f"⚠️ [{self.name}] {site_type.value} failed ({last_error}), trying next adapter...")

        return {"error": f"all adapters supporting {model_id} failed: {last_error}"}

    async def _execute_adapter(self, ctx, site_type: SiteType, model_id: str, prompt, paths, meta: dict) -> dict:  # noqa: ANN001
        await self._ensure_live(meta)

        adapter = self.registry.get_adapter(site_type)
        if adapter is None:
            return {"error": f"no adapter registered for {site_type.value}"}

        debug_print(f"▶️ [{self.name}] Running {site_type.value}/{model_id} {meta.get('id', '')}")
        sub_ctx = {
            **(ctx or {}),
            "page": self.page,
            "config": self.global_config,
            "proxy": self.proxy,
            "user_data_dir": self.user_data_dir,
            "worker": self.name,
        }

        self.busy_count += 1
        try:
            result = await adapter.generate(sub_ctx, prompt, list(paths or []), model_id, meta)
        except Exception as e:
            debug_print(f"❌ [{self.name}] {site_type.value} failed: {type(e).__name__}: {e}")
            return {"error": str(e) or type(e).__name__}
        finally:
            self.busy_count -= 1

        if not isinstance(result, dict) or ("data" not in result and "error" not in result):
            return {"error": f"{site_type.value} adapter returned no result"}
        return result

    # ------------------------------------------------------------------ model info

    def get_models(self) -> List[dict]:
        bare: List[dict] = []
        qualified: List[dict] = []
        seen = set()
        for site_type in self.member_types:
            for model in self.registry.get_models_for_adapter(site_type).get("data") or []:
                if model["id"] not in seen:
                    seen.add(model["id"])
                    bare.append({**model, "owned_by": INTERNAL_OWNER})
                qualified.append({**model, "id": f"{site_type.value}/{model['id']}", "owned_by": site_type.value})
        return bare + qualified

    def get_image_policy(self, model_id: str) -> str:
        member, actual = self._member_for(model_id)
        if member is not None:
            return self.registry.get_image_policy(member, actual)
        policies = {
            self.registry.get_image_policy(t, actual)
            for t in self.member_types
            if self.registry.supports_model(t, actual)
        }
        for policy in IMAGE_POLICY_ORDER:
            if policy in policies:
                return policy
        return DEFAULT_IMAGE_POLICY

    def get_model_type(self, model_id: str) -> str:
        member, actual = self._member_for(model_id)
        if member is not None:
            return self.registry.get_model_type(member, actual)
        for site_type in self.member_types:
            if self.registry.supports_model(site_type, actual):
                return self.registry.get_model_type(site_type, actual)
        return DEFAULT_MODEL_TYPE

    # ------------------------------------------------------------------ idle / misc

    async def navigate_to_monitor(self) -> None:
        if not self.is_merge or self.merge_monitor is None:
            return
        if self.busy_count:
            return
        if not is_page_valid(self.page):
            return

        target_url = self.registry.get_target_url(self.merge_monitor, self.global_config, self.worker_config)
        if not target_url:
            return
        host = urlsplit(target_url).hostname
        if not host:
            return
        try:
            if host in str(self.page.url or ""):
                return
        except Exception:
            return

        debug_print(f"👀 [{self.name}] Idle, switching to monitor: {self.merge_monitor.value}")
        try:
            await self.page.goto(target_url, wait_until="domcontentloaded", timeout=Timeouts.MERGE_NAVIGATION)
        except Exception as e:
            debug_print(f"⚠️ [{self.name}] Monitor navigation failed: {e}")

    async def get_cookies(self, domain: Optional[str] = None) -> List[dict]:
        if self.page is None:
            raise PageInvalidError(f"worker [{self.name}] is not initialized")
        context = self.page.context
        if domain:
            url = domain if domain.startswith("http") else f"https://{domain}"
            return await context.cookies(url)
        return await context.cookies()
