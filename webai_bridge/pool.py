import asyncio
from typing import Dict, List, Optional

from .browser_automation import debug_print
from .constants import DEFAULT_IMAGE_POLICY, DEFAULT_MODEL_TYPE
from .errors import ReinitFailedError
from .registry import AdapterRegistry, build_default_registry
from .stats import RequestStats
from .worker import Worker, WorkerRole


class WorkerPool:
    """
    All configured workers plus the instance grouping that decides who owns which browser.

    Workers that name the same `instance` share one browser session; the first one declared
    launches it.
    """

    def __init__(
        self,
        config: dict,
        *,
        registry: Optional[AdapterRegistry] = None,
        proxy=None,  # noqa: ANN001
        stats: Optional[RequestStats] = None,
        login_mode: Optional[bool] = None,
    ) -> None:
        self.config = config or {}
        self.registry = registry or build_default_registry()
        self.proxy = proxy
        self.stats = stats
        self.workers: Dict[str, Worker] = {}
        self.instances: Dict[str, List[str]] = {}
        self._background_tasks: set = set()

        worker_configs = ((self.config.get("pool") or {}).get("workers")) or []
        for worker_config in worker_configs:
            name = str((worker_config or {}).get("name") or "").strip()
            if name in self.workers:
                raise ValueError(f"duplicate worker name: {name}")
            worker = Worker(
                self.config,
                worker_config,
                registry=self.registry,
                workers=self.workers,
                proxy=proxy,
                login_mode=login_mode,
            )
            self.instances.setdefault(worker.instance_name, []).append(worker.name)

        for names in self.instances.values():
            owner = self.workers[names[0]]
            for name in names[1:]:
                owner.bind_shared(self.workers[name])

    def __len__(self) -> int:
        return len(self.workers)

    async def init(self) -> None:
        for instance, names in self.instances.items():
            owner = self.workers[names[0]]
            try:
                await owner.init()
            except Exception as e:
                debug_print(f"❌ [{owner.name}] Browser '{instance}' failed to start: {e}")
                continue
            for name in names[1:]:
                try:
                    await self.workers[name].init(owner.session)
                except Exception as e:
                    debug_print(f"❌ [{name}] Failed to open a tab on '{instance}': {e}")
        ready = sum(1 for w in self.workers.values() if w.is_live())
        debug_print(f"✅ Worker pool ready: {ready}/{len(self.workers)} worker(s) live")

    def get_candidates(self, model_id: str) -> List[Worker]:
        supporting = [w for w in self.workers.values() if w.supports(model_id)]
        # sorted() is stable: ties keep declaration order.
        return sorted(supporting, key=lambda w: w.busy_count)

    def supports(self, model_id: str) -> bool:
        return any(w.supports(model_id) for w in self.workers.values())

    async def generate(self, ctx: dict, prompt: str, paths: List[str], model_id: str, meta: Optional[dict] = None) -> dict:
        meta = meta or {}
        candidates = self.get_candidates(model_id)
        if not candidates:
            self._record(False)
            return {"error": f"unsupported model: {model_id}"}

        worker = candidates[0]
        try:
            result = await worker.generate(ctx, prompt, paths, model_id, meta)
        except ReinitFailedError:
            self._record(False)
            raise
        finally:
            self._schedule_monitor(worker)

        self._record(not result.get("error"))
        return result

    def _record(self, success: bool) -> None:
        if self.stats is None:
            return
        try:
            if success:
                self.stats.increment_success()
            else:
                self.stats.increment_failed()
        except Exception as e:
            debug_print(f"⚠️ Failed to record request stats: {e}")

    def _schedule_monitor(self, worker: Worker) -> None:
        if worker.merge_monitor is None or worker.busy_count != 0:
            return
        task = asyncio.create_task(worker.navigate_to_monitor())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def get_models(self) -> List[dict]:
        models: List[dict] = []
        seen = set()
        for worker in self.workers.values():
            for model in worker.get_models():
                if model["id"] in seen:
                    continue
                seen.add(model["id"])
                models.append(model)
        return models

    def get_image_policy(self, model_id: str) -> str:
        for worker in self.workers.values():
            if worker.supports(model_id):
                return worker.get_image_policy(model_id)
        return DEFAULT_IMAGE_POLICY

    def get_model_type(self, model_id: str) -> str:
        for worker in self.workers.values():
            if worker.supports(model_id):
                return worker.get_model_type(model_id)
        return DEFAULT_MODEL_TYPE

    def describe(self) -> List[dict]:
        return [
            {
                "name": w.name,
                "type": w.type_label,
                "instance": w.instance_name,
                "role": w.role.value if w.role else None,
                "state": w.state.value,
                "busy": w.busy_count,
            }
            for w in self.workers.values()
        ]

    async def close(self) -> None:
        for task in list(self._background_tasks):
            task.cancel()
        for worker in self.workers.values():
            if worker.role is WorkerRole.OWNER and worker.session is not None:
                debug_print(f"🛑 [{worker.name}] Closing browser '{worker.instance_name}'")
                await worker.session.close()
