from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .config import get_site_config
from .constants import DEFAULT_IMAGE_POLICY, DEFAULT_MODEL_TYPE, IMAGE_POLICY_ORDER

NavigationHandler = Callable[[Any], Awaitable[None]]


class SiteType(str, Enum):
    LMARENA = "lmarena"
    GEMINI_BIZ = "gemini_biz"
    NANOBANANAFREE_AI = "nanobananafree_ai"


def coerce_site_type(tag: Union[str, SiteType, None]) -> Optional[SiteType]:
    if isinstance(tag, SiteType):
        return tag
    try:
        return SiteType(str(tag or "").strip().lower())
    except ValueError:
        return None


class SiteAdapter:
    """
    Capability set every site adapter provides.

    `models` is a sequence of dicts with at least an `id`; `image_policy` and `type` are optional
    per-model overrides.
    """

    site_type: SiteType
    models: tuple = ()

    def get_target_url(self, global_config: dict, worker_config: Optional[dict] = None) -> Optional[str]:
        worker_url = str((worker_config or {}).get("url") or "").strip()
        if worker_url:
            return worker_url
        url = str(get_site_config(global_config, self.site_type.value).get("url") or "").strip()
        return url or None

    def get_navigation_handlers(self) -> List[NavigationHandler]:
        return []

    def find_model(self, model_id: str) -> Optional[dict]:
        for model in self.models:
            if model.get("id") == model_id:
                return model
        return None

    def supports_model(self, model_id: str) -> bool:
        return self.find_model(model_id) is not None

    def get_image_policy(self, model_id: str) -> str:
        policy = (self.find_model(model_id) or {}).get("image_policy") or DEFAULT_IMAGE_POLICY
        return policy if policy in IMAGE_POLICY_ORDER else DEFAULT_IMAGE_POLICY

    def get_model_type(self, model_id: str) -> str:
        return (self.find_model(model_id) or {}).get("type") or DEFAULT_MODEL_TYPE

    def list_models(self) -> List[dict]:
        return [
            {"id": m["id"], "object": "model", "owned_by": self.site_type.value}
            for m in self.models
            if m.get("id")
        ]

    async def generate(self, ctx: dict, prompt: str, paths: List[str], model_id: str, meta: dict) -> dict:
        raise NotImplementedError


class AdapterRegistry:
    """Adapters keyed by SiteType. Unregistered types answer every query negatively."""

    def __init__(self) -> None:
        self._adapters: Dict[SiteType, SiteAdapter] = {}

    def register(self, adapter: SiteAdapter) -> None:
        self._adapters[adapter.site_type] = adapter

    def get_adapter(self, tag) -> Optional[SiteAdapter]:  # noqa: ANN001
        site_type = coerce_site_type(tag)
        if site_type is None:
            return None
        return self._adapters.get(site_type)

    def get_target_url(self, tag, global_config: dict, worker_config: Optional[dict] = None) -> Optional[str]:  # noqa: ANN001
        adapter = self.get_adapter(tag)
        return adapter.get_target_url(global_config, worker_config) if adapter else None

    def get_navigation_handlers(self, tag) -> List[NavigationHandler]:  # noqa: ANN001
        adapter = self.get_adapter(tag)
        return list(adapter.get_navigation_handlers()) if adapter else []

    def supports_model(self, tag, model_id: str) -> bool:  # noqa: ANN001
        adapter = self.get_adapter(tag)
        return bool(adapter and adapter.supports_model(model_id))

    def get_models_for_adapter(self, tag) -> dict:  # noqa: ANN001
        adapter = self.get_adapter(tag)
        return {"object": "list", "data": adapter.list_models() if adapter else []}

    def get_image_policy(self, tag, model_id: str) -> str:  # noqa: ANN001
        adapter = self.get_adapter(tag)
        return adapter.get_image_policy(model_id) if adapter else DEFAULT_IMAGE_POLICY

    def get_model_type(self, tag, model_id: str) -> str:  # noqa: ANN001
        adapter = self.get_adapter(tag)
        return adapter.get_model_type(model_id) if adapter else DEFAULT_MODEL_TYPE


def build_default_registry() -> AdapterRegistry:
    from .adapters.lmarena import LMArenaAdapter

    registry = AdapterRegistry()
    registry.register(LMArenaAdapter())
    return registry
