from typing import Optional

from .. import config
from ..models import JobSpec
from ..pricing import ENGINE_TIER_DIMENSION, normalize_tier
from .base import RenderBackendAdapter
from .fal import FalQueueBackend
from .kie import KieBackend
from .simulated import SimulatedBackend

DEFAULT_TIER_ROUTES = {
    "free": "simulated",
    "low": "kie",
    "medium": "kie",
    "premium": "fal",
}


class BackendRegistry:
    """Named render backends plus the engine-tier → backend routing table."""

    def __init__(self, default: str = "", tier_routes: Optional[dict[str, str]] = None):
        self._backends: dict[str, RenderBackendAdapter] = {}
        self._default = default
        self._tier_routes = dict(DEFAULT_TIER_ROUTES if tier_routes is None else tier_routes)

    def register(self, name: str, backend: RenderBackendAdapter, default: bool = False):
        self._backends[name] = backend
        if default or not self._default:
            self._default = name

    def get(self, name: str) -> RenderBackendAdapter:
        try:
            return self._backends[name]
        except KeyError:
            raise LookupError(f"No render backend registered as '{name}'") from None

    def resolve(self, spec: JobSpec) -> str:
        """Backend name for a job: tier route if registered, else the default."""
        tier = spec.dimensions.get(ENGINE_TIER_DIMENSION)
        if tier:
            name = self._tier_routes.get(normalize_tier(tier))
            if name in self._backends:
                return name
        if not self._default:
            raise LookupError("BackendRegistry has no backends registered")
        return self._default

    def names(self) -> list[str]:
        return list(self._backends)

    @classmethod
    def single(cls, backend: RenderBackendAdapter, name: str = "") -> "BackendRegistry":
        """Registry routing every job to one backend."""
        registry = cls(tier_routes={})
        registry.register(name or backend.name, backend, default=True)
        return registry


def build_default_registry(api_keys: Optional[dict] = None) -> BackendRegistry:
    """
    Simulated backend always; Kie.ai / fal.ai only when their keys are set,
    so a local run without credentials renders everything as previews.
    """
    keys = api_keys if api_keys is not None else {"kie": config.KIE_API_KEY, "fal": config.FAL_API_KEY}

    registry = BackendRegistry(default="simulated")
    registry.register("simulated", SimulatedBackend(min_delay=0.5, max_delay=2.0))
    if keys.get("kie"):
        registry.register("kie", KieBackend(api_key=keys["kie"]))
    if keys.get("fal"):
        registry.register("fal", FalQueueBackend(api_key=keys["fal"]))
    return registry
