"""
Render backends.

  SimulatedBackend: immediate completion after a delay, no network
  KieBackend: Kie.ai submit → poll record-info
  FalQueueBackend: fal.ai queue submit → poll status → fetch result
"""

from .base import RenderBackendAdapter
from .fal import FalQueueBackend
from .factory import BackendRegistry, build_default_registry
from .kie import KieBackend
from .simulated import SimulatedBackend

__all__ = [
    "RenderBackendAdapter",
    "SimulatedBackend",
    "KieBackend",
    "FalQueueBackend",
    "BackendRegistry",
    "build_default_registry",
]
