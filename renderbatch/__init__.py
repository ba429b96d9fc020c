"""
RenderBatch: batch video-ad generation.

Expands a VariationRequest into jobs, sends them to render backends
(simulated, Kie.ai, fal.ai), tracks every job through its lifecycle and
reports batch progress. `renderbatch.main` serves it over HTTP.
"""

__version__ = "0.1.0"
