"""localdiffuse: on-device Stable Diffusion generation core."""

from localdiffuse.backends.services import GenerationServices
from localdiffuse.config import LocalDiffuseConfig, SchedulerConfig, TilingConfig
from localdiffuse.handlers.generate import GenerationOrchestrator, run_generation
from localdiffuse.job import GenerationRequest, GenerationResult, GenerationState, PipelineSettings

__version__ = "0.1.0"

__all__ = [
    "GenerationOrchestrator",
    "GenerationRequest",
    "GenerationResult",
    "GenerationServices",
    "GenerationState",
    "LocalDiffuseConfig",
    "PipelineSettings",
    "SchedulerConfig",
    "TilingConfig",
    "run_generation",
]
