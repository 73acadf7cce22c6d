# latentforge/__init__.py
"""latentforge: latent diffusion orchestration.

One orchestrator drives every supported pipeline family (SD 1.x, SDXL,
SD3, LCM) through interchangeable scheduler and diffuser blocks::

    from latentforge import PipelineOrchestrator, PromptOptions
    from latentforge.integration import build_pipeline

    pipe = build_pipeline("stable-diffusion-v1-5/stable-diffusion-v1-5", "stable_diffusion")
    await pipe.load()
    image = await pipe.run(PromptOptions(prompt="a cat"), {"inference_steps": 20, "seed": 42})
"""
__version__ = "0.1.0"

# Block auto-registration
from latentforge.core.block.registry import auto_discover as _auto_discover
_auto_discover()

from latentforge.core.conditioning import PromptEmbedding, PromptEncoder  # noqa: E402
from latentforge.core.engine.capability import PipelineCapability, get_capability, list_capabilities  # noqa: E402
from latentforge.core.engine.orchestrator import PipelineOrchestrator  # noqa: E402
from latentforge.core.engine.state import BatchResult, PipelineState  # noqa: E402
from latentforge.core.errors import (  # noqa: E402
    ConfigurationError,
    DiffusionCancelled,
    LatentForgeError,
    MissingStageError,
    ScheduleContractError,
    StageInferenceError,
    UnsupportedVariantError,
)
from latentforge.core.options import (  # noqa: E402
    BatchOptionType,
    BatchOptions,
    DiffuserType,
    MemoryMode,
    ModelType,
    PipelineType,
    PromptOptions,
    SchedulerOptions,
    SchedulerType,
    StageRole,
    UnetMode,
)
from latentforge.core.stage import ExecutionTarget, StageConfig, StageHandle, StageLifecycleManager  # noqa: E402

__all__ = [
    "PipelineOrchestrator",
    "PipelineCapability",
    "get_capability",
    "list_capabilities",
    "PipelineState",
    "BatchResult",
    "PromptEncoder",
    "PromptEmbedding",
    "StageHandle",
    "StageConfig",
    "ExecutionTarget",
    "StageLifecycleManager",
    "SchedulerOptions",
    "PromptOptions",
    "BatchOptions",
    "BatchOptionType",
    "SchedulerType",
    "DiffuserType",
    "PipelineType",
    "ModelType",
    "MemoryMode",
    "UnetMode",
    "StageRole",
    "LatentForgeError",
    "ConfigurationError",
    "UnsupportedVariantError",
    "MissingStageError",
    "ScheduleContractError",
    "StageInferenceError",
    "DiffusionCancelled",
]
