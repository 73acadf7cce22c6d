# latentforge/core/engine/state.py
"""Run-scoped state containers.

Plain data objects passed between the orchestrator, the active diffuser and
the scheduler. Nothing here is shared between two runs.
"""
from __future__ import annotations

import torch
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from ..errors import ScheduleContractError
from ..options import PromptOptions, SchedulerOptions, StageRole

if TYPE_CHECKING:
    from ..conditioning.prompt import PromptEmbedding
    from ..diffusion.diffuser import AbstractDiffuser
    from ..diffusion.scheduler import AbstractScheduler
    from ..stage.handle import StageHandle


class PipelineState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    ENCODING = "encoding"
    DENOISING = "denoising"
    DECODING = "decoding"
    UNLOADING = "unloading"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.DONE, PipelineState.CANCELLED, PipelineState.FAILED)


ProgressCallback = Callable[[int, int, torch.Tensor], None]


@dataclass
class ScheduleState:
    """Resampled schedule of one run.

    ``sigmas`` has ``len(timesteps) + 1`` entries, the last one exactly 0.
    ``timesteps`` is strictly decreasing and lines up with ``sigmas[:-1]``.
    """

    sigmas: torch.Tensor
    timesteps: List[int]
    train_timesteps: int
    options: SchedulerOptions
    step_index: int = 0

    @property
    def inference_steps(self) -> int:
        return len(self.timesteps)

    def index_of(self, timestep: Any) -> int:
        """Schedule position of ``timestep``; the current step is tried first."""
        t = int(timestep.item() if isinstance(timestep, torch.Tensor) else timestep)
        if self.step_index < len(self.timesteps) and self.timesteps[self.step_index] == t:
            return self.step_index
        try:
            return self.timesteps.index(t)
        except ValueError:
            raise ScheduleContractError(
                f"Timestep {t} is not part of the current schedule "
                f"({len(self.timesteps)} steps, first={self.timesteps[:1]})"
            ) from None

    def sigma_at(self, index: int) -> float:
        return float(self.sigmas[index])

    def __repr__(self) -> str:
        return (
            f"<ScheduleState steps={self.inference_steps} step_index={self.step_index} "
            f"sigma_max={float(self.sigmas[0]) if len(self.sigmas) else None}>"
        )


@dataclass
class DiffusionProgress:
    step: int            # 1-based count of completed steps
    total: int
    latents: torch.Tensor
    elapsed: float = 0.0


@dataclass
class BatchResult:
    image: torch.Tensor
    scheduler_options: SchedulerOptions


@dataclass
class DiffusionRun:
    """Everything one ``run`` call owns, created at its start and dropped at its end."""

    run_id: str
    scheduler_options: SchedulerOptions
    prompt_options: "PromptOptions"
    scheduler: "AbstractScheduler"
    diffuser: "AbstractDiffuser"
    guidance: bool = False
    embedding: Optional["PromptEmbedding"] = None
    latents: Optional[torch.Tensor] = None
    timesteps: List[int] = field(default_factory=list)
    handles: Dict["StageRole", "StageHandle"] = field(default_factory=dict)
    cancel_event: Any = None
    progress_callback: Optional[ProgressCallback] = None
    step_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def schedule(self) -> ScheduleState:
        return self.scheduler.state

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event is not None and bool(self.cancel_event.is_set())

    def __repr__(self) -> str:
        shape = tuple(self.latents.shape) if self.latents is not None else None
        return f"<DiffusionRun {self.run_id} step={self.step_count}/{len(self.timesteps)} shape={shape}>"
