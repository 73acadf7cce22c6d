"""Error taxonomy.

Configuration errors fail before the step loop starts. Inference failures are
fatal for the run and carry the stage name and step index. Cancellation is
not an error and has its own exception type outside the hierarchy.
"""
from __future__ import annotations

from typing import Optional


class LatentForgeError(Exception):
    """Base class for all library errors."""


class ConfigurationError(LatentForgeError, ValueError):
    """Invalid pipeline or run configuration."""


class UnsupportedVariantError(ConfigurationError):
    """Unknown or unsupported scheduler / diffuser / pipeline selector."""


class MissingStageError(ConfigurationError):
    """A stage required by the selected pipeline variant is not configured."""

    def __init__(self, role: str, pipeline: str = ""):
        self.role = role
        self.pipeline = pipeline
        where = f" for pipeline '{pipeline}'" if pipeline else ""
        super().__init__(f"Required stage '{role}' is not configured{where}")


class ScheduleContractError(LatentForgeError, RuntimeError):
    """A scheduler was driven with a timestep outside its own schedule."""


class StageInferenceError(LatentForgeError):
    """A collaborator stage failed while loading or running inference."""

    def __init__(
        self,
        stage: str,
        message: str,
        step_index: Optional[int] = None,
        run_id: Optional[str] = None,
    ):
        self.stage = stage
        self.message = message
        self.step_index = step_index
        self.run_id = run_id
        super().__init__(str(self))

    def __str__(self) -> str:
        parts = [f"stage '{self.stage}'"]
        if self.step_index is not None:
            parts.append(f"step {self.step_index}")
        if self.run_id is not None:
            parts.append(f"run {self.run_id}")
        return f"{self.message} ({', '.join(parts)})"


class DiffusionCancelled(Exception):
    """Raised by the orchestrator when a run stops on its cancel signal.

    Not a LatentForgeError: the run ended in the Cancelled state, no image
    is produced.
    """

    def __init__(self, step_index: int = 0, run_id: Optional[str] = None):
        self.step_index = step_index
        self.run_id = run_id
        super().__init__(f"Diffusion run {run_id} cancelled at step {step_index}")
