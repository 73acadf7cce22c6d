# latentforge/core/diffusion/diffuser.py
"""Diffuser strategies: per-mode recipes around the step loop.

A diffuser decides how the initial latent is built, which part of the
schedule is walked, what the denoiser receives each step and what happens
to the latent after each scheduler step. The orchestrator calls the same
four hooks for every mode:

    prepare_timesteps -> prepare_latents -> (prepare_network_input -> step -> post_step)* -> decode
"""
from __future__ import annotations

import logging
from abc import ABC
from typing import Any, Dict, List, Tuple

import torch

from ..block.registry import BlockRegistry
from ..engine.capability import PipelineCapability
from ..engine.state import DiffusionRun
from ..errors import ConfigurationError
from ..options import DiffuserType, SchedulerOptions, StageRole, parse_enum
from ..stage.manager import StageLifecycleManager
from ..utils.logging import log_duration
from ..utils.tensor import guidance_embedding
from .scheduler import AbstractScheduler, SchedulerStepResult

logger = logging.getLogger(__name__)

GUIDANCE_EMBEDDING_DIM = 256


def strength_start_index(inference_steps: int, strength: float) -> int:
    """First schedule index for a run that keeps ``1 - strength`` of the source."""
    init_timestep = min(int(inference_steps * strength), inference_steps)
    return max(inference_steps - init_timestep, 0)


class AbstractDiffuser(ABC):
    """Text-to-image behaviour; subclasses override the hooks they change."""

    block_type = "diffuser/abstract"
    diffuser_type: DiffuserType = DiffuserType.TEXT_TO_IMAGE
    denoiser_role: StageRole = StageRole.UNET

    def __init__(self, capability: PipelineCapability, manager: StageLifecycleManager):
        self.capability = capability
        self.manager = manager

    def loop_roles(self) -> Tuple[StageRole, ...]:
        """Stages held for the whole step loop."""
        return (self.denoiser_role,)

    def required_roles(self) -> Tuple[StageRole, ...]:
        return self.loop_roles() + (StageRole.VAE_DECODER,)

    def validate(self, run: DiffusionRun) -> None:
        """Check the prompt options carry what this mode needs."""

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def prepare_timesteps(self, scheduler: AbstractScheduler, options: SchedulerOptions) -> List[int]:
        return scheduler.set_timesteps(options.inference_steps)

    def latent_shape(self, options: SchedulerOptions) -> Tuple[int, int, int, int]:
        f = self.capability.vae_scale_factor
        return (1, self.capability.latent_channels, options.height // f, options.width // f)

    async def prepare_latents(self, run: DiffusionRun) -> torch.Tensor:
        noise = run.scheduler.create_random_sample(self.latent_shape(run.scheduler_options))
        return noise * run.scheduler.init_noise_sigma

    async def prepare_network_input(self, run: DiffusionRun, latents: torch.Tensor, timestep: int) -> Dict[str, Any]:
        model_input = torch.cat([latents] * 2) if run.guidance else latents
        model_input = run.scheduler.scale_input(model_input, timestep)
        batch = model_input.shape[0]
        embedding = run.embedding

        inputs: Dict[str, Any] = {
            "sample": model_input,
            "timestep": torch.full((batch,), float(timestep), dtype=torch.float32),
            "encoder_hidden_states": embedding.prompt_embeds,
        }
        options = run.scheduler_options
        if self.capability.added_conditioning:
            inputs["text_embeds"] = embedding.pooled_prompt_embeds
            inputs["time_ids"] = self.time_ids(options, batch, embedding.prompt_embeds.dtype)
        if self.capability.pooled_projections:
            inputs["pooled_projections"] = embedding.pooled_prompt_embeds
        if self.capability.guidance_embedding:
            w = torch.full((batch,), options.guidance_scale - 1.0)
            inputs["timestep_cond"] = guidance_embedding(w, GUIDANCE_EMBEDDING_DIM)
        return inputs

    def post_step(self, run: DiffusionRun, result: SchedulerStepResult, index: int) -> torch.Tensor:
        return result.prev_sample

    async def decode(self, run: DiffusionRun, latents: torch.Tensor) -> torch.Tensor:
        cap = self.capability
        latents = latents / cap.latent_scale + cap.latent_shift
        async with self.manager.acquire(StageRole.VAE_DECODER) as decoder:
            with log_duration(logger, "VAE decode", logging.INFO, run.run_id):
                outputs = await decoder.run_inference({"latent_sample": latents})
        return outputs["sample"]

    # ------------------------------------------------------------------
    # Helpers shared by the image based modes
    # ------------------------------------------------------------------

    @staticmethod
    def time_ids(options: SchedulerOptions, batch: int, dtype: torch.dtype) -> torch.Tensor:
        """SDXL micro-conditioning: original size, crop top-left, target size."""
        h, w = options.height, options.width
        return torch.tensor([[h, w, 0, 0, h, w]], dtype=dtype).repeat(batch, 1)

    async def encode_image(self, run: DiffusionRun, image: torch.Tensor) -> torch.Tensor:
        cap = self.capability
        async with self.manager.acquire(StageRole.VAE_ENCODER) as encoder:
            with log_duration(logger, "VAE encode", logging.INFO, run.run_id):
                outputs = await encoder.run_inference({"sample": image})
        return (outputs["latents"] - cap.latent_shift) * cap.latent_scale

    def __repr__(self) -> str:
        return f"<{type(self).__name__} pipeline={self.capability.name}>"


class ImageDiffuserMixin:
    """Strength-truncated schedule and source-image latent initialisation."""

    def prepare_timesteps(self, scheduler: AbstractScheduler, options: SchedulerOptions) -> List[int]:
        timesteps = scheduler.set_timesteps(options.inference_steps)
        start = strength_start_index(options.inference_steps, options.strength)
        scheduler.state.step_index = start
        logger.debug(f"strength={options.strength}: starting at step {start}/{options.inference_steps}")
        return timesteps[start:]

    def required_roles(self) -> Tuple[StageRole, ...]:
        return super().required_roles() + (StageRole.VAE_ENCODER,)

    def validate(self, run: DiffusionRun) -> None:
        super().validate(run)
        if run.prompt_options.source_image is None:
            raise ConfigurationError(f"{self.diffuser_type.value} requires prompt_options.source_image")
        if not run.timesteps:
            raise ConfigurationError("strength leaves no denoising steps; increase strength or steps")

    async def prepare_latents(self, run: DiffusionRun) -> torch.Tensor:
        image_latents = await self.encode_image(run, run.prompt_options.source_image)
        noise = run.scheduler.create_random_sample(image_latents.shape).to(image_latents.dtype)
        run.metadata["image_latents"] = image_latents
        run.metadata["noise"] = noise
        return run.scheduler.add_noise(image_latents, noise, [run.timesteps[0]])


def create_diffuser(diffuser_type, capability: PipelineCapability, manager: StageLifecycleManager) -> AbstractDiffuser:
    """Build the registered strategy for ``diffuser_type``."""
    diffuser_type = parse_enum(DiffuserType, diffuser_type)
    return BlockRegistry.build(f"diffuser/{diffuser_type.value}", capability, manager)
