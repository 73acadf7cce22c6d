# latentforge/core/engine/orchestrator.py
"""PipelineOrchestrator: the one run engine for every pipeline variant.

State machine::

    IDLE -> LOADING -> IDLE
    IDLE -> ENCODING -> DENOISING -> DECODING -> DONE
    any -> UNLOADING -> IDLE
    ENCODING | DENOISING | DECODING -> CANCELLED
    any -> FAILED

Everything variant specific comes from the PipelineCapability preset and
from the registered scheduler and diffuser blocks.
"""
from __future__ import annotations

import dataclasses
import logging
import random
import time
import uuid
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any, AsyncIterator, Iterator, List, Mapping, Optional, Union

import torch
from omegaconf import DictConfig
from tqdm.auto import tqdm

from ..conditioning.prompt import PromptEncoder
from ..diffusion.diffuser import create_diffuser
from ..diffusion.scheduler import create_scheduler
from ..errors import DiffusionCancelled, MissingStageError, StageInferenceError
from ..options import (
    BatchOptionType,
    BatchOptions,
    MemoryMode,
    PromptOptions,
    SchedulerOptions,
    StageRole,
    UnetMode,
    parse_enum,
)
from ..stage.handle import StageHandle
from ..stage.manager import StageLifecycleManager
from ..utils.config import build_scheduler_options, load_config
from ..utils.tensor import apply_guidance
from .capability import PipelineCapability, get_capability
from .state import BatchResult, DiffusionRun, PipelineState, ProgressCallback

logger = logging.getLogger(__name__)

MAX_SEED = 2 ** 31 - 1

SchedulerOptionsLike = Union[SchedulerOptions, DictConfig, Mapping[str, Any], None]


class PipelineOrchestrator:
    """Loads stages, runs prompt -> latent -> image and reports progress."""

    def __init__(
        self,
        capability: PipelineCapability,
        manager: StageLifecycleManager,
        name: Optional[str] = None,
        show_progress: bool = True,
    ):
        self.capability = capability
        self.manager = manager
        self.name = name or capability.name
        self.show_progress = show_progress
        self.prompt_encoder = PromptEncoder(manager, capability.encoder_layout)
        self.state = PipelineState.IDLE
        self.unet_mode: Optional[UnetMode] = None

        for role in capability.required_roles():
            if not manager.has(role):
                raise MissingStageError(role.value, self.name)

    @classmethod
    def from_config(
        cls,
        config: Union[str, Path, DictConfig, Mapping[str, Any]],
        stages: Mapping[Any, StageHandle],
    ) -> "PipelineOrchestrator":
        """Build from a pipeline config (``_base_`` inheritance supported).

        Recognised keys: ``pipeline_type``, ``model_type``, ``memory_mode``,
        ``name`` and a ``scheduler`` section overriding the preset defaults.
        """
        cfg = load_config(config)
        capability = get_capability(cfg.get("pipeline_type"), cfg.get("model_type", "base"))
        if cfg.get("scheduler"):
            defaults = build_scheduler_options(capability.defaults, cfg.scheduler)
            capability = dataclasses.replace(capability, defaults=defaults)
        manager = StageLifecycleManager(stages, cfg.get("memory_mode", MemoryMode.MAXIMUM.value))
        return cls(capability, manager, name=cfg.get("name"))

    @property
    def default_options(self) -> SchedulerOptions:
        return self.capability.defaults.replace()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load(self, unet_mode: UnetMode | str = UnetMode.DEFAULT) -> None:
        self.unet_mode = parse_enum(UnetMode, unet_mode)
        self.state = PipelineState.LOADING
        logger.info(f"[{self.name}] Loading (memory={self.manager.memory_mode.value}, unet={self.unet_mode.value})")
        try:
            await self.manager.load_all(self.unet_mode)
        except Exception:
            self.state = PipelineState.FAILED
            raise
        self.state = PipelineState.IDLE

    async def unload(self) -> None:
        """Release every stage. Safe in any state."""
        previous = self.state
        self.state = PipelineState.UNLOADING
        try:
            await self.manager.unload_all()
        finally:
            self.state = PipelineState.IDLE if not previous.is_terminal else previous
        logger.info(f"[{self.name}] Unloaded")

    # ------------------------------------------------------------------
    # Single run
    # ------------------------------------------------------------------

    def resolve_options(self, scheduler_options: SchedulerOptionsLike = None) -> SchedulerOptions:
        """Preset defaults merged with overrides; seed 0/None replaced by a random seed."""
        if isinstance(scheduler_options, SchedulerOptions):
            options = scheduler_options.replace()
        else:
            if isinstance(scheduler_options, Mapping) and "seed" in scheduler_options and scheduler_options["seed"] is None:
                scheduler_options = {**scheduler_options, "seed": 0}
            options = build_scheduler_options(self.capability.defaults, scheduler_options)
        if not options.seed:
            options.seed = random.randint(1, MAX_SEED)
        return options.validate()

    def create_run(
        self,
        prompt_options: PromptOptions,
        scheduler_options: SchedulerOptionsLike = None,
        control_net: Optional[StageHandle] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Any = None,
    ) -> DiffusionRun:
        """Validate everything a run needs before any stage is touched."""
        options = self.resolve_options(scheduler_options)
        self.capability.check_scheduler(options.scheduler_type)

        diffuser_type = self.capability.check_diffuser(
            prompt_options.resolve_diffuser_type(has_control_net=control_net is not None)
        )
        diffuser = create_diffuser(diffuser_type, self.capability, self.manager)
        for role in diffuser.required_roles():
            if role == StageRole.CONTROL_NET and control_net is not None:
                continue
            if not self.manager.has(role):
                raise MissingStageError(role.value, self.name)

        if not self.capability.supports_negative_prompt and prompt_options.negative_prompt:
            logger.debug(f"[{self.name}] negative prompt ignored, pipeline has no negative guidance")
            prompt_options = prompt_options.replace(negative_prompt="")

        scheduler = create_scheduler(options)
        run = DiffusionRun(
            run_id=uuid.uuid4().hex[:8],
            scheduler_options=options,
            prompt_options=prompt_options,
            scheduler=scheduler,
            diffuser=diffuser,
            guidance=self.capability.is_guidance_enabled(options),
            cancel_event=cancel_event,
            progress_callback=progress_callback,
        )
        run.timesteps = diffuser.prepare_timesteps(scheduler, options)
        diffuser.validate(run)
        return run

    async def run(
        self,
        prompt_options: PromptOptions,
        scheduler_options: SchedulerOptionsLike = None,
        control_net: Optional[StageHandle] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Any = None,
    ) -> torch.Tensor:
        """Generate one image tensor ``[1, 3, H, W]``.

        Raises DiffusionCancelled when ``cancel_event.is_set()`` trips; no
        image is decoded in that case.
        """
        run = self.create_run(prompt_options, scheduler_options, control_net, progress_callback, cancel_event)
        options = run.scheduler_options
        logger.info(
            f"[{self.name}] Run {run.run_id}: {run.diffuser.diffuser_type.value}, "
            f"{options.scheduler_type.value}, {len(run.timesteps)} steps, {options.width}x{options.height}, "
            f"guidance={options.guidance_scale} seed={options.seed}"
        )
        t0 = time.time()

        try:
            async with AsyncExitStack() as stack:
                self._check_cancel(run)
                self.state = PipelineState.ENCODING
                run.embedding = await self.prompt_encoder.encode(
                    run.prompt_options.prompt, run.prompt_options.negative_prompt, guidance=run.guidance
                )
                run.latents = await run.diffuser.prepare_latents(run)

                self.state = PipelineState.DENOISING
                for role in run.diffuser.loop_roles():
                    if role == StageRole.CONTROL_NET and control_net is not None:
                        scope = self.manager.acquire_handle(control_net)
                    else:
                        scope = self.manager.acquire(role)
                    run.handles[role] = await stack.enter_async_context(scope)
                latents = await self._denoise(run)
                await stack.aclose()

                self._check_cancel(run)
                self.state = PipelineState.DECODING
                image = await run.diffuser.decode(run, latents)
        except DiffusionCancelled:
            self.state = PipelineState.CANCELLED
            logger.info(f"[{self.name}] Run {run.run_id} cancelled after {run.step_count} steps")
            raise
        except StageInferenceError as e:
            if e.run_id is None:
                e.run_id = run.run_id
            self.state = PipelineState.FAILED
            logger.error(f"[{self.name}] Run {run.run_id} failed: {e}")
            raise
        except Exception:
            self.state = PipelineState.FAILED
            raise

        self.state = PipelineState.DONE
        logger.info(f"[{self.name}] Run {run.run_id} done in {time.time() - t0:.2f}s")
        return image

    async def _denoise(self, run: DiffusionRun) -> torch.Tensor:
        latents = run.latents
        denoiser = run.handles[run.diffuser.denoiser_role]
        total = len(run.timesteps)
        guidance_scale = run.scheduler_options.guidance_scale

        for i, t in enumerate(tqdm(run.timesteps, desc=f"{self.name} denoise", disable=not self.show_progress)):
            self._check_cancel(run)
            try:
                inputs = await run.diffuser.prepare_network_input(run, latents, t)
                outputs = await denoiser.run_inference(inputs)
            except StageInferenceError as e:
                e.step_index = i
                raise

            noise_pred = outputs["sample"]
            if run.guidance:
                noise_pred = apply_guidance(noise_pred, guidance_scale)

            result = run.scheduler.step(noise_pred, t, latents)
            latents = run.diffuser.post_step(run, result, i)
            run.latents = latents
            run.step_count += 1

            if run.progress_callback is not None:
                run.progress_callback(run.step_count, total, latents)
        return latents

    @staticmethod
    def _check_cancel(run: DiffusionRun) -> None:
        if run.is_cancelled:
            raise DiffusionCancelled(run.step_count, run.run_id)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def batch_variations(self, batch_options: BatchOptions, base: SchedulerOptions) -> Iterator[SchedulerOptions]:
        vary_by = parse_enum(BatchOptionType, batch_options.vary_by)
        if vary_by == BatchOptionType.SEED:
            rng = random.Random(base.seed)
            for i in range(batch_options.count):
                yield base.replace(seed=base.seed if i == 0 else rng.randint(1, MAX_SEED))
        elif vary_by == BatchOptionType.STEPS:
            for steps in _inclusive_range(batch_options):
                yield base.replace(inference_steps=int(steps))
        elif vary_by == BatchOptionType.GUIDANCE_SCALE:
            for scale in _inclusive_range(batch_options):
                yield base.replace(guidance_scale=float(scale))
        else:
            schedulers = self.capability.schedulers
            if batch_options.count > 0:
                schedulers = schedulers[:batch_options.count]
            for scheduler_type in schedulers:
                yield base.replace(scheduler_type=scheduler_type)

    async def run_batch(
        self,
        batch_options: BatchOptions,
        prompt_options: PromptOptions,
        scheduler_options: SchedulerOptionsLike = None,
        control_net: Optional[StageHandle] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Any = None,
    ) -> AsyncIterator[BatchResult]:
        """Run one generation per variation, sequentially, yielding as they finish."""
        base = self.resolve_options(scheduler_options)
        for options in self.batch_variations(batch_options, base):
            image = await self.run(prompt_options, options, control_net, progress_callback, cancel_event)
            yield BatchResult(image=image, scheduler_options=options)

    def __repr__(self) -> str:
        return f"<PipelineOrchestrator {self.name} state={self.state.value} {self.manager!r}>"


def _inclusive_range(batch_options: BatchOptions) -> List[float]:
    start, stop, step = batch_options.value_from, batch_options.value_to, batch_options.increment
    if step <= 0:
        raise ValueError(f"BatchOptions.increment must be > 0, got {step}")
    values, i = [], 0
    while True:
        value = round(start + i * step, 6)
        if value > stop + 1e-9:
            break
        values.append(value)
        i += 1
    return values
