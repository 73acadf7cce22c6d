# latentforge/blocks/schedulers/lcm.py
"""Latent consistency scheduler (Luo et al. 2023).

Timesteps are drawn from the ``original_inference_steps`` grid the model was
distilled on; every step predicts the clean latent through the consistency
boundary condition and, except on the last step, re-noises it to the next
timestep.
"""
from __future__ import annotations

import numpy as np
import torch

from latentforge.core.block.registry import register_block
from latentforge.core.diffusion.scheduler import AlphaScheduler, SchedulerStepResult
from latentforge.core.errors import ConfigurationError

SIGMA_DATA = 0.5
TIMESTEP_SCALING = 10.0


@register_block("scheduler/lcm")
class LCMScheduler(AlphaScheduler):
    block_type = "scheduler/lcm"

    def origin_timesteps(self) -> np.ndarray:
        original_steps = int(self.options.original_inference_steps)
        c = self.train_timesteps // original_steps
        return np.arange(1, original_steps + 1) * c - 1

    def _compute_schedule(self, inference_steps: int):
        origin = self.origin_timesteps()
        if inference_steps > len(origin):
            raise ConfigurationError(
                f"LCM supports at most {len(origin)} steps (original_inference_steps), "
                f"got {inference_steps}"
            )
        skipping_step = len(origin) // inference_steps
        timesteps = origin[::-skipping_step][:inference_steps].tolist()
        return timesteps, self._sigmas_for(timesteps)

    @staticmethod
    def boundary_scalings(t: int):
        scaled = t * TIMESTEP_SCALING
        c_skip = SIGMA_DATA ** 2 / (scaled ** 2 + SIGMA_DATA ** 2)
        c_out = scaled / (scaled ** 2 + SIGMA_DATA ** 2) ** 0.5
        return c_skip, c_out

    def step(self, model_output, timestep, sample) -> SchedulerStepResult:
        index = self.state.index_of(timestep)
        t = self.state.timesteps[index]
        prev_t = self.prev_timestep(index)

        alpha_prod_t = self.alpha_prod(t)
        alpha_prod_prev = self.alpha_prod(prev_t)

        orig_dtype = sample.dtype
        sample = sample.to(torch.float32)
        model_output = model_output.to(torch.float32)

        c_skip, c_out = self.boundary_scalings(t)
        x0, _ = self.predict_original_and_eps(model_output, sample, alpha_prod_t)
        denoised = c_out * x0 + c_skip * sample

        if index + 1 < len(self.state.timesteps):
            noise = self._randn_like(sample)
            prev_sample = alpha_prod_prev ** 0.5 * denoised + (1 - alpha_prod_prev) ** 0.5 * noise
        else:
            prev_sample = denoised

        self._advance(index)
        return SchedulerStepResult(prev_sample.to(orig_dtype), denoised.to(orig_dtype))
