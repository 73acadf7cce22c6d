# latentforge/blocks/schedulers/euler_ancestral.py
"""Euler ancestral scheduler: Euler to ``sigma_down`` plus fresh noise of ``sigma_up``."""
from __future__ import annotations

import torch

from latentforge.core.block.registry import register_block
from latentforge.core.diffusion.scheduler import SchedulerStepResult, SigmaScheduler


@register_block("scheduler/euler_ancestral")
class EulerAncestralScheduler(SigmaScheduler):
    block_type = "scheduler/euler_ancestral"

    def step(self, model_output, timestep, sample) -> SchedulerStepResult:
        index = self.state.index_of(timestep)
        sigma_from = self.state.sigma_at(index)
        sigma_to = self.state.sigma_at(index + 1)

        orig_dtype = sample.dtype
        sample = sample.to(torch.float32)
        model_output = model_output.to(torch.float32)

        denoised = self.predict_original(model_output, sample, sigma_from)

        sigma_up = (sigma_to ** 2 * (sigma_from ** 2 - sigma_to ** 2) / sigma_from ** 2) ** 0.5
        sigma_down = (sigma_to ** 2 - sigma_up ** 2) ** 0.5

        derivative = (sample - denoised) / sigma_from
        prev_sample = sample + derivative * (sigma_down - sigma_from)
        if sigma_up > 0:
            prev_sample = prev_sample + self._randn_like(sample) * sigma_up

        self._advance(index)
        return SchedulerStepResult(prev_sample.to(orig_dtype), denoised.to(orig_dtype))
