# latentforge/blocks/schedulers/euler.py
"""Euler discrete scheduler (k-diffusion Algorithm 2, optional churn)."""
from __future__ import annotations

import torch

from latentforge.core.block.registry import register_block
from latentforge.core.diffusion.scheduler import SchedulerStepResult, SigmaScheduler


@register_block("scheduler/euler")
class EulerScheduler(SigmaScheduler):
    """First-order Euler over ``sigma(t) = sqrt((1 - a_t) / a_t)``.

    With ``s_churn > 0`` the step first raises the noise level to
    ``sigma_hat = sigma * (1 + gamma)`` and injects the matching noise.
    """

    block_type = "scheduler/euler"

    def step(self, model_output, timestep, sample) -> SchedulerStepResult:
        index = self.state.index_of(timestep)
        sigma = self.state.sigma_at(index)
        sigma_next = self.state.sigma_at(index + 1)

        orig_dtype = sample.dtype
        sample = sample.to(torch.float32)
        model_output = model_output.to(torch.float32)

        gamma = self.churn_gamma(sigma)
        sigma_hat = sigma * (gamma + 1)
        if gamma > 0:
            eps = self._randn_like(sample) * self.options.s_noise
            sample = sample + eps * (sigma_hat ** 2 - sigma ** 2) ** 0.5

        denoised = self.predict_original(model_output, sample, sigma_hat)
        derivative = (sample - denoised) / sigma_hat
        prev_sample = sample + derivative * (sigma_next - sigma_hat)

        self._advance(index)
        return SchedulerStepResult(prev_sample.to(orig_dtype), denoised.to(orig_dtype))
