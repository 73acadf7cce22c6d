# latentforge/blocks/schedulers/ddpm.py
"""DDPM ancestral sampler (Ho et al. 2020, eq. 6-7)."""
from __future__ import annotations

import torch

from latentforge.core.block.registry import register_block
from latentforge.core.diffusion.scheduler import AlphaScheduler, SchedulerStepResult


@register_block("scheduler/ddpm")
class DDPMScheduler(AlphaScheduler):
    """Posterior mean of ``q(x_{t-1} | x_t, x_0)`` plus fixed-small variance noise.

    The previous timestep is the next entry of the resampled schedule, so the
    same formula covers any step count.
    """

    block_type = "scheduler/ddpm"

    def step(self, model_output, timestep, sample) -> SchedulerStepResult:
        index = self.state.index_of(timestep)
        t = self.state.timesteps[index]
        prev_t = self.prev_timestep(index)

        alpha_prod_t = self.alpha_prod(t)
        alpha_prod_prev = self.alpha_prod(prev_t)
        beta_prod_t = 1 - alpha_prod_t
        beta_prod_prev = 1 - alpha_prod_prev
        current_alpha = alpha_prod_t / alpha_prod_prev
        current_beta = 1 - current_alpha

        orig_dtype = sample.dtype
        sample = sample.to(torch.float32)
        model_output = model_output.to(torch.float32)

        x0, _ = self.predict_original_and_eps(model_output, sample, alpha_prod_t)

        coef_x0 = (alpha_prod_prev ** 0.5 * current_beta) / beta_prod_t
        coef_xt = current_alpha ** 0.5 * beta_prod_prev / beta_prod_t
        prev_sample = coef_x0 * x0 + coef_xt * sample

        if prev_t >= 0:
            variance = max(beta_prod_prev / beta_prod_t * current_beta, 1e-20)
            prev_sample = prev_sample + variance ** 0.5 * self._randn_like(sample)

        self._advance(index)
        return SchedulerStepResult(prev_sample.to(orig_dtype), x0.to(orig_dtype))
