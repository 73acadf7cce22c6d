# latentforge/blocks/schedulers/ddim.py
"""DDIM (Song et al. 2020, eq. 12). Deterministic at ``eta = 0``."""
from __future__ import annotations

import torch

from latentforge.core.block.registry import register_block
from latentforge.core.diffusion.scheduler import AlphaScheduler, SchedulerStepResult


@register_block("scheduler/ddim")
class DDIMScheduler(AlphaScheduler):
    block_type = "scheduler/ddim"

    def initialize(self) -> None:
        super().initialize()
        # set_alpha_to_one=False, as the SD checkpoints ship it
        self.final_alpha_cumprod = float(self.alphas_cumprod[0])

    def step(self, model_output, timestep, sample) -> SchedulerStepResult:
        index = self.state.index_of(timestep)
        t = self.state.timesteps[index]
        prev_t = self.prev_timestep(index)

        alpha_prod_t = self.alpha_prod(t)
        alpha_prod_prev = self.alpha_prod(prev_t)

        orig_dtype = sample.dtype
        sample = sample.to(torch.float32)
        model_output = model_output.to(torch.float32)

        x0, eps = self.predict_original_and_eps(model_output, sample, alpha_prod_t)

        variance = (1 - alpha_prod_prev) / (1 - alpha_prod_t) * (1 - alpha_prod_t / alpha_prod_prev)
        std_dev_t = self.options.eta * max(variance, 0.0) ** 0.5

        direction = max(1 - alpha_prod_prev - std_dev_t ** 2, 0.0) ** 0.5 * eps
        prev_sample = alpha_prod_prev ** 0.5 * x0 + direction
        if std_dev_t > 0:
            prev_sample = prev_sample + std_dev_t * self._randn_like(sample)

        self._advance(index)
        return SchedulerStepResult(prev_sample.to(orig_dtype), x0.to(orig_dtype))
