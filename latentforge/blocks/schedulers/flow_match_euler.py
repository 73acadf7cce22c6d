# latentforge/blocks/schedulers/flow_match_euler.py
"""Flow matching Euler discrete scheduler (SD3, rectified flow).

Sigmas are a shifted linear ramp ``shift * x / (1 + (shift - 1) * x)`` over
the normalised training timesteps; the network predicts a velocity and the
step is a plain Euler update in sigma, with optional stochastic churn.
"""
from __future__ import annotations

import numpy as np
import torch

from latentforge.core.block.registry import register_block
from latentforge.core.diffusion.scheduler import AbstractScheduler, SchedulerStepResult
from latentforge.core.errors import ConfigurationError


@register_block("scheduler/flow_match_euler_discrete")
class FlowMatchEulerDiscreteScheduler(AbstractScheduler):
    block_type = "scheduler/flow_match_euler_discrete"

    def shifted(self, sigmas: np.ndarray) -> np.ndarray:
        shift = float(self.options.shift)
        return shift * sigmas / (1 + (shift - 1) * sigmas)

    def initialize(self) -> None:
        T = self.train_timesteps
        timesteps = np.linspace(1, T, T, dtype=np.float64)[::-1]
        sigmas = self.shifted(timesteps / T)
        self.train_sigmas = torch.from_numpy(sigmas.copy())
        self.sigma_max = float(sigmas[0])
        self.sigma_min = float(sigmas[-1])

    def _compute_schedule(self, inference_steps: int):
        T = self.train_timesteps
        ts = np.linspace(self.sigma_max * T, self.sigma_min * T, inference_steps)
        sigmas = self.shifted(ts / T)
        timesteps = (sigmas * T).astype(np.int64)
        if np.any(np.diff(timesteps) >= 0):
            raise ConfigurationError(
                f"flow match schedule produced repeated timesteps for {inference_steps} steps "
                f"(shift={self.options.shift})"
            )
        sigmas = np.concatenate([sigmas, [0.0]])
        return timesteps.tolist(), torch.from_numpy(sigmas)

    def step(self, model_output, timestep, sample) -> SchedulerStepResult:
        index = self.state.index_of(timestep)
        sigma = self.state.sigma_at(index)
        sigma_next = self.state.sigma_at(index + 1)
        o = self.options

        orig_dtype = sample.dtype
        sample = sample.to(torch.float32)
        model_output = model_output.to(torch.float32)

        gamma = 0.0
        if o.s_churn > 0 and o.s_tmin <= sigma <= o.s_tmax:
            gamma = min(o.s_churn / (len(self.state.sigmas) - 1), 2 ** 0.5 - 1)
        sigma_hat = sigma * (gamma + 1)
        if gamma > 0:
            eps = self._randn_like(sample) * o.s_noise
            sample = sample + eps * (sigma_hat ** 2 - sigma ** 2) ** 0.5

        denoised = sample - model_output * sigma_hat
        derivative = (sample - denoised) / sigma_hat
        prev_sample = sample + derivative * (sigma_next - sigma_hat)

        self._advance(index)
        return SchedulerStepResult(prev_sample.to(orig_dtype), denoised.to(orig_dtype))

    def add_noise(self, original, noise, timesteps) -> torch.Tensor:
        sigma = max(self.state.sigma_at(self.state.index_of(t)) for t in self._timestep_list(timesteps))
        return original + noise * sigma
