# latentforge/blocks/schedulers/kdpm2.py
"""KDPM2: DPM-Solver-2 with log-space midpoints (k-diffusion ``sample_dpm_2``).

The resampled sigma list interleaves base sigmas and their log midpoints::

    [s0, m0, s1, m1, ..., sk, 0]

An even position takes a first-order step to the midpoint and remembers the
sample; the following odd position re-evaluates the network there and takes
the full step from the remembered sample. One network call per loop
iteration: ``n`` iterations walk ``n // 2 + 1`` spaced base timesteps.
For even ``n`` the tail is ``[..., s(k-1), sk, 0]`` with no midpoint, so
the last two iterations are plain Euler steps.
"""
from __future__ import annotations

import math
from typing import Optional

import numpy as np
import torch

from latentforge.core.block.registry import register_block
from latentforge.core.diffusion.scheduler import SchedulerStepResult, SigmaScheduler
from latentforge.core.errors import ConfigurationError


@register_block("scheduler/kdpm2")
class KDPM2Scheduler(SigmaScheduler):
    block_type = "scheduler/kdpm2"

    def _compute_schedule(self, inference_steps: int):
        n = inference_steps
        base_t = self.spaced_timesteps(n // 2 + 1)
        base_sigmas = np.interp(base_t, np.arange(self.train_timesteps), self.train_sigmas.numpy())
        self.midpoints = (n - 1) // 2

        timesteps, sigmas = [], []
        for i in range(self.midpoints):
            timesteps.append(int(base_t[i]))
            sigmas.append(float(base_sigmas[i]))
            upper, lower = float(base_sigmas[i]), float(base_sigmas[i + 1])
            mid = math.exp((math.log(upper) + math.log(lower)) / 2)
            t_hi, t_lo = int(base_t[i]), int(base_t[i + 1])
            if t_hi - t_lo < 2:
                raise ConfigurationError(
                    f"kdpm2 cannot place a midpoint between timesteps {t_hi} and {t_lo}; "
                    f"use fewer than {n} steps"
                )
            t_mid = int(round(self.sigma_to_t(mid)))
            timesteps.append(min(max(t_mid, t_lo + 1), t_hi - 1))
            sigmas.append(mid)

        tail = 1 if n % 2 else 2
        for i in range(self.midpoints, self.midpoints + tail):
            timesteps.append(int(base_t[i]))
            sigmas.append(float(base_sigmas[i]))

        sigmas.append(0.0)
        return timesteps, torch.tensor(sigmas, dtype=torch.float64)

    def _on_set_timesteps(self) -> None:
        self._prev_sample: Optional[torch.Tensor] = None
        self._prev_sigma: Optional[float] = None

    def is_midpoint(self, index: int) -> bool:
        return index % 2 == 1 and index < 2 * self.midpoints

    def step(self, model_output, timestep, sample) -> SchedulerStepResult:
        index = self.state.index_of(timestep)
        sigma = self.state.sigma_at(index)
        sigma_next = self.state.sigma_at(index + 1)

        orig_dtype = sample.dtype
        sample = sample.to(torch.float32)
        model_output = model_output.to(torch.float32)

        denoised = self.predict_original(model_output, sample, sigma)
        derivative = (sample - denoised) / sigma

        if not self.is_midpoint(index) or self._prev_sample is None:
            prev_sample = sample + derivative * (sigma_next - sigma)
            if self.is_midpoint(index + 1):
                self._prev_sample = sample
                self._prev_sigma = sigma
        else:
            prev_sample = self._prev_sample + derivative * (sigma_next - self._prev_sigma)
            self._prev_sample = None
            self._prev_sigma = None

        self._advance(index)
        return SchedulerStepResult(prev_sample.to(orig_dtype), denoised.to(orig_dtype))
