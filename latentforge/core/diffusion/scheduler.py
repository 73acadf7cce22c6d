# latentforge/core/diffusion/scheduler.py
"""Scheduler contract and the shared discrete training schedule.

Every scheduler builds its full training schedule on construction
(``initialize``), is resampled once per run with ``set_timesteps`` and is then
driven step by step with timesteps taken from its own schedule.
"""
from __future__ import annotations

import math
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Union

import numpy as np
import torch

from ..engine.state import ScheduleState
from ..errors import ConfigurationError
from ..block.registry import BlockRegistry
from ..options import SchedulerOptions, SchedulerType, parse_enum
from ..utils.tensor import make_generator, randn

logger = logging.getLogger(__name__)

TimestepsLike = Union[int, Sequence[int], torch.Tensor]


@dataclass
class SchedulerStepResult:
    prev_sample: torch.Tensor
    denoised: Optional[torch.Tensor] = None


def betas_for_schedule(name: str, beta_start: float, beta_end: float, train_timesteps: int) -> torch.Tensor:
    """Training betas in float64."""
    if name == "linear":
        return torch.linspace(beta_start, beta_end, train_timesteps, dtype=torch.float64)
    if name == "scaled_linear":
        return torch.linspace(beta_start ** 0.5, beta_end ** 0.5, train_timesteps, dtype=torch.float64) ** 2
    if name == "squaredcos_cap_v2":
        def alpha_bar(t):
            return math.cos((t + 0.008) / 1.008 * math.pi / 2) ** 2
        betas = [
            min(1 - alpha_bar((i + 1) / train_timesteps) / alpha_bar(i / train_timesteps), 0.999)
            for i in range(train_timesteps)
        ]
        return torch.tensor(betas, dtype=torch.float64)
    raise ConfigurationError(f"Unknown beta_schedule '{name}'")


class AbstractScheduler(ABC):
    """Numeric step integrator over a noise schedule."""

    block_type = "scheduler/abstract"

    def __init__(self, options: Optional[SchedulerOptions] = None):
        self.options = options or SchedulerOptions()
        self.train_timesteps = int(self.options.train_timesteps)
        self.generator = make_generator(self.options.seed)
        self.initialize()
        self.state = ScheduleState(
            sigmas=torch.zeros(1),
            timesteps=[],
            train_timesteps=self.train_timesteps,
            options=self.options,
        )

    @abstractmethod
    def initialize(self) -> None:
        """Build the full training-resolution schedule."""

    @abstractmethod
    def _compute_schedule(self, inference_steps: int) -> tuple[List[int], torch.Tensor]:
        """Return ``(timesteps, sigmas)`` for ``inference_steps``, sigmas ending in 0."""

    @abstractmethod
    def step(self, model_output: torch.Tensor, timestep: Any, sample: torch.Tensor) -> SchedulerStepResult:
        ...

    @abstractmethod
    def add_noise(self, original: torch.Tensor, noise: torch.Tensor, timesteps: TimestepsLike) -> torch.Tensor:
        ...

    def set_timesteps(self, inference_steps: int) -> List[int]:
        if inference_steps < 1:
            raise ConfigurationError(f"inference_steps must be >= 1, got {inference_steps}")
        timesteps, sigmas = self._compute_schedule(int(inference_steps))
        self.state = ScheduleState(
            sigmas=sigmas.to(torch.float32),
            timesteps=[int(t) for t in timesteps],
            train_timesteps=self.train_timesteps,
            options=self.options,
        )
        self._on_set_timesteps()
        logger.debug(
            f"{type(self).__name__}: {len(timesteps)} steps, "
            f"t[0]={self.state.timesteps[0]} sigma[0]={float(self.state.sigmas[0]):.4f}"
        )
        return list(self.state.timesteps)

    def _on_set_timesteps(self) -> None:
        pass

    @property
    def timesteps(self) -> List[int]:
        return self.state.timesteps

    @property
    def sigmas(self) -> torch.Tensor:
        return self.state.sigmas

    @property
    def init_noise_sigma(self) -> float:
        return 1.0

    def scale_input(self, sample: torch.Tensor, timestep: Any) -> torch.Tensor:
        return sample

    def create_random_sample(self, shape: Sequence[int], dtype: torch.dtype = torch.float32) -> torch.Tensor:
        """Unscaled standard-normal sample from the seeded generator."""
        return randn(shape, self.generator, dtype=dtype)

    def _randn_like(self, sample: torch.Tensor) -> torch.Tensor:
        return randn(sample.shape, self.generator, dtype=torch.float32).to(sample.device, sample.dtype)

    def _advance(self, index: int) -> None:
        self.state.step_index = index + 1

    @staticmethod
    def _timestep_list(timesteps: TimestepsLike) -> List[int]:
        if isinstance(timesteps, torch.Tensor):
            return [int(t) for t in timesteps.flatten().tolist()]
        if isinstance(timesteps, (int, np.integer)):
            return [int(timesteps)]
        return [int(t) for t in timesteps]

    @staticmethod
    def _broadcast(values: List[float], sample: torch.Tensor) -> torch.Tensor:
        """Per-sample scalars shaped ``[B, 1, 1, ...]`` (or a single scalar)."""
        v = torch.tensor(values, dtype=sample.dtype, device=sample.device)
        if v.numel() == 1:
            return v.reshape(())
        return v.reshape(-1, *([1] * (sample.dim() - 1)))

    def __repr__(self) -> str:
        return f"<{type(self).__name__} steps={self.state.inference_steps}>"


class DiscreteScheduler(AbstractScheduler):
    """Schedulers over the discrete ``betas -> alphas_cumprod`` training table."""

    def initialize(self) -> None:
        o = self.options
        self.betas = betas_for_schedule(o.beta_schedule, o.beta_start, o.beta_end, self.train_timesteps)
        self.alphas = 1.0 - self.betas
        self.alphas_cumprod = torch.cumprod(self.alphas, dim=0)
        self.train_sigmas = ((1 - self.alphas_cumprod) / self.alphas_cumprod) ** 0.5
        self.final_alpha_cumprod = 1.0

    def spaced_timesteps(self, inference_steps: int) -> np.ndarray:
        """Descending integer timesteps for the configured spacing."""
        n, T = inference_steps, self.train_timesteps
        spacing = self.options.timestep_spacing
        if n > T:
            raise ConfigurationError(f"inference_steps ({n}) exceeds train_timesteps ({T})")
        if spacing == "linspace":
            ts = np.linspace(T - 1, 0, n).round()
        elif spacing == "leading":
            step_ratio = T // n
            ts = (np.arange(0, n) * step_ratio).round()[::-1] + self.options.steps_offset
        elif spacing == "trailing":
            step_ratio = T / n
            ts = np.round(np.arange(T, 0, -step_ratio)) - 1
        else:
            raise ConfigurationError(f"Unknown timestep_spacing '{spacing}'")
        ts = np.clip(ts, 0, T - 1).astype(np.int64)
        if np.any(np.diff(ts) >= 0):
            raise ConfigurationError(
                f"{spacing} spacing produced repeated timesteps for {n} steps"
            )
        return ts

    def sigma_for_timestep(self, t: int) -> float:
        return float(self.train_sigmas[int(t)])

    def alpha_prod(self, t: int) -> float:
        if t < 0:
            return float(self.final_alpha_cumprod)
        return float(self.alphas_cumprod[int(t)])

    def sigma_to_t(self, sigma: float) -> float:
        """Fractional training timestep of ``sigma`` by log-sigma interpolation."""
        log_sigmas = np.log(self.train_sigmas.numpy())
        return float(np.interp(np.log(sigma), log_sigmas, np.arange(self.train_timesteps)))


class SigmaScheduler(DiscreteScheduler):
    """Karras-style ``x + sigma * noise`` parameterisation (Euler family)."""

    def _compute_schedule(self, inference_steps: int):
        timesteps = self.spaced_timesteps(inference_steps)
        sigmas = np.interp(timesteps, np.arange(self.train_timesteps), self.train_sigmas.numpy())
        sigmas = np.concatenate([sigmas, [0.0]])
        return timesteps.tolist(), torch.from_numpy(sigmas)

    @property
    def init_noise_sigma(self) -> float:
        sigma_max = float(self.state.sigmas.max()) if self.state.timesteps else float(self.train_sigmas.max())
        if self.options.timestep_spacing in ("linspace", "trailing"):
            return sigma_max
        return (sigma_max ** 2 + 1) ** 0.5

    def scale_input(self, sample: torch.Tensor, timestep: Any) -> torch.Tensor:
        sigma = self.state.sigma_at(self.state.index_of(timestep))
        return sample / ((sigma ** 2 + 1) ** 0.5)

    def predict_original(self, model_output: torch.Tensor, sample: torch.Tensor, sigma: float) -> torch.Tensor:
        pred = self.options.prediction_type
        if pred == "epsilon":
            return sample - sigma * model_output
        if pred == "v_prediction":
            return model_output * (-sigma / (sigma ** 2 + 1) ** 0.5) + sample / (sigma ** 2 + 1)
        if pred == "sample":
            return model_output
        raise ConfigurationError(f"Unknown prediction_type '{pred}'")

    def churn_gamma(self, sigma: float) -> float:
        o = self.options
        if o.s_churn <= 0 or not (o.s_tmin <= sigma <= o.s_tmax):
            return 0.0
        return min(o.s_churn / (len(self.state.sigmas) - 1), 2 ** 0.5 - 1)

    def noise_sigmas(self, timesteps: TimestepsLike) -> List[float]:
        values = []
        for t in self._timestep_list(timesteps):
            if t in self.state.timesteps:
                values.append(self.state.sigma_at(self.state.timesteps.index(t)))
            else:
                values.append(self.sigma_for_timestep(t))
        return values

    def add_noise(self, original: torch.Tensor, noise: torch.Tensor, timesteps: TimestepsLike) -> torch.Tensor:
        sigma = self._broadcast(self.noise_sigmas(timesteps), original)
        return original + noise * sigma


class AlphaScheduler(DiscreteScheduler):
    """``sqrt(a) * x0 + sqrt(1 - a) * noise`` parameterisation (DDPM, DDIM, LCM)."""

    def _compute_schedule(self, inference_steps: int):
        timesteps = self.spaced_timesteps(inference_steps).tolist()
        return timesteps, self._sigmas_for(timesteps)

    def _sigmas_for(self, timesteps: List[int]) -> torch.Tensor:
        sigmas = [self.sigma_for_timestep(t) for t in timesteps] + [0.0]
        return torch.tensor(sigmas, dtype=torch.float64)

    def prev_timestep(self, index: int) -> int:
        ts = self.state.timesteps
        return ts[index + 1] if index + 1 < len(ts) else -1

    def predict_original_and_eps(self, model_output: torch.Tensor, sample: torch.Tensor, alpha_prod_t: float):
        beta_prod_t = 1 - alpha_prod_t
        pred = self.options.prediction_type
        if pred == "epsilon":
            x0 = (sample - beta_prod_t ** 0.5 * model_output) / alpha_prod_t ** 0.5
            eps = model_output
        elif pred == "sample":
            x0 = model_output
            eps = (sample - alpha_prod_t ** 0.5 * x0) / beta_prod_t ** 0.5
        elif pred == "v_prediction":
            x0 = alpha_prod_t ** 0.5 * sample - beta_prod_t ** 0.5 * model_output
            eps = alpha_prod_t ** 0.5 * model_output + beta_prod_t ** 0.5 * sample
        else:
            raise ConfigurationError(f"Unknown prediction_type '{pred}'")
        return x0, eps

    def add_noise(self, original: torch.Tensor, noise: torch.Tensor, timesteps: TimestepsLike) -> torch.Tensor:
        alphas = [self.alpha_prod(t) for t in self._timestep_list(timesteps)]
        sqrt_alpha = self._broadcast([a ** 0.5 for a in alphas], original)
        sqrt_one_minus = self._broadcast([(1 - a) ** 0.5 for a in alphas], original)
        return sqrt_alpha * original + sqrt_one_minus * noise


def create_scheduler(options: SchedulerOptions) -> AbstractScheduler:
    """Build the registered scheduler for ``options.scheduler_type``."""
    scheduler_type = parse_enum(SchedulerType, options.scheduler_type)
    return BlockRegistry.build(f"scheduler/{scheduler_type.value}", options)
