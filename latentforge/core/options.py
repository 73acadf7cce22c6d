# latentforge/core/options.py
"""Run options and selector enums.

SchedulerOptions is also an OmegaConf structured-config schema, so every
field has a primitive or enum type and a default.
"""
from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Type, TypeVar

import torch

from .errors import ConfigurationError, UnsupportedVariantError

E = TypeVar("E", bound=Enum)


class SchedulerType(str, Enum):
    EULER = "euler"
    EULER_ANCESTRAL = "euler_ancestral"
    DDPM = "ddpm"
    DDIM = "ddim"
    KDPM2 = "kdpm2"
    LCM = "lcm"
    FLOW_MATCH_EULER = "flow_match_euler_discrete"


class DiffuserType(str, Enum):
    TEXT_TO_IMAGE = "text_to_image"
    IMAGE_TO_IMAGE = "image_to_image"
    IMAGE_INPAINT_LEGACY = "image_inpaint_legacy"
    CONTROL_NET = "control_net"
    CONTROL_NET_IMAGE = "control_net_image"


class PipelineType(str, Enum):
    STABLE_DIFFUSION = "stable_diffusion"
    STABLE_DIFFUSION_XL = "stable_diffusion_xl"
    STABLE_DIFFUSION_3 = "stable_diffusion_3"
    LATENT_CONSISTENCY = "latent_consistency"
    LATENT_CONSISTENCY_XL = "latent_consistency_xl"


class ModelType(str, Enum):
    BASE = "base"
    TURBO = "turbo"
    REFINER = "refiner"


class MemoryMode(str, Enum):
    MAXIMUM = "maximum"   # preload everything, keep until unload()
    MINIMUM = "minimum"   # load right before use, unload right after


class UnetMode(str, Enum):
    DEFAULT = "default"
    CONTROL_NET = "control_net"
    BOTH = "both"


class BatchOptionType(str, Enum):
    SEED = "seed"
    GUIDANCE_SCALE = "guidance_scale"
    STEPS = "steps"
    SCHEDULER = "scheduler"


class StageRole(str, Enum):
    TOKENIZER = "tokenizer"
    TOKENIZER_2 = "tokenizer_2"
    TOKENIZER_3 = "tokenizer_3"
    TEXT_ENCODER = "text_encoder"
    TEXT_ENCODER_2 = "text_encoder_2"
    TEXT_ENCODER_3 = "text_encoder_3"
    UNET = "unet"
    CONTROL_NET_UNET = "control_net_unet"
    CONTROL_NET = "control_net"
    VAE_ENCODER = "vae_encoder"
    VAE_DECODER = "vae_decoder"


def parse_enum(enum_cls: Type[E], value: Any) -> E:
    """Coerce a string (value or member name) into ``enum_cls``.

    Unknown selectors raise UnsupportedVariantError, so a bad config fails at
    construction time instead of inside the step loop.
    """
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        key = value.strip()
        for member in enum_cls:
            if key.lower() in (member.value, member.name.lower()):
                return member
    choices = ", ".join(m.value for m in enum_cls)
    raise UnsupportedVariantError(
        f"Unsupported {enum_cls.__name__} '{value}'. Expected one of: {choices}"
    )


@dataclass
class SchedulerOptions:
    """Per-run numeric settings (size, steps, guidance, seed, scheduler)."""

    width: int = 512
    height: int = 512
    inference_steps: int = 30
    guidance_scale: float = 7.5
    seed: int = 0                       # 0 -> random seed chosen per run
    scheduler_type: SchedulerType = SchedulerType.EULER_ANCESTRAL
    shift: float = 3.0
    strength: float = 0.6

    # Training schedule
    train_timesteps: int = 1000
    beta_start: float = 0.00085
    beta_end: float = 0.012
    beta_schedule: str = "scaled_linear"
    timestep_spacing: str = "linspace"
    steps_offset: int = 0
    prediction_type: str = "epsilon"

    # Variant specific
    eta: float = 0.0
    original_inference_steps: int = 50
    conditioning_scale: float = 0.7
    s_churn: float = 0.0
    s_tmin: float = 0.0
    s_tmax: float = math.inf
    s_noise: float = 1.0

    def validate(self) -> "SchedulerOptions":
        if self.width <= 0 or self.height <= 0 or self.width % 8 or self.height % 8:
            raise ConfigurationError(
                f"width/height must be positive multiples of 8, got {self.width}x{self.height}"
            )
        if self.inference_steps < 1:
            raise ConfigurationError(f"inference_steps must be >= 1, got {self.inference_steps}")
        if not 0.0 <= self.strength <= 1.0:
            raise ConfigurationError(f"strength must be in [0, 1], got {self.strength}")
        if self.train_timesteps < self.inference_steps:
            raise ConfigurationError("train_timesteps must be >= inference_steps")
        return self

    def replace(self, **changes: Any) -> "SchedulerOptions":
        return dataclasses.replace(self, **changes)

    @property
    def is_guidance_enabled(self) -> bool:
        return self.guidance_scale > 1.0


@dataclass
class PromptOptions:
    """Prompt text plus optional pixel-space inputs.

    The source image is a ``[1, 3, H, W]`` tensor in ``[-1, 1]``, the control
    image the same shape in ``[0, 1]``. The mask is ``[1, 1, H, W]`` in
    ``[0, 1]`` where 1 marks the region to regenerate.
    """

    prompt: str = ""
    negative_prompt: str = ""
    diffuser_type: Optional[DiffuserType] = None
    source_image: Optional[torch.Tensor] = None
    mask: Optional[torch.Tensor] = None
    control_image: Optional[torch.Tensor] = None

    def resolve_diffuser_type(self, has_control_net: bool = False) -> DiffuserType:
        if self.diffuser_type is not None:
            return parse_enum(DiffuserType, self.diffuser_type)
        if has_control_net or self.control_image is not None:
            if self.source_image is not None:
                return DiffuserType.CONTROL_NET_IMAGE
            return DiffuserType.CONTROL_NET
        if self.source_image is not None:
            if self.mask is not None:
                return DiffuserType.IMAGE_INPAINT_LEGACY
            return DiffuserType.IMAGE_TO_IMAGE
        return DiffuserType.TEXT_TO_IMAGE

    def replace(self, **changes: Any) -> "PromptOptions":
        return dataclasses.replace(self, **changes)


@dataclass
class BatchOptions:
    """Which scheduler parameter a batch run varies, and over what range.

    ``seed`` and ``scheduler`` use ``count``; ``steps`` and
    ``guidance_scale`` walk ``value_from..value_to`` by ``increment``.
    """

    vary_by: BatchOptionType = BatchOptionType.SEED
    count: int = 1
    value_from: float = 0.0
    value_to: float = 0.0
    increment: float = 1.0
