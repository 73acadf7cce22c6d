# latentforge/core/engine/capability.py
"""Static preset table describing what each pipeline variant can do.

One orchestrator serves every variant; the capability entry tells it which
encoder stacks exist, the latent layout, the default run options and which
schedulers and diffusers are allowed.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from ..conditioning.prompt import EncoderLayout
from ..errors import UnsupportedVariantError
from ..options import (
    DiffuserType,
    ModelType,
    PipelineType,
    SchedulerOptions,
    SchedulerType,
    StageRole,
    parse_enum,
)

ALL_DIFFUSERS: Tuple[DiffuserType, ...] = tuple(DiffuserType)
DISCRETE_SCHEDULERS: Tuple[SchedulerType, ...] = (
    SchedulerType.EULER,
    SchedulerType.EULER_ANCESTRAL,
    SchedulerType.DDPM,
    SchedulerType.KDPM2,
    SchedulerType.DDIM,
)


@dataclass(frozen=True)
class PipelineCapability:
    pipeline_type: PipelineType
    model_type: ModelType
    encoder_layout: EncoderLayout
    defaults: SchedulerOptions
    schedulers: Tuple[SchedulerType, ...]
    diffusers: Tuple[DiffuserType, ...] = ALL_DIFFUSERS
    latent_channels: int = 4
    vae_scale_factor: int = 8
    latent_scale: float = 0.18215
    latent_shift: float = 0.0
    supports_negative_prompt: bool = True
    supports_guidance: bool = True
    added_conditioning: bool = False     # SDXL text_embeds / time_ids
    guidance_embedding: bool = False     # LCM timestep_cond
    pooled_projections: bool = False     # SD3 transformer pooled input

    @property
    def name(self) -> str:
        if self.model_type == ModelType.BASE:
            return self.pipeline_type.value
        return f"{self.pipeline_type.value}/{self.model_type.value}"

    def required_roles(self) -> Tuple[StageRole, ...]:
        roles = {
            EncoderLayout.SINGLE: (StageRole.TOKENIZER, StageRole.TEXT_ENCODER),
            EncoderLayout.DUAL: (StageRole.TOKENIZER, StageRole.TEXT_ENCODER, StageRole.TEXT_ENCODER_2),
            EncoderLayout.DUAL_SECOND_ONLY: (StageRole.TEXT_ENCODER_2,),
            EncoderLayout.TRIPLE: (StageRole.TOKENIZER, StageRole.TEXT_ENCODER, StageRole.TEXT_ENCODER_2),
        }[self.encoder_layout]
        return roles + (StageRole.UNET, StageRole.VAE_DECODER)

    def check_scheduler(self, scheduler_type) -> SchedulerType:
        scheduler_type = parse_enum(SchedulerType, scheduler_type)
        if scheduler_type not in self.schedulers:
            supported = ", ".join(s.value for s in self.schedulers)
            raise UnsupportedVariantError(
                f"Scheduler '{scheduler_type.value}' is not supported by {self.name} (supported: {supported})"
            )
        return scheduler_type

    def check_diffuser(self, diffuser_type) -> DiffuserType:
        diffuser_type = parse_enum(DiffuserType, diffuser_type)
        if diffuser_type not in self.diffusers:
            supported = ", ".join(d.value for d in self.diffusers)
            raise UnsupportedVariantError(
                f"Diffuser '{diffuser_type.value}' is not supported by {self.name} (supported: {supported})"
            )
        return diffuser_type

    def is_guidance_enabled(self, options: SchedulerOptions) -> bool:
        return self.supports_guidance and options.guidance_scale > 1.0


_PRESETS: Dict[Tuple[PipelineType, ModelType], PipelineCapability] = {}


def _preset(cap: PipelineCapability) -> PipelineCapability:
    _PRESETS[(cap.pipeline_type, cap.model_type)] = cap
    return cap


_preset(PipelineCapability(
    pipeline_type=PipelineType.STABLE_DIFFUSION,
    model_type=ModelType.BASE,
    encoder_layout=EncoderLayout.SINGLE,
    defaults=SchedulerOptions(width=512, height=512, inference_steps=30, guidance_scale=7.5,
                              scheduler_type=SchedulerType.EULER_ANCESTRAL),
    schedulers=DISCRETE_SCHEDULERS,
))

_preset(PipelineCapability(
    pipeline_type=PipelineType.LATENT_CONSISTENCY,
    model_type=ModelType.BASE,
    encoder_layout=EncoderLayout.SINGLE,
    defaults=SchedulerOptions(width=512, height=512, inference_steps=4, guidance_scale=1.0,
                              scheduler_type=SchedulerType.LCM),
    schedulers=(SchedulerType.LCM,),
    supports_negative_prompt=False,
    supports_guidance=False,
    guidance_embedding=True,
))

_preset(PipelineCapability(
    pipeline_type=PipelineType.STABLE_DIFFUSION_XL,
    model_type=ModelType.BASE,
    encoder_layout=EncoderLayout.DUAL,
    defaults=SchedulerOptions(width=1024, height=1024, inference_steps=20, guidance_scale=5.0,
                              scheduler_type=SchedulerType.EULER_ANCESTRAL),
    schedulers=DISCRETE_SCHEDULERS,
    latent_scale=0.13025,
    added_conditioning=True,
))

_preset(PipelineCapability(
    pipeline_type=PipelineType.STABLE_DIFFUSION_XL,
    model_type=ModelType.TURBO,
    encoder_layout=EncoderLayout.DUAL,
    defaults=SchedulerOptions(width=512, height=512, inference_steps=2, guidance_scale=0.0,
                              scheduler_type=SchedulerType.EULER_ANCESTRAL,
                              timestep_spacing="trailing"),
    schedulers=DISCRETE_SCHEDULERS,
    latent_scale=0.13025,
    added_conditioning=True,
))

_preset(PipelineCapability(
    pipeline_type=PipelineType.STABLE_DIFFUSION_XL,
    model_type=ModelType.REFINER,
    encoder_layout=EncoderLayout.DUAL_SECOND_ONLY,
    defaults=SchedulerOptions(width=1024, height=1024, inference_steps=20, guidance_scale=5.0,
                              scheduler_type=SchedulerType.EULER_ANCESTRAL, strength=0.3),
    schedulers=DISCRETE_SCHEDULERS,
    diffusers=(DiffuserType.IMAGE_TO_IMAGE, DiffuserType.IMAGE_INPAINT_LEGACY),
    latent_scale=0.13025,
    added_conditioning=True,
))

_preset(PipelineCapability(
    pipeline_type=PipelineType.LATENT_CONSISTENCY_XL,
    model_type=ModelType.BASE,
    encoder_layout=EncoderLayout.DUAL,
    defaults=SchedulerOptions(width=1024, height=1024, inference_steps=4, guidance_scale=1.0,
                              scheduler_type=SchedulerType.LCM),
    schedulers=(SchedulerType.LCM,),
    latent_scale=0.13025,
    supports_negative_prompt=False,
    supports_guidance=False,
    added_conditioning=True,
    guidance_embedding=True,
))

_preset(PipelineCapability(
    pipeline_type=PipelineType.STABLE_DIFFUSION_3,
    model_type=ModelType.BASE,
    encoder_layout=EncoderLayout.TRIPLE,
    defaults=SchedulerOptions(width=1024, height=1024, inference_steps=28, guidance_scale=7.0,
                              scheduler_type=SchedulerType.FLOW_MATCH_EULER, shift=3.0),
    schedulers=(SchedulerType.FLOW_MATCH_EULER,),
    diffusers=(DiffuserType.TEXT_TO_IMAGE,),
    latent_channels=16,
    latent_scale=1.5305,
    latent_shift=0.0609,
    pooled_projections=True,
))


def get_capability(pipeline_type, model_type=ModelType.BASE) -> PipelineCapability:
    pipeline_type = parse_enum(PipelineType, pipeline_type)
    model_type = parse_enum(ModelType, model_type)
    key = (pipeline_type, model_type)
    if key not in _PRESETS:
        raise UnsupportedVariantError(
            f"No preset for pipeline '{pipeline_type.value}' with model type '{model_type.value}'"
        )
    return _PRESETS[key]


def list_capabilities() -> Dict[str, PipelineCapability]:
    return {cap.name: cap for cap in _PRESETS.values()}
