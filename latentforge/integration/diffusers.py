# latentforge/integration/diffusers.py
"""Stage backends over HuggingFace diffusers / transformers checkpoints.

Each backend implements the StageBackend contract (``load``, ``unload``,
``run(inputs) -> outputs``) for one folder of a diffusers-layout
checkpoint. Inputs arrive on the host in float32; they are moved to the
execution target for the call and results come back as host float32.

Usage::

    orchestrator = build_pipeline(
        "stabilityai/stable-diffusion-xl-base-1.0",
        "stable_diffusion_xl",
        memory_mode="minimum",
        target=ExecutionTarget(device="cuda", dtype="float16"),
    )
"""
from __future__ import annotations

import gc
import logging
from typing import Any, Dict, Optional

import torch
from diffusers import AutoencoderKL, ControlNetModel, SD3Transformer2DModel, UNet2DConditionModel
from transformers import (
    AutoTokenizer,
    CLIPTextModel,
    CLIPTextModelWithProjection,
    T5EncoderModel,
)

from ..core.conditioning.prompt import T5_HIDDEN_SIZE, EncoderLayout
from ..core.engine.capability import get_capability
from ..core.engine.orchestrator import PipelineOrchestrator
from ..core.options import MemoryMode, ModelType, PipelineType, StageRole, parse_enum
from ..core.stage.handle import ExecutionTarget, StageConfig, StageHandle
from ..core.stage.manager import StageLifecycleManager

logger = logging.getLogger(__name__)

CLIP_PAD_TOKEN_ID = 49407
# CLIP-G tokenizers (SDXL, SD3 tokenizer_2) pad with "!"
CLIP_G_PAD_TOKEN_ID = 0
T5_PAD_TOKEN_ID = 0
T5_TOKEN_LIMIT = 256


def resolve_dtype(name: str) -> torch.dtype:
    dtype = getattr(torch, name, None)
    if not isinstance(dtype, torch.dtype):
        raise ValueError(f"Unknown torch dtype '{name}'")
    return dtype


class PretrainedBackend:
    """Lazy ``from_pretrained`` wrapper; the model lives only between load and unload."""

    model_cls: Any = None
    # Module kept in float32 regardless of the target dtype (LayerNorm on fp16 is unstable)
    force_float32 = False

    def __init__(
        self,
        pretrained: str,
        subfolder: Optional[str] = None,
        target: Optional[ExecutionTarget] = None,
        **load_kwargs,
    ):
        self.pretrained = pretrained
        self.subfolder = subfolder
        self.target = target or ExecutionTarget()
        self.load_kwargs = load_kwargs
        self.model = None

    @property
    def device(self) -> torch.device:
        return torch.device(self.target.device)

    @property
    def dtype(self) -> torch.dtype:
        return torch.float32 if self.force_float32 else resolve_dtype(self.target.dtype)

    def _from_pretrained(self):
        kwargs = dict(self.load_kwargs)
        if self.subfolder is not None:
            kwargs["subfolder"] = self.subfolder
        return self.model_cls.from_pretrained(self.pretrained, torch_dtype=self.dtype, **kwargs)

    def load(self) -> None:
        if self.target.intra_op_threads > 0:
            torch.set_num_threads(self.target.intra_op_threads)
        model = self._from_pretrained()
        model.requires_grad_(False)
        model.eval()
        self.model = model.to(self.device)

    def unload(self) -> None:
        self.model = None
        gc.collect()
        if self.device.type == "cuda":
            torch.cuda.empty_cache()

    def run(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        if self.model is None:
            raise RuntimeError(f"{type(self).__name__} for '{self.pretrained}' is not loaded")
        with torch.no_grad():
            outputs = self._run({k: self._to_target(v) for k, v in inputs.items()})
        return {k: self._to_host(v) for k, v in outputs.items()}

    def _run(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def _to_target(self, value):
        if isinstance(value, torch.Tensor):
            if value.is_floating_point():
                return value.to(device=self.device, dtype=self.dtype)
            return value.to(self.device)
        if isinstance(value, (list, tuple)):
            return [self._to_target(v) for v in value]
        return value

    def _to_host(self, value):
        if isinstance(value, torch.Tensor):
            return value.detach().to("cpu", torch.float32) if value.is_floating_point() else value.cpu()
        if isinstance(value, (list, tuple)):
            return [self._to_host(v) for v in value]
        return value

    def __repr__(self) -> str:
        sub = f"/{self.subfolder}" if self.subfolder else ""
        return f"<{type(self).__name__} {self.pretrained}{sub}>"


class TokenizerBackend(PretrainedBackend):
    """Full token sequence, no padding and no truncation (chunking happens upstream)."""

    def _from_pretrained(self):
        kwargs = dict(self.load_kwargs)
        if self.subfolder is not None:
            kwargs["subfolder"] = self.subfolder
        return AutoTokenizer.from_pretrained(self.pretrained, **kwargs)

    def load(self) -> None:
        self.model = self._from_pretrained()

    def run(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        if self.model is None:
            raise RuntimeError(f"Tokenizer '{self.pretrained}' is not loaded")
        text = inputs.get("text") or ""
        if not text:
            return {"input_ids": [], "attention_mask": []}
        encoded = self.model(text, padding=False, truncation=False, verbose=False)
        return {"input_ids": list(encoded["input_ids"]), "attention_mask": list(encoded["attention_mask"])}


class CLIPTextEncoderBackend(PretrainedBackend):
    """CLIP text tower.

    ``penultimate=True`` returns the second-to-last hidden state (SDXL, SD3);
    the pooled output is the projected ``text_embeds`` when the checkpoint
    has a projection head, else ``pooler_output``.
    """

    force_float32 = True

    def __init__(self, pretrained, subfolder=None, target=None, projection=False, penultimate=False, **load_kwargs):
        super().__init__(pretrained, subfolder, target, **load_kwargs)
        self.model_cls = CLIPTextModelWithProjection if projection else CLIPTextModel
        self.penultimate = penultimate

    def _run(self, inputs):
        out = self.model(inputs["input_ids"], output_hidden_states=True)
        embeds = out.hidden_states[-2] if self.penultimate else out.last_hidden_state
        pooled = getattr(out, "text_embeds", None)
        if pooled is None:
            pooled = getattr(out, "pooler_output", None)
        result = {"prompt_embeds": embeds}
        if pooled is not None:
            result["pooled_prompt_embeds"] = pooled
        return result


class T5EncoderBackend(PretrainedBackend):
    model_cls = T5EncoderModel

    def _run(self, inputs):
        out = self.model(inputs["input_ids"])
        return {"prompt_embeds": out[0]}


class UNetBackend(PretrainedBackend):
    """UNet2DConditionModel with SDXL added conditioning, LCM guidance embedding and control residuals."""

    model_cls = UNet2DConditionModel

    def _run(self, inputs):
        kwargs = {}
        if "text_embeds" in inputs:
            kwargs["added_cond_kwargs"] = {"text_embeds": inputs["text_embeds"], "time_ids": inputs["time_ids"]}
        if inputs.get("timestep_cond") is not None:
            kwargs["timestep_cond"] = inputs["timestep_cond"]
        if inputs.get("down_block_additional_residuals") is not None:
            kwargs["down_block_additional_residuals"] = inputs["down_block_additional_residuals"]
            kwargs["mid_block_additional_residual"] = inputs["mid_block_additional_residual"]
        out = self.model(
            inputs["sample"],
            inputs["timestep"],
            encoder_hidden_states=inputs["encoder_hidden_states"],
            return_dict=False,
            **kwargs,
        )
        return {"sample": out[0]}


class SD3TransformerBackend(PretrainedBackend):
    model_cls = SD3Transformer2DModel

    def _run(self, inputs):
        out = self.model(
            hidden_states=inputs["sample"],
            timestep=inputs["timestep"],
            encoder_hidden_states=inputs["encoder_hidden_states"],
            pooled_projections=inputs["pooled_projections"],
            return_dict=False,
        )
        return {"sample": out[0]}


class ControlNetBackend(PretrainedBackend):
    """Adapter residuals at unit scale; the diffuser applies ``conditioning_scale``."""

    model_cls = ControlNetModel

    def _run(self, inputs):
        kwargs = {}
        if "text_embeds" in inputs:
            kwargs["added_cond_kwargs"] = {"text_embeds": inputs["text_embeds"], "time_ids": inputs["time_ids"]}
        down, mid = self.model(
            inputs["sample"],
            inputs["timestep"],
            encoder_hidden_states=inputs["encoder_hidden_states"],
            controlnet_cond=inputs["controlnet_cond"],
            conditioning_scale=1.0,
            return_dict=False,
            **kwargs,
        )
        return {"down_block_res_samples": list(down), "mid_block_res_sample": mid}


class VaeEncoderBackend(PretrainedBackend):
    """Raw (unscaled) posterior mode of AutoencoderKL."""

    model_cls = AutoencoderKL

    def _run(self, inputs):
        posterior = self.model.encode(inputs["sample"]).latent_dist
        return {"latents": posterior.mode()}


class VaeDecoderBackend(PretrainedBackend):
    """AutoencoderKL decode; kept in float32 since fp16 SDXL/SD3 decodes overflow."""

    model_cls = AutoencoderKL
    force_float32 = True

    def _run(self, inputs):
        return {"sample": self.model.decode(inputs["latent_sample"]).sample}


def _clip_config(hidden_size: int = 768, pad_token_id: int = CLIP_PAD_TOKEN_ID) -> StageConfig:
    return StageConfig(token_limit=77, pad_token_id=pad_token_id, hidden_size=hidden_size)


def build_stage_set(
    pretrained: str,
    pipeline_type: PipelineType | str,
    model_type: ModelType | str = ModelType.BASE,
    memory_mode: MemoryMode | str = MemoryMode.MAXIMUM,
    target: Optional[ExecutionTarget] = None,
    control_net: Optional[str] = None,
    control_net_unet: Optional[str] = None,
    **load_kwargs,
) -> StageLifecycleManager:
    """Stage handles for a diffusers-layout checkpoint of ``pipeline_type``.

    ``control_net`` is a separate ControlNetModel checkpoint;
    ``control_net_unet`` an optional second denoiser checkpoint used while
    a control adapter is active.
    """
    capability = get_capability(pipeline_type, model_type)
    target = target or ExecutionTarget()
    layout = capability.encoder_layout
    penultimate = layout != EncoderLayout.SINGLE
    stages = []

    def add(role: StageRole, backend: PretrainedBackend, config: Optional[StageConfig] = None):
        stages.append(StageHandle(f"{capability.name}:{role.value}", role, backend, target, config))

    if layout != EncoderLayout.DUAL_SECOND_ONLY:
        add(StageRole.TOKENIZER, TokenizerBackend(pretrained, "tokenizer", target, **load_kwargs), _clip_config())
        add(
            StageRole.TEXT_ENCODER,
            CLIPTextEncoderBackend(
                pretrained, "text_encoder", target,
                projection=layout == EncoderLayout.TRIPLE, penultimate=penultimate, **load_kwargs,
            ),
            _clip_config(),
        )
    if layout != EncoderLayout.SINGLE:
        add(
            StageRole.TOKENIZER_2,
            TokenizerBackend(pretrained, "tokenizer_2", target, **load_kwargs),
            _clip_config(1280, CLIP_G_PAD_TOKEN_ID),
        )
        add(
            StageRole.TEXT_ENCODER_2,
            CLIPTextEncoderBackend(pretrained, "text_encoder_2", target, projection=True, penultimate=True, **load_kwargs),
            _clip_config(1280, CLIP_G_PAD_TOKEN_ID),
        )
    if layout == EncoderLayout.TRIPLE:
        t5_config = StageConfig(token_limit=T5_TOKEN_LIMIT, pad_token_id=T5_PAD_TOKEN_ID, hidden_size=T5_HIDDEN_SIZE)
        add(StageRole.TOKENIZER_3, TokenizerBackend(pretrained, "tokenizer_3", target, **load_kwargs), t5_config)
        add(StageRole.TEXT_ENCODER_3, T5EncoderBackend(pretrained, "text_encoder_3", target, **load_kwargs), t5_config)

    if capability.pooled_projections:
        add(StageRole.UNET, SD3TransformerBackend(pretrained, "transformer", target, **load_kwargs))
    else:
        add(StageRole.UNET, UNetBackend(pretrained, "unet", target, **load_kwargs))
    if control_net_unet is not None:
        add(StageRole.CONTROL_NET_UNET, UNetBackend(control_net_unet, "unet", target, **load_kwargs))
    if control_net is not None:
        add(StageRole.CONTROL_NET, ControlNetBackend(control_net, None, target, **load_kwargs))

    add(StageRole.VAE_ENCODER, VaeEncoderBackend(pretrained, "vae", target, **load_kwargs))
    add(StageRole.VAE_DECODER, VaeDecoderBackend(pretrained, "vae", target, **load_kwargs))

    logger.info(f"Built {len(stages)} stages for {capability.name} from '{pretrained}'")
    return StageLifecycleManager(stages, memory_mode)


def build_pipeline(
    pretrained: str,
    pipeline_type: PipelineType | str,
    model_type: ModelType | str = ModelType.BASE,
    memory_mode: MemoryMode | str = MemoryMode.MAXIMUM,
    target: Optional[ExecutionTarget] = None,
    **kwargs,
) -> PipelineOrchestrator:
    """Orchestrator over ``build_stage_set``; stages are not loaded yet."""
    pipeline_type = parse_enum(PipelineType, pipeline_type)
    model_type = parse_enum(ModelType, model_type)
    manager = build_stage_set(pretrained, pipeline_type, model_type, memory_mode, target, **kwargs)
    return PipelineOrchestrator(get_capability(pipeline_type, model_type), manager)
