"""HuggingFace checkpoint backends. Imported on demand, not by ``latentforge`` itself."""
from .diffusers import (
    ControlNetBackend,
    CLIPTextEncoderBackend,
    PretrainedBackend,
    SD3TransformerBackend,
    T5EncoderBackend,
    TokenizerBackend,
    UNetBackend,
    VaeDecoderBackend,
    VaeEncoderBackend,
    build_pipeline,
    build_stage_set,
)

__all__ = [
    "PretrainedBackend",
    "TokenizerBackend",
    "CLIPTextEncoderBackend",
    "T5EncoderBackend",
    "UNetBackend",
    "SD3TransformerBackend",
    "ControlNetBackend",
    "VaeEncoderBackend",
    "VaeDecoderBackend",
    "build_stage_set",
    "build_pipeline",
]
