# latentforge/blocks/diffusers/__init__.py
"""Diffuser strategies, registered under ``diffuser/<name>``."""

from .text import TextDiffuser
from .image import ImageDiffuser
from .inpaint_legacy import InpaintLegacyDiffuser
from .control_net import ControlNetDiffuser
from .control_net_image import ControlNetImageDiffuser

__all__ = [
    "TextDiffuser",
    "ImageDiffuser",
    "InpaintLegacyDiffuser",
    "ControlNetDiffuser",
    "ControlNetImageDiffuser",
]
