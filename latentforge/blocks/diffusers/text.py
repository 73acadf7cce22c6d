# latentforge/blocks/diffusers/text.py
"""Text-to-image: random latent, full schedule."""
from __future__ import annotations

from latentforge.core.block.registry import register_block
from latentforge.core.diffusion.diffuser import AbstractDiffuser
from latentforge.core.options import DiffuserType


@register_block("diffuser/text_to_image")
class TextDiffuser(AbstractDiffuser):
    block_type = "diffuser/text_to_image"
    diffuser_type = DiffuserType.TEXT_TO_IMAGE
