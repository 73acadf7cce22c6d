# latentforge/blocks/diffusers/image.py
"""Image-to-image: encoded source latent noised to a strength-derived timestep."""
from __future__ import annotations

from latentforge.core.block.registry import register_block
from latentforge.core.diffusion.diffuser import AbstractDiffuser, ImageDiffuserMixin
from latentforge.core.options import DiffuserType


@register_block("diffuser/image_to_image")
class ImageDiffuser(ImageDiffuserMixin, AbstractDiffuser):
    """Skips the first ``n - int(n * strength)`` steps of the schedule.

    ``strength=1`` walks the whole schedule; a strength that leaves no step
    at all is rejected before the source is encoded.
    """

    block_type = "diffuser/image_to_image"
    diffuser_type = DiffuserType.IMAGE_TO_IMAGE
