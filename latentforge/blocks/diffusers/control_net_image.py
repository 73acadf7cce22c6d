# latentforge/blocks/diffusers/control_net_image.py
"""Control-net image-to-image: source latent plus adapter residuals."""
from __future__ import annotations

from latentforge.core.block.registry import register_block
from latentforge.core.diffusion.diffuser import ImageDiffuserMixin
from latentforge.core.options import DiffuserType

from .control_net import ControlNetDiffuser


@register_block("diffuser/control_net_image")
class ControlNetImageDiffuser(ImageDiffuserMixin, ControlNetDiffuser):
    block_type = "diffuser/control_net_image"
    diffuser_type = DiffuserType.CONTROL_NET_IMAGE
