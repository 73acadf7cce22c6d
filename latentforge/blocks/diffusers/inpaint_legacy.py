# latentforge/blocks/diffusers/inpaint_legacy.py
"""Legacy inpainting with a regular (4 channel) denoiser.

After every step the unmasked region is reset to the source latent noised to
the next timestep, so new content only accumulates where the mask is 1.
"""
from __future__ import annotations

from latentforge.core.block.registry import register_block
from latentforge.core.diffusion.diffuser import AbstractDiffuser, ImageDiffuserMixin
from latentforge.core.errors import ConfigurationError
from latentforge.core.options import DiffuserType
from latentforge.core.utils.tensor import resize_mask


@register_block("diffuser/image_inpaint_legacy")
class InpaintLegacyDiffuser(ImageDiffuserMixin, AbstractDiffuser):
    block_type = "diffuser/image_inpaint_legacy"
    diffuser_type = DiffuserType.IMAGE_INPAINT_LEGACY

    def validate(self, run):
        super().validate(run)
        if run.prompt_options.mask is None:
            raise ConfigurationError("image_inpaint_legacy requires prompt_options.mask")

    async def prepare_latents(self, run):
        latents = await super().prepare_latents(run)
        mask = resize_mask(run.prompt_options.mask, latents.shape[-2], latents.shape[-1])
        run.metadata["mask"] = mask.to(latents.dtype)
        return latents

    def post_step(self, run, result, index):
        latents = result.prev_sample
        mask = run.metadata["mask"]
        image_latents = run.metadata["image_latents"]
        if index + 1 < len(run.timesteps):
            next_t = run.timesteps[index + 1]
            keep = run.scheduler.add_noise(image_latents, run.metadata["noise"], [next_t])
        else:
            keep = image_latents
        return keep * (1 - mask) + latents * mask
