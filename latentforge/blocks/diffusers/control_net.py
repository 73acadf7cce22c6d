# latentforge/blocks/diffusers/control_net.py
"""Control-net text-to-image: adapter residuals merged into every denoiser call."""
from __future__ import annotations

import torch
import torch.nn.functional as F

from latentforge.core.block.registry import register_block
from latentforge.core.diffusion.diffuser import AbstractDiffuser
from latentforge.core.errors import ConfigurationError
from latentforge.core.options import DiffuserType, StageRole

# Denoiser inputs the adapter sees as well
SHARED_INPUTS = ("sample", "timestep", "encoder_hidden_states", "text_embeds", "time_ids", "timestep_cond")


@register_block("diffuser/control_net")
class ControlNetDiffuser(AbstractDiffuser):
    """Runs the control adapter on the control image each step.

    The adapter returns ``down_block_res_samples`` (list) and
    ``mid_block_res_sample``; both are scaled by ``conditioning_scale`` and
    handed to the denoiser as additional residuals.
    """

    block_type = "diffuser/control_net"
    diffuser_type = DiffuserType.CONTROL_NET

    @property
    def denoiser_role(self) -> StageRole:
        if self.manager.has(StageRole.CONTROL_NET_UNET):
            return StageRole.CONTROL_NET_UNET
        return StageRole.UNET

    def loop_roles(self):
        return (self.denoiser_role, StageRole.CONTROL_NET)

    def validate(self, run):
        super().validate(run)
        if run.prompt_options.control_image is None:
            raise ConfigurationError(f"{self.diffuser_type.value} requires prompt_options.control_image")

    def control_condition(self, run) -> torch.Tensor:
        cond = run.metadata.get("control_cond")
        if cond is None:
            options = run.scheduler_options
            image = run.prompt_options.control_image
            if image.shape[-2:] != (options.height, options.width):
                image = F.interpolate(image, size=(options.height, options.width), mode="bilinear", align_corners=False)
            cond = torch.cat([image] * 2) if run.guidance else image
            run.metadata["control_cond"] = cond
        return cond

    async def prepare_network_input(self, run, latents, timestep):
        inputs = await super().prepare_network_input(run, latents, timestep)
        adapter_inputs = {k: inputs[k] for k in SHARED_INPUTS if k in inputs}
        adapter_inputs["controlnet_cond"] = self.control_condition(run)

        adapter = run.handles[StageRole.CONTROL_NET]
        outputs = await adapter.run_inference(adapter_inputs)

        scale = run.scheduler_options.conditioning_scale
        inputs["down_block_additional_residuals"] = [r * scale for r in outputs["down_block_res_samples"]]
        inputs["mid_block_additional_residual"] = outputs["mid_block_res_sample"] * scale
        return inputs
