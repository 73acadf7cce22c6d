"""Fake stage backends and stage-set builders for tests (no model downloads)."""
from typing import Any, Dict, List, Optional

import torch
import torch.nn.functional as F

from latentforge.core.options import MemoryMode, StageRole
from latentforge.core.stage.handle import StageConfig, StageHandle
from latentforge.core.stage.manager import StageLifecycleManager

BOS, EOS = 49406, 49407


class FakeBackend:
    """Records load/unload/run calls; subclasses produce the outputs."""

    def __init__(self, events: Optional[List[str]] = None, name: str = "fake"):
        self.name = name
        self.events = events if events is not None else []
        self.loaded = False
        self.calls: List[Dict[str, Any]] = []

    def load(self) -> None:
        self.loaded = True
        self.events.append(f"load:{self.name}")

    def unload(self) -> None:
        self.loaded = False
        self.events.append(f"unload:{self.name}")

    def run(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(inputs)
        self.events.append(f"run:{self.name}")
        return self.forward(inputs)

    def forward(self, inputs):
        return {}


class FakeTokenizer(FakeBackend):
    """One id per whitespace word, wrapped in BOS/EOS."""

    def forward(self, inputs):
        words = inputs["text"].split()
        ids = [BOS] + [100 + (sum(map(ord, w)) % 1000) for w in words] + [EOS]
        return {"input_ids": ids, "attention_mask": [1] * len(ids)}


class FakeTextEncoder(FakeBackend):
    def __init__(self, hidden: int, pooled: Optional[int] = None, **kwargs):
        super().__init__(**kwargs)
        self.hidden = hidden
        self.pooled = pooled

    def forward(self, inputs):
        ids = inputs["input_ids"].float()
        embeds = (ids / 1000.0).unsqueeze(-1).expand(*ids.shape, self.hidden).clone()
        out = {"prompt_embeds": embeds}
        if self.pooled is not None:
            out["pooled_prompt_embeds"] = embeds[:, 0, :1].expand(ids.shape[0], self.pooled).clone()
        return out


class FakeDenoiser(FakeBackend):
    """Predicts a fixed fraction of the sample as noise; deterministic in its inputs."""

    def forward(self, inputs):
        return {"sample": inputs["sample"] * 0.1}


class FakeControlNet(FakeBackend):
    def forward(self, inputs):
        sample = inputs["sample"]
        down = [torch.ones_like(sample) for _ in range(3)]
        return {"down_block_res_samples": down, "mid_block_res_sample": torch.ones_like(sample)}


class FakeVaeEncoder(FakeBackend):
    def __init__(self, channels: int = 4, **kwargs):
        super().__init__(**kwargs)
        self.channels = channels

    def forward(self, inputs):
        pooled = F.avg_pool2d(inputs["sample"], 8).mean(dim=1, keepdim=True)
        return {"latents": pooled.repeat(1, self.channels, 1, 1)}


class FakeVaeDecoder(FakeBackend):
    def forward(self, inputs):
        latents = inputs["latent_sample"]
        return {"sample": F.interpolate(latents[:, :3], scale_factor=8, mode="nearest")}


class FailingBackend(FakeBackend):
    def __init__(self, fail_on_call: int = 1, **kwargs):
        super().__init__(**kwargs)
        self.fail_on_call = fail_on_call

    def forward(self, inputs):
        if len(self.calls) >= self.fail_on_call:
            raise RuntimeError("device lost")
        return {"sample": inputs["sample"] * 0.1}


def handle(role: StageRole, backend: FakeBackend, config: Optional[StageConfig] = None) -> StageHandle:
    backend.name = role.value
    return StageHandle(f"test:{role.value}", role, backend, config=config)


def stage_set(
    layout: str = "single",
    channels: int = 4,
    memory_mode: MemoryMode = MemoryMode.MAXIMUM,
    events: Optional[List[str]] = None,
    control_net: bool = False,
    denoiser: Optional[FakeBackend] = None,
    t5: bool = True,
    token_limit: int = 77,
) -> StageLifecycleManager:
    """Fake stages for an encoder layout (single, dual, dual_second_only, triple)."""
    events = events if events is not None else []
    clip = StageConfig(token_limit=token_limit, pad_token_id=EOS, hidden_size=768)
    stages = []
    if layout != "dual_second_only":
        stages.append(handle(StageRole.TOKENIZER, FakeTokenizer(events), clip))
        stages.append(handle(StageRole.TEXT_ENCODER, FakeTextEncoder(768, 768 if layout == "triple" else None, events=events), clip))
    if layout != "single":
        stages.append(handle(StageRole.TOKENIZER_2, FakeTokenizer(events), clip))
        stages.append(handle(StageRole.TEXT_ENCODER_2, FakeTextEncoder(1280, 1280, events=events), clip))
    if layout == "triple" and t5:
        t5_config = StageConfig(token_limit=77, pad_token_id=0, hidden_size=4096)
        stages.append(handle(StageRole.TOKENIZER_3, FakeTokenizer(events), t5_config))
        stages.append(handle(StageRole.TEXT_ENCODER_3, FakeTextEncoder(4096, events=events), t5_config))
    stages.append(handle(StageRole.UNET, denoiser or FakeDenoiser(events)))
    if control_net:
        stages.append(handle(StageRole.CONTROL_NET, FakeControlNet(events)))
    stages.append(handle(StageRole.VAE_ENCODER, FakeVaeEncoder(channels, events=events)))
    stages.append(handle(StageRole.VAE_DECODER, FakeVaeDecoder(events)))
    return StageLifecycleManager(stages, memory_mode)


def backend_of(manager: StageLifecycleManager, role: StageRole) -> FakeBackend:
    return manager.get(role).backend
