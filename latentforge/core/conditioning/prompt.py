# latentforge/core/conditioning/prompt.py
"""Prompt encoding and embedding fusion for one, two or three text encoders.

Layouts:
    single            tokenizer + text_encoder (SD 1.5, LCM)
    dual              CLIP L + CLIP G, concatenated on the hidden axis (SDXL)
    dual_second_only  CLIP G only (SDXL refiner)
    triple            CLIP L + CLIP G zero-padded to T5 width, then T5 along
                      the sequence axis (SD3)

Pooled embeddings are taken from the first chunk only; a prompt longer than
the token limit is encoded chunk by chunk but pooled once.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

import torch

from ..options import StageRole
from ..stage.handle import StageHandle
from ..stage.manager import StageLifecycleManager
from ..utils.tensor import pad_last_dim, repeat_batch
from .tokens import TokenizedPrompt, chunk_tokens, tokenize

logger = logging.getLogger(__name__)

T5_HIDDEN_SIZE = 4096


class EncoderLayout(str, Enum):
    SINGLE = "single"
    DUAL = "dual"
    DUAL_SECOND_ONLY = "dual_second_only"
    TRIPLE = "triple"


@dataclass
class PromptEmbedding:
    prompt_embeds: torch.Tensor                         # [B, S, H]
    pooled_prompt_embeds: Optional[torch.Tensor] = None  # [B, H']

    @property
    def batch_size(self) -> int:
        return self.prompt_embeds.shape[0]

    @classmethod
    def for_guidance(cls, negative: "PromptEmbedding", positive: "PromptEmbedding") -> "PromptEmbedding":
        """Stack along the batch axis, negative first."""
        if negative.prompt_embeds.shape[-1] != positive.prompt_embeds.shape[-1]:
            raise ValueError(
                f"Hidden size mismatch: negative {tuple(negative.prompt_embeds.shape)} "
                f"vs positive {tuple(positive.prompt_embeds.shape)}"
            )
        pooled = None
        if positive.pooled_prompt_embeds is not None and negative.pooled_prompt_embeds is not None:
            pooled = torch.cat([negative.pooled_prompt_embeds, positive.pooled_prompt_embeds], dim=0)
        return cls(torch.cat([negative.prompt_embeds, positive.prompt_embeds], dim=0), pooled)

    def __repr__(self) -> str:
        pooled = tuple(self.pooled_prompt_embeds.shape) if self.pooled_prompt_embeds is not None else None
        return f"<PromptEmbedding embeds={tuple(self.prompt_embeds.shape)} pooled={pooled}>"


class PromptEncoder:
    """Tokenizes and encodes a prompt pair through the configured encoder stages."""

    def __init__(
        self,
        manager: StageLifecycleManager,
        layout: EncoderLayout | str = EncoderLayout.SINGLE,
        t5_hidden_size: int = T5_HIDDEN_SIZE,
    ):
        self.manager = manager
        self.layout = EncoderLayout(layout)
        self.t5_hidden_size = t5_hidden_size

    def required_roles(self) -> List[StageRole]:
        if self.layout == EncoderLayout.SINGLE:
            return [StageRole.TOKENIZER, StageRole.TEXT_ENCODER]
        if self.layout == EncoderLayout.DUAL_SECOND_ONLY:
            return [StageRole.TEXT_ENCODER_2]
        return [StageRole.TOKENIZER, StageRole.TEXT_ENCODER, StageRole.TEXT_ENCODER_2]

    async def encode(self, prompt: str, negative_prompt: str = "", guidance: bool = False) -> PromptEmbedding:
        if self.layout == EncoderLayout.SINGLE:
            positive, negative = await self._encode_single(prompt, negative_prompt)
        elif self.layout == EncoderLayout.DUAL:
            positive, negative = await self._encode_dual(prompt, negative_prompt)
        elif self.layout == EncoderLayout.DUAL_SECOND_ONLY:
            positive, negative = await self._encode_second_only(prompt, negative_prompt)
        else:
            positive, negative = await self._encode_triple(prompt, negative_prompt)

        logger.debug(f"Encoded prompt ({self.layout.value}): {positive}")
        if guidance:
            return PromptEmbedding.for_guidance(negative, positive)
        return positive

    # ------------------------------------------------------------------
    # Layouts
    # ------------------------------------------------------------------

    async def _encode_single(self, prompt: str, negative_prompt: str):
        pos, neg = await self._tokenize_pair(StageRole.TOKENIZER, prompt, negative_prompt)
        length = max(len(pos), len(neg))
        tok = self.manager.get(StageRole.TOKENIZER)
        return await self._encode_pair(StageRole.TEXT_ENCODER, tok, pos, neg, length)

    async def _encode_dual(self, prompt: str, negative_prompt: str):
        pos1, neg1 = await self._tokenize_pair(StageRole.TOKENIZER, prompt, negative_prompt)
        tok2_role = self._second_tokenizer_role()
        pos2, neg2 = await self._tokenize_pair(tok2_role, prompt, negative_prompt)
        length = max(len(pos1), len(neg1), len(pos2), len(neg2))

        tok1 = self.manager.get(StageRole.TOKENIZER)
        tok2 = self.manager.get(tok2_role)
        pos_a, neg_a = await self._encode_pair(StageRole.TEXT_ENCODER, tok1, pos1, neg1, length)
        pos_b, neg_b = await self._encode_pair(StageRole.TEXT_ENCODER_2, tok2, pos2, neg2, length)

        positive = PromptEmbedding(
            torch.cat([pos_a.prompt_embeds, pos_b.prompt_embeds], dim=-1), pos_b.pooled_prompt_embeds
        )
        negative = PromptEmbedding(
            torch.cat([neg_a.prompt_embeds, neg_b.prompt_embeds], dim=-1), neg_b.pooled_prompt_embeds
        )
        return positive, negative

    async def _encode_second_only(self, prompt: str, negative_prompt: str):
        tok2_role = self._second_tokenizer_role()
        pos, neg = await self._tokenize_pair(tok2_role, prompt, negative_prompt)
        length = max(len(pos), len(neg))
        tok2 = self.manager.get(tok2_role)
        return await self._encode_pair(StageRole.TEXT_ENCODER_2, tok2, pos, neg, length)

    async def _encode_triple(self, prompt: str, negative_prompt: str):
        pos1, neg1 = await self._tokenize_pair(StageRole.TOKENIZER, prompt, negative_prompt)
        tok2_role = self._second_tokenizer_role()
        pos2, neg2 = await self._tokenize_pair(tok2_role, prompt, negative_prompt)
        clip_length = max(len(pos1), len(neg1), len(pos2), len(neg2))

        tok1 = self.manager.get(StageRole.TOKENIZER)
        tok2 = self.manager.get(tok2_role)
        pos_a, neg_a = await self._encode_pair(StageRole.TEXT_ENCODER, tok1, pos1, neg1, clip_length)
        pos_b, neg_b = await self._encode_pair(StageRole.TEXT_ENCODER_2, tok2, pos2, neg2, clip_length)
        pos_t5, neg_t5 = await self._encode_t5_pair(prompt, negative_prompt, clip_length)

        return (
            self._fuse_triple(pos_a, pos_b, pos_t5),
            self._fuse_triple(neg_a, neg_b, neg_t5),
        )

    @staticmethod
    def _fuse_triple(clip_l: PromptEmbedding, clip_g: PromptEmbedding, t5: torch.Tensor) -> PromptEmbedding:
        clip = torch.cat([clip_l.prompt_embeds, clip_g.prompt_embeds], dim=-1)
        clip = pad_last_dim(clip, t5.shape[-1])
        embeds = torch.cat([clip, t5.to(clip.dtype)], dim=1)

        pooled_l, pooled_g = clip_l.pooled_prompt_embeds, clip_g.pooled_prompt_embeds
        pooled = None
        if pooled_l is not None and pooled_g is not None:
            pooled_g = repeat_batch(pooled_g, pooled_l.shape[0])
            pooled = torch.cat([pooled_l, pooled_g], dim=-1)
        return PromptEmbedding(embeds, pooled)

    # ------------------------------------------------------------------
    # Stage calls
    # ------------------------------------------------------------------

    def _second_tokenizer_role(self) -> StageRole:
        # CLIP G shares CLIP L's vocabulary
        if self.manager.has(StageRole.TOKENIZER_2):
            return StageRole.TOKENIZER_2
        return StageRole.TOKENIZER

    async def _tokenize_pair(self, role: StageRole, prompt: str, negative_prompt: str):
        async with self.manager.acquire(role) as tok:
            return await tokenize(tok, prompt), await tokenize(tok, negative_prompt)

    async def _encode_pair(
        self,
        encoder_role: StageRole,
        tokenizer: StageHandle,
        positive: TokenizedPrompt,
        negative: TokenizedPrompt,
        length: int,
    ) -> Tuple[PromptEmbedding, PromptEmbedding]:
        async with self.manager.acquire(encoder_role) as encoder:
            pos = await self._encode_chunks(encoder, tokenizer, positive, length)
            neg = await self._encode_chunks(encoder, tokenizer, negative, length)
        return pos, neg

    async def _encode_chunks(
        self, encoder: StageHandle, tokenizer: StageHandle, tokens: TokenizedPrompt, length: int
    ) -> PromptEmbedding:
        limit = tokenizer.config.token_limit
        pad_id = tokenizer.config.pad_token_id
        chunks = chunk_tokens(tokens.padded(length, pad_id), limit, pad_id)
        if not chunks:
            chunks = [TokenizedPrompt().padded(limit, pad_id)]

        embeds, pooled = [], None
        for i, chunk in enumerate(chunks):
            outputs = await encoder.run_inference(chunk.as_inputs())
            embeds.append(outputs["prompt_embeds"])
            if i == 0:
                pooled = outputs.get("pooled_prompt_embeds")
        return PromptEmbedding(torch.cat(embeds, dim=1), pooled)

    async def _encode_t5_pair(self, prompt: str, negative_prompt: str, clip_length: int):
        tok3 = self.manager.get_optional(StageRole.TOKENIZER_3)
        encoder3 = self.manager.get_optional(StageRole.TEXT_ENCODER_3)
        if tok3 is None or encoder3 is None:
            length = max(77, clip_length)
            hidden = encoder3.config.hidden_size if encoder3 is not None else self.t5_hidden_size
            zeros = torch.zeros(1, length, hidden)
            return zeros, zeros.clone()

        pos, neg = await self._tokenize_pair(StageRole.TOKENIZER_3, prompt, negative_prompt)
        length = max(tok3.config.token_limit, clip_length, len(pos), len(neg))
        hidden = encoder3.config.hidden_size

        async with self.manager.acquire(StageRole.TEXT_ENCODER_3) as encoder:
            results = []
            for tokens in (pos, neg):
                if len(tokens) == 0:
                    results.append(torch.zeros(1, length, hidden))
                    continue
                outputs = await encoder.run_inference(tokens.padded(length, tok3.config.pad_token_id).as_inputs())
                results.append(outputs["prompt_embeds"])
        return results[0], results[1]
