# latentforge/core/conditioning/tokens.py
"""Token sequences: tokenizer calls, pair padding and limit-sized chunking."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Tuple

import torch

from ..stage.handle import StageHandle
from ..utils.tensor import pad_tokens


@dataclass
class TokenizedPrompt:
    input_ids: List[int] = field(default_factory=list)
    attention_mask: List[int] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.input_ids)

    def padded(self, length: int, pad_token_id: int) -> "TokenizedPrompt":
        """Right-pad ids with ``pad_token_id`` and the mask with 1s."""
        mask = self.attention_mask or [1] * len(self.input_ids)
        return TokenizedPrompt(pad_tokens(self.input_ids, length, pad_token_id), pad_tokens(mask, length, 1))

    def as_inputs(self) -> dict:
        mask = self.attention_mask or [1] * len(self.input_ids)
        return {
            "input_ids": torch.tensor([self.input_ids], dtype=torch.long),
            "attention_mask": torch.tensor([mask], dtype=torch.long),
        }


async def tokenize(handle: StageHandle, text: str) -> TokenizedPrompt:
    """Tokenize ``text``; an empty prompt is an empty sequence, not an error."""
    if not text:
        return TokenizedPrompt()
    outputs = await handle.run_inference({"text": text})
    ids = _as_list(outputs["input_ids"])
    mask = _as_list(outputs["attention_mask"]) if outputs.get("attention_mask") is not None else [1] * len(ids)
    return TokenizedPrompt(ids, mask)


def _as_list(value) -> List[int]:
    if isinstance(value, torch.Tensor):
        return [int(v) for v in value.flatten().tolist()]
    return [int(v) for v in value]


def pad_pair(
    positive: TokenizedPrompt, negative: TokenizedPrompt, pad_token_id: int
) -> Tuple[TokenizedPrompt, TokenizedPrompt]:
    """Pad both prompts to their common (larger) length."""
    length = max(len(positive), len(negative))
    return positive.padded(length, pad_token_id), negative.padded(length, pad_token_id)


def chunk_tokens(tokens: TokenizedPrompt, limit: int, pad_token_id: int) -> List[TokenizedPrompt]:
    """Split into ``ceil(len / limit)`` chunks, each padded to exactly ``limit``."""
    count = math.ceil(len(tokens) / limit)
    mask = tokens.attention_mask or [1] * len(tokens)
    chunks = []
    for i in range(count):
        chunk = TokenizedPrompt(
            tokens.input_ids[i * limit:(i + 1) * limit],
            mask[i * limit:(i + 1) * limit],
        )
        chunks.append(chunk.padded(limit, pad_token_id))
    return chunks
