from __future__ import annotations

import math
from typing import List, Optional, Sequence, Tuple

import torch
import torch.nn.functional as F


def pad_tokens(ids: Sequence[int], length: int, pad_token_id: int) -> List[int]:
    """Right-pad a token id list to ``length`` (never truncates)."""
    ids = list(ids)
    if len(ids) >= length:
        return ids
    return ids + [pad_token_id] * (length - len(ids))


def pad_last_dim(tensor: torch.Tensor, width: int) -> torch.Tensor:
    """Zero-pad the hidden dimension up to ``width``."""
    missing = width - tensor.shape[-1]
    if missing <= 0:
        return tensor
    return F.pad(tensor, (0, missing))


def repeat_batch(tensor: torch.Tensor, batch_size: int) -> torch.Tensor:
    if tensor.shape[0] == batch_size:
        return tensor
    if tensor.shape[0] != 1:
        raise ValueError(f"Cannot repeat batch of {tensor.shape[0]} to {batch_size}")
    return tensor.expand(batch_size, *tensor.shape[1:]).contiguous()


def split_guidance(output: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """Split a guided batch into ``(uncond, cond)``; negative half comes first."""
    uncond, cond = output.chunk(2, dim=0)
    return uncond, cond


def apply_guidance(output: torch.Tensor, guidance_scale: float) -> torch.Tensor:
    uncond, cond = split_guidance(output)
    return uncond + guidance_scale * (cond - uncond)


def make_generator(seed: int, device: Optional[torch.device] = None) -> torch.Generator:
    gen = torch.Generator(device=device or "cpu")
    gen.manual_seed(int(seed))
    return gen


def randn(shape: Sequence[int], generator: torch.Generator, dtype: torch.dtype = torch.float32) -> torch.Tensor:
    return torch.randn(tuple(shape), generator=generator, dtype=dtype)


def resize_mask(mask: torch.Tensor, height: int, width: int) -> torch.Tensor:
    """Nearest-neighbour resize of a ``[B, 1, H, W]`` mask to latent size."""
    if mask.dim() == 3:
        mask = mask.unsqueeze(0)
    return F.interpolate(mask.float(), size=(height, width), mode="nearest")


def guidance_embedding(w: torch.Tensor, embedding_dim: int = 256, dtype: torch.dtype = torch.float32) -> torch.Tensor:
    """Sinusoidal embedding of the guidance weight, shape ``[len(w), embedding_dim]``."""
    if w.dim() != 1:
        raise ValueError(f"guidance weights must be 1-D, got shape {tuple(w.shape)}")
    w = w * 1000.0
    half_dim = embedding_dim // 2
    scale = math.log(10000.0) / (half_dim - 1)
    freqs = torch.exp(torch.arange(half_dim, dtype=dtype) * -scale)
    emb = w.to(dtype)[:, None] * freqs[None, :]
    emb = torch.cat([torch.sin(emb), torch.cos(emb)], dim=1)
    if embedding_dim % 2 == 1:
        emb = F.pad(emb, (0, 1))
    return emb
