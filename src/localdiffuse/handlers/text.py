"""Text conditioning: CLIP input embeddings and uncond/cond encoding."""

from __future__ import annotations

from typing import Mapping, Sequence

import numpy as np
import torch

from localdiffuse import log
from localdiffuse.backends.services import TextEncoder, call_service
from localdiffuse.errors import ShapeMismatchError

CLIP_BOS = 49406
CLIP_EOS = 49407        # also the pad token for SD 1.x
MAX_TOKENS = 77


def build_input_embeddings(
    token_ids: Sequence[int],
    weights: Sequence[float] | None,
    token_table: np.ndarray,
    position_table: np.ndarray,
    custom: Mapping[int, np.ndarray] | None = None,
) -> np.ndarray:
    """Weighted [77, D] input embedding for encoders that take embeddings.

    Positions listed in *custom* (textual-inversion vectors, already
    weighted) are used as-is; every other position falls back to
    ``(token_table[id] + position_table[i]) * weight``.
    """
    n = len(token_ids)
    if position_table.ndim != 2 or position_table.shape[0] < n:
        raise ShapeMismatchError(
            f"position table {position_table.shape} cannot cover {n} positions")
    dim = position_table.shape[1]
    if token_table.ndim != 2 or token_table.shape[1] != dim:
        raise ShapeMismatchError(
            f"token table {token_table.shape} does not match embedding size {dim}")
    if weights is None:
        weights = [1.0] * n
    if len(weights) != n:
        raise ShapeMismatchError(f"{len(weights)} weights for {n} tokens")

    ids = np.asarray(token_ids, dtype=np.int64)
    if ids.min(initial=0) < 0 or ids.max(initial=0) >= token_table.shape[0]:
        raise ShapeMismatchError(f"token id out of range for a {token_table.shape[0]}-entry table")

    w = np.asarray(weights, dtype=np.float32)[:, np.newaxis]
    out = (token_table[ids] + position_table[:n]) * w
    out = out.astype(np.float32)

    for pos, vec in (custom or {}).items():
        if not 0 <= pos < n:
            raise ShapeMismatchError(f"custom embedding position {pos} outside [0, {n})")
        vec = np.asarray(vec, dtype=np.float32)
        if vec.shape != (dim,):
            raise ShapeMismatchError(f"custom embedding at {pos} has shape {vec.shape}, expected ({dim},)")
        out[pos] = vec
    return out


def _encode_one(text_encoder: TextEncoder, prompt_input: torch.Tensor | Sequence[int],
                embed_dim: int) -> torch.Tensor:
    if isinstance(prompt_input, torch.Tensor):
        t = prompt_input
        if t.dtype.is_floating_point:
            t = t.float()
            if t.ndim == 2:
                t = t.unsqueeze(0)
        elif t.ndim == 1:
            t = t.unsqueeze(0)
    else:
        t = torch.tensor([list(prompt_input)], dtype=torch.int64)
    return call_service("text_encoder", text_encoder, t,
                        expected_shape=(1, t.shape[1], embed_dim))


def encode_prompt_pair(text_encoder: TextEncoder, cond_input, uncond_input,
                       embed_dim: int = 768) -> torch.Tensor:
    """Encode negative then positive prompt; returns [2, 77, D] (uncond first).

    Inputs are token id lists / int tensors, or [77, D] input embeddings from
    :func:`build_input_embeddings`.
    """
    uncond = _encode_one(text_encoder, uncond_input, embed_dim)
    cond = _encode_one(text_encoder, cond_input, embed_dim)
    log.debug(f"  Text: encoded prompt pair -> [2, {cond.shape[1]}, {cond.shape[2]}]")
    return torch.cat([uncond, cond])


def pad_tokens(token_ids: Sequence[int], max_len: int = MAX_TOKENS) -> list[int]:
    """Wrap in BOS/EOS and pad with EOS to *max_len* (truncating if needed)."""
    ids = [CLIP_BOS] + list(token_ids)[: max_len - 2] + [CLIP_EOS]
    return ids + [CLIP_EOS] * (max_len - len(ids))
