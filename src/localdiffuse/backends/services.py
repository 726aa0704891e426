"""Inference service contracts.

The generation core never loads or runs networks itself; it drives these
callables.  Any object with a matching ``__call__`` works (a diffusers
module adapter, a TensorRT/QNN wrapper, or a test fake).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Protocol, runtime_checkable

import torch

from localdiffuse.errors import ExternalServiceError, LocalDiffuseError, ShapeMismatchError


@runtime_checkable
class TextEncoder(Protocol):
    def __call__(self, token_ids: torch.Tensor) -> torch.Tensor:
        """[1, 77] int64 token ids (or [1, 77, D] input embeddings) -> [1, 77, D]."""
        ...


@runtime_checkable
class Denoiser(Protocol):
    # True: uncond+cond in one [2B, ...] call; False: two [B, ...] calls
    batched: bool

    def __call__(self, latent: torch.Tensor, timestep: float,
                 embedding: torch.Tensor) -> torch.Tensor:
        """[B, 4, h, w] latent + [B, 77, D] embedding -> [B, 4, h, w] prediction."""
        ...


@runtime_checkable
class VaeEncoder(Protocol):
    def __call__(self, pixels: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """[1, 3, H, W] in [-1, 1] -> (mean, std), each [1, 4, H/8, W/8]."""
        ...


@runtime_checkable
class VaeDecoder(Protocol):
    def __call__(self, latent: torch.Tensor) -> torch.Tensor:
        """[1, 4, h, w] unscaled latent -> [1, 3, 8h, 8w] pixels in [-1, 1]."""
        ...


@runtime_checkable
class Upscaler(Protocol):
    def __call__(self, pixels: torch.Tensor) -> torch.Tensor:
        """[1, 3, 192, 192] in [0, 1] -> [1, 3, 768, 768] in [0, 1]."""
        ...


@dataclass
class GenerationServices:
    text_encoder: TextEncoder
    denoiser: Denoiser
    vae_decoder: VaeDecoder
    vae_encoder: VaeEncoder | None = None
    upscaler: Upscaler | None = None

    @property
    def denoiser_batched(self) -> bool:
        return bool(getattr(self.denoiser, "batched", True))


def _check_shape(name: str, value: Any, expected: tuple[int | None, ...] | None) -> None:
    if expected is None:
        return
    if not isinstance(value, torch.Tensor):
        raise ShapeMismatchError(f"{name}: expected a tensor, got {type(value).__name__}")
    shape = tuple(value.shape)
    if len(shape) != len(expected) or any(
            e is not None and s != e for s, e in zip(shape, expected)):
        pretty = tuple("*" if e is None else e for e in expected)
        raise ShapeMismatchError(f"{name}: returned shape {list(shape)}, expected {list(pretty)}")


def call_service(name: str, fn: Callable[..., Any], *args: Any,
                 expected_shape: tuple[int | None, ...] | None = None) -> Any:
    """Invoke an inference backend and normalize its failure modes.

    Backend exceptions become :class:`ExternalServiceError` (original chained);
    a tensor result whose shape disagrees with *expected_shape* (``None``
    entries are wildcards) raises :class:`ShapeMismatchError`.
    """
    try:
        result = fn(*args)
    except LocalDiffuseError:
        raise
    except Exception as ex:
        raise ExternalServiceError(name, f"{type(ex).__name__}: {ex}") from ex

    _check_shape(name, result, expected_shape)
    if isinstance(result, torch.Tensor):
        return result.float()
    return result


def call_encoder(name: str, fn: Callable[..., Any], pixels: torch.Tensor,
                 latent_shape: tuple[int, ...]) -> tuple[torch.Tensor, torch.Tensor]:
    """:func:`call_service` for VAE encoders, which return a (mean, std) pair."""
    result = call_service(name, fn, pixels)
    if not isinstance(result, (tuple, list)) or len(result) != 2:
        raise ShapeMismatchError(f"{name}: expected a (mean, std) pair")
    mean, std = result
    _check_shape(f"{name} mean", mean, latent_shape)
    _check_shape(f"{name} std", std, latent_shape)
    return mean.float(), std.float()
