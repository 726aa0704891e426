"""Shared pytest fixtures for localdiffuse tests.

The fake services are small, purely local tensor functions so pipeline
tests run on CPU in milliseconds and tiled/untiled paths can be compared.
"""

from __future__ import annotations

import numpy as np
import pytest
import torch
import torch.nn.functional as F

from localdiffuse import log
from localdiffuse.backends.services import GenerationServices
from localdiffuse.config import SchedulerConfig, TilingConfig
from localdiffuse.handlers.text import pad_tokens
from localdiffuse.job import GenerationRequest, PipelineSettings

EMBED_DIM = 768


class FakeTextEncoder:
    def __init__(self, dim: int = EMBED_DIM):
        self.dim = dim
        self.calls: list[torch.Tensor] = []

    def __call__(self, token_ids: torch.Tensor) -> torch.Tensor:
        self.calls.append(token_ids.clone())
        scale = token_ids.float().mean() / 49407.0
        return torch.full((1, token_ids.shape[1], self.dim), float(scale))


class FakeDenoiser:
    """Prediction depends on the latent, the timestep and the conditioning."""

    def __init__(self, batched: bool = True):
        self.batched = batched
        self.calls: list[tuple[tuple[int, ...], float]] = []

    def __call__(self, latent: torch.Tensor, timestep: float, embedding: torch.Tensor) -> torch.Tensor:
        self.calls.append((tuple(latent.shape), float(timestep)))
        cond = embedding.mean(dim=(1, 2)).view(-1, 1, 1, 1)
        return 0.1 * latent + cond + timestep * 1e-4


class FakeVaeEncoder:
    def __init__(self, std: float = 0.01):
        self.std = std
        self.calls: list[tuple[int, ...]] = []

    def __call__(self, pixels: torch.Tensor):
        self.calls.append(tuple(pixels.shape))
        pooled = F.avg_pool2d(pixels, 8)                     # [1, 3, h, w]
        mean = torch.cat([pooled, pooled.mean(dim=1, keepdim=True)], dim=1)
        return mean, torch.full_like(mean, self.std)


class FakeVaeDecoder:
    def __init__(self):
        self.calls: list[tuple[int, ...]] = []

    def __call__(self, latent: torch.Tensor) -> torch.Tensor:
        self.calls.append(tuple(latent.shape))
        rgb = torch.tanh(latent[:, :3])
        return rgb.repeat_interleave(8, dim=2).repeat_interleave(8, dim=3)


class FakeUpscaler:
    def __init__(self, scale: int = 4):
        self.scale = scale
        self.calls = 0

    def __call__(self, pixels: torch.Tensor) -> torch.Tensor:
        self.calls += 1
        return pixels.repeat_interleave(self.scale, dim=2).repeat_interleave(self.scale, dim=3)


class FailingService:
    batched = True

    def __call__(self, *args):
        raise RuntimeError("device lost")


@pytest.fixture()
def rng():
    """Deterministic random generator."""
    return np.random.default_rng(42)


@pytest.fixture()
def torch_gen():
    """Deterministic torch generator."""
    return torch.Generator().manual_seed(1234)


@pytest.fixture()
def services():
    return GenerationServices(
        text_encoder=FakeTextEncoder(),
        denoiser=FakeDenoiser(),
        vae_decoder=FakeVaeDecoder(),
        vae_encoder=FakeVaeEncoder(),
        upscaler=FakeUpscaler(),
    )


@pytest.fixture()
def make_request():
    """Factory for small, valid generation requests."""
    def _make(**kwargs) -> GenerationRequest:
        scheduler = kwargs.pop("scheduler", SchedulerConfig())
        tiling = kwargs.pop("tiling", TilingConfig())
        defaults = dict(
            prompt_tokens=pad_tokens([320, 1125, 539]),
            width=64,
            height=64,
            steps=6,
            guidance_scale=7.5,
            seed=7,
            settings=PipelineSettings(scheduler=scheduler, tiling=tiling),
        )
        defaults.update(kwargs)
        return GenerationRequest(**defaults)
    return _make


@pytest.fixture()
def init_image(rng):
    """A 64x64 RGB test image."""
    return rng.integers(0, 256, size=(64, 64, 3), dtype=np.uint8)


@pytest.fixture(autouse=True)
def _reset_log():
    yield
    log.clear_sink()
    log.close_file()
    log.set_stdout_level(log.LogLevel.DEBUG)
