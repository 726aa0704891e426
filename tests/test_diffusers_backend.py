"""Tests for localdiffuse.backends.diffusers_backend using tiny random-weight models."""

from __future__ import annotations

import json

import pytest
import torch

diffusers = pytest.importorskip("diffusers")
transformers = pytest.importorskip("transformers")

from localdiffuse.backends.diffusers_backend import (  # noqa: E402
    AutoencoderKLDecoder,
    AutoencoderKLEncoder,
    CLIPTextEncoder,
    UNetDenoiser,
    read_scheduler_config,
)


@pytest.fixture(scope="module")
def tiny_unet():
    torch.manual_seed(0)
    return diffusers.UNet2DConditionModel(
        sample_size=8,
        in_channels=4,
        out_channels=4,
        layers_per_block=1,
        block_out_channels=(32, 64),
        down_block_types=("CrossAttnDownBlock2D", "DownBlock2D"),
        up_block_types=("UpBlock2D", "CrossAttnUpBlock2D"),
        cross_attention_dim=32,
        norm_num_groups=32,
    ).eval()


@pytest.fixture(scope="module")
def tiny_vae():
    torch.manual_seed(0)
    return diffusers.AutoencoderKL(
        in_channels=3,
        out_channels=3,
        down_block_types=("DownEncoderBlock2D", "DownEncoderBlock2D"),
        up_block_types=("UpDecoderBlock2D", "UpDecoderBlock2D"),
        block_out_channels=(32, 32),
        latent_channels=4,
        norm_num_groups=32,
        sample_size=32,
    ).eval()


class TestAdapters:
    """Adapters satisfy the service contracts."""

    def test_unet_denoiser(self, tiny_unet):
        denoiser = UNetDenoiser(tiny_unet)
        latent = torch.randn(2, 4, 8, 8)
        embedding = torch.randn(2, 77, 32)
        out = denoiser(latent, 901.0, embedding)
        assert denoiser.batched
        assert out.shape == (2, 4, 8, 8)
        assert out.dtype == torch.float32

    def test_vae_encoder(self, tiny_vae):
        mean, std = AutoencoderKLEncoder(tiny_vae)(torch.zeros(1, 3, 32, 32))
        assert mean.shape == std.shape == (1, 4, 16, 16)
        assert torch.all(std > 0)

    def test_vae_decoder(self, tiny_vae):
        out = AutoencoderKLDecoder(tiny_vae)(torch.zeros(1, 4, 16, 16))
        assert out.shape == (1, 3, 32, 32)

    def test_clip_text_encoder(self):
        config = transformers.CLIPTextConfig(
            vocab_size=1000, hidden_size=32, intermediate_size=37,
            num_attention_heads=4, num_hidden_layers=2, max_position_embeddings=77)
        encoder = CLIPTextEncoder(transformers.CLIPTextModel(config).eval())
        out = encoder(torch.randint(0, 1000, (1, 77)))
        assert out.shape == (1, 77, 32)
        with pytest.raises(TypeError):
            encoder(torch.zeros(1, 77, 32))


class TestReadSchedulerConfig:
    """diffusers scheduler_config.json import."""

    def test_missing_file_gives_defaults(self, tmp_path):
        config = read_scheduler_config(str(tmp_path))
        assert config.prediction_type == "epsilon"

    def test_reads_known_keys(self, tmp_path):
        sched_dir = tmp_path / "scheduler"
        sched_dir.mkdir()
        (sched_dir / "scheduler_config.json").write_text(json.dumps({
            "_class_name": "PNDMScheduler",
            "beta_schedule": "scaled_linear",
            "prediction_type": "v_prediction",
            "timestep_spacing": "trailing",
            "steps_offset": 1,
            "skip_prk_steps": True,
        }), encoding="utf-8")
        config = read_scheduler_config(str(tmp_path))
        assert config.prediction_type == "v_prediction"
        assert config.timestep_spacing == "trailing"
        assert config.steps_offset == 1
        config.validate()
