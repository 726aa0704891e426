"""Service adapters over diffusers / transformers modules.

Wraps an SD 1.x/2.x diffusers-format model (UNet2DConditionModel,
AutoencoderKL, CLIPTextModel) so it satisfies the service contracts the
generation core drives.  Every adapter runs under ``torch.no_grad()`` and
hands back float32 CPU tensors.
"""

from __future__ import annotations

import json
import os

import torch

from localdiffuse import log
from localdiffuse.backends.services import GenerationServices
from localdiffuse.config import SchedulerConfig


def _to_cpu_float(t: torch.Tensor) -> torch.Tensor:
    return t.detach().to(device="cpu", dtype=torch.float32)


def _module_placement(module: torch.nn.Module) -> tuple[torch.device, torch.dtype]:
    param = next(module.parameters(), None)
    if param is None:
        return torch.device("cpu"), torch.float32
    return param.device, param.dtype


class UNetDenoiser:
    """UNet2DConditionModel as a batched ``Denoiser``."""

    batched = True

    def __init__(self, unet):
        self.unet = unet
        self.device, self.dtype = _module_placement(unet)

    def __call__(self, latent: torch.Tensor, timestep: float,
                 embedding: torch.Tensor) -> torch.Tensor:
        with torch.no_grad():
            out = self.unet(
                latent.to(device=self.device, dtype=self.dtype),
                torch.tensor(timestep, device=self.device),
                encoder_hidden_states=embedding.to(device=self.device, dtype=self.dtype),
            ).sample
        return _to_cpu_float(out)


class AutoencoderKLEncoder:
    """AutoencoderKL encoder half: pixels -> posterior (mean, std)."""

    def __init__(self, vae):
        self.vae = vae
        self.device, self.dtype = _module_placement(vae)

    def __call__(self, pixels: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        with torch.no_grad():
            dist = self.vae.encode(pixels.to(device=self.device, dtype=self.dtype)).latent_dist
        return _to_cpu_float(dist.mean), _to_cpu_float(dist.std)


class AutoencoderKLDecoder:
    """AutoencoderKL decoder half: unscaled latent -> pixels in [-1, 1]."""

    def __init__(self, vae):
        self.vae = vae
        self.device, self.dtype = _module_placement(vae)

    def __call__(self, latent: torch.Tensor) -> torch.Tensor:
        with torch.no_grad():
            out = self.vae.decode(latent.to(device=self.device, dtype=self.dtype)).sample
        return _to_cpu_float(out)


class CLIPTextEncoder:
    """transformers CLIPTextModel: [1, 77] token ids -> last hidden state."""

    def __init__(self, text_encoder):
        self.text_encoder = text_encoder
        self.device, _ = _module_placement(text_encoder)

    def __call__(self, token_ids: torch.Tensor) -> torch.Tensor:
        if token_ids.dtype.is_floating_point:
            raise TypeError("CLIPTextEncoder takes token ids, not input embeddings")
        with torch.no_grad():
            out = self.text_encoder(token_ids.to(device=self.device)).last_hidden_state
        return _to_cpu_float(out)


# ====================================================================
# Loading
# ====================================================================

def read_scheduler_config(model_dir: str) -> SchedulerConfig:
    """Scheduler defaults from a diffusers ``scheduler/scheduler_config.json``.

    Unknown keys are ignored; a missing file yields the stock SD 1.5 config.
    """
    config = SchedulerConfig()
    sched_file = os.path.join(model_dir, "scheduler", "scheduler_config.json")
    if not os.path.isfile(sched_file):
        return config

    with open(sched_file, encoding="utf-8") as f:
        data = json.load(f)
    for key in ("num_train_timesteps", "beta_start", "beta_end", "beta_schedule",
                "prediction_type", "timestep_spacing", "steps_offset",
                "rescale_betas_zero_snr"):
        if key in data and data[key] is not None:
            setattr(config, key, data[key])
    if config.prediction_type == "v_prediction":
        log.debug("  Backend: v-prediction checkpoint detected")
    return config


def load_services(model_dir: str, device: str | torch.device = "cpu",
                  dtype: torch.dtype = torch.float32) -> GenerationServices:
    """Load a diffusers-format SD checkpoint directory into service adapters."""
    from diffusers import AutoencoderKL, UNet2DConditionModel
    from transformers import CLIPTextModel

    device = torch.device(device)

    text_encoder = CLIPTextModel.from_pretrained(model_dir, subfolder="text_encoder",
                                                 torch_dtype=dtype)
    text_encoder.to(device).eval()
    log.debug(f"  Backend: Loaded text_encoder to {device}")

    unet = UNet2DConditionModel.from_pretrained(model_dir, subfolder="unet", torch_dtype=dtype)
    unet.to(device).eval()
    log.debug(f"  Backend: Loaded UNet to {device}")

    # VAE runs in float32: float16 overflows to NaN in the decoder for some latents
    vae = AutoencoderKL.from_pretrained(model_dir, subfolder="vae", torch_dtype=torch.float32)
    vae.to(device).eval()
    log.debug(f"  Backend: Loaded VAE (float32) to {device}")

    return GenerationServices(
        text_encoder=CLIPTextEncoder(text_encoder),
        denoiser=UNetDenoiser(unet),
        vae_decoder=AutoencoderKLDecoder(vae),
        vae_encoder=AutoencoderKLEncoder(vae),
    )
