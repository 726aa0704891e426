"""Stable Diffusion generation pipeline: text encode -> [img2img encode] ->
denoise (CFG + scheduler) -> VAE decode -> [inpaint compositing].

All networks are driven through the service contracts in
``localdiffuse.backends.services``; this module owns only the numerics
between the calls.
"""

from __future__ import annotations

import time
from typing import Callable

import numpy as np
import torch

from localdiffuse import log
from localdiffuse.backends.services import GenerationServices, call_encoder, call_service
from localdiffuse.errors import ConfigurationError, ShapeMismatchError
from localdiffuse.handlers.text import encode_prompt_pair, pad_tokens
from localdiffuse.job import (
    GenerationJob,
    GenerationRequest,
    GenerationResult,
    GenerationState,
    ProgressCallback,
)
from localdiffuse.profiling.tracer import get_current_tracer
from localdiffuse.schedulers import Scheduler, create_scheduler
from localdiffuse.utils.image import image_to_tensor, mask_to_array, pixels_to_uint8
from localdiffuse.utils.pyramid import laplacian_pyramid_blend
from localdiffuse.utils.tiling import Tile, blend_encoder_tiles, blend_tiles, compute_tile_origins, tile_grid

VAE_DOWNSCALE = 8     # pixels per latent cell


def compute_start_step(steps: int, denoise_strength: float) -> int:
    """First active step for img2img: ``floor(steps * (1 - strength))``."""
    return min(int(steps * (1.0 - denoise_strength)), steps - 1)


def composite_masked_latents(scheduler: Scheduler, original_latents: torch.Tensor,
                             noise: torch.Tensor, mask: torch.Tensor, timestep,
                             latents: torch.Tensor) -> torch.Tensor:
    """Keep the source (re-noised to *timestep*) where *mask* is 0, *latents* where it is 1."""
    noised = scheduler.add_noise(original_latents, noise, timestep)
    return noised * (1.0 - mask) + latents * mask


class GenerationOrchestrator:
    """Runs one request end to end.  Not reusable: create one per request."""

    def __init__(self, request: GenerationRequest, services: GenerationServices,
                 progress: ProgressCallback | None = None):
        request.validate()
        if request.is_img2img and services.vae_encoder is None:
            raise ConfigurationError("img2img request but no VAE encoder service")

        self.request = request
        self.services = services
        self.settings = request.settings
        self.job = GenerationJob(request, progress)
        self.scheduler = create_scheduler(self.settings.scheduler)

        self.latent_h = request.height // VAE_DOWNSCALE
        self.latent_w = request.width // VAE_DOWNSCALE
        self.latent_channels = self.settings.model.latent_channels
        self.generator = torch.Generator(device="cpu").manual_seed(request.seed)

        self.latent_noise: torch.Tensor | None = None
        self.latent_mask: torch.Tensor | None = None
        self.full_mask: np.ndarray | None = None

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def run(self) -> GenerationResult:
        job = self.job
        req = self.request
        run_start = time.monotonic()

        try:
            self.scheduler.set_timesteps(req.steps)
            if req.is_img2img:
                job.start_step = compute_start_step(req.steps, req.denoise_strength)
            job.total_steps = req.steps + (1 if req.is_img2img else 0) + 2 - job.start_step

            log.debug(f"  Generate[{job.job_id}]: {req.width}x{req.height}, {req.steps} steps, "
                      f"cfg={req.guidance_scale}, seed={req.seed}, "
                      f"img2img={req.is_img2img}, mask={req.has_mask}")

            shape = (1, self.latent_channels, self.latent_h, self.latent_w)
            latents = torch.randn(shape, generator=self.generator, dtype=torch.float32)
            self.latent_noise = torch.randn(shape, generator=self.generator, dtype=torch.float32)

            self._stage("text_encode", self.text_encode)
            job.advance(GenerationState.TEXT_ENCODED)
            job.report()

            if req.is_img2img:
                self._stage("vae_encode", self.vae_encode)
                job.advance(GenerationState.IMG2IMG_ENCODED)
                job.report()
                self.scheduler.set_begin_index(job.start_step)
                start_t = self.scheduler.timesteps[job.start_step]
                job.latents = self.scheduler.add_noise(job.original_latents, self.latent_noise, start_t)
            else:
                job.latents = latents * self.scheduler.init_noise_sigma

            job.advance(GenerationState.DENOISING)
            self._stage("denoise", self.denoise)

            self._stage("vae_decode", self.vae_decode)
            job.advance(GenerationState.DECODED)

            if req.has_mask:
                self._stage("composite", self.composite)
                job.advance(GenerationState.COMPOSITED)

            image = pixels_to_uint8(job.pixels)
            job.advance(GenerationState.DONE)
            job.report()
        except Exception as ex:
            job.advance(GenerationState.ERROR)
            log.log_exception(ex, f"Generate[{job.job_id}]: failed")
            raise

        elapsed = time.monotonic() - run_start
        log.info(f"  Generate[{job.job_id}]: done in {elapsed:.2f}s "
                 f"({req.width}x{req.height}, {req.steps - job.start_step} active steps)")
        return GenerationResult(image=image, seed=req.seed, width=req.width,
                                height=req.height, job_id=job.job_id)

    def _stage(self, name: str, fn: Callable[[], None]) -> None:
        start = time.monotonic()
        fn()
        duration = time.monotonic() - start
        log.debug(f"  Generate[{self.job.job_id}]: {name} took {duration:.3f}s")
        tracer = get_current_tracer()
        if tracer:
            steps = self.request.steps if name == "denoise" else None
            tracer.stage_complete(self.job.job_id, name, self.request.width,
                                  self.request.height, steps, duration)

    # ------------------------------------------------------------------
    # Stage 1: text encoding
    # ------------------------------------------------------------------

    def text_encode(self) -> None:
        req = self.request
        job = self.job
        dim = self.settings.model.text_embedding_size
        max_tokens = self.settings.model.max_tokens

        if req.prompt_embeds is not None:
            cond = torch.as_tensor(req.prompt_embeds, dtype=torch.float32)
            uncond = torch.as_tensor(req.negative_embeds, dtype=torch.float32)
            for name, emb in (("prompt_embeds", cond), ("negative_embeds", uncond)):
                if tuple(emb.shape) != (1, max_tokens, dim):
                    raise ShapeMismatchError(
                        f"{name} has shape {list(emb.shape)}, expected [1, {max_tokens}, {dim}]")
            job.uncond_embeds, job.cond_embeds = uncond, cond
            log.debug("  Text: using precomputed embeddings")
            return

        negative = req.negative_tokens or pad_tokens([], max_tokens)
        pair = encode_prompt_pair(self.services.text_encoder, req.prompt_tokens, negative,
                                  embed_dim=dim)
        job.uncond_embeds, job.cond_embeds = pair[0:1], pair[1:2]

    # ------------------------------------------------------------------
    # Stage 2: img2img encode
    # ------------------------------------------------------------------

    def _uses_vae_tiling(self) -> bool:
        tile = self.settings.tiling.vae_tile_size
        return tile > 0 and (self.request.width > tile or self.request.height > tile)

    def vae_encode(self) -> None:
        req = self.request
        job = self.job
        scale_factor = self.settings.model.vae_scale_factor

        pixels = image_to_tensor(req.init_image)
        job.original_pixels = pixels
        latent_shape = (1, self.latent_channels, self.latent_h, self.latent_w)

        if self._uses_vae_tiling():
            latent = self._vae_encode_tiled(pixels)
        else:
            mean, std = call_encoder("vae_encoder", self.services.vae_encoder, pixels, latent_shape)
            noise = torch.randn(latent_shape, generator=self.generator, dtype=torch.float32)
            latent = mean + std * noise

        job.original_latents = latent * scale_factor

        if req.has_mask:
            mask_src = req.latent_mask if req.latent_mask is not None else req.mask
            lat_mask = mask_to_array(mask_src, self.latent_h, self.latent_w)
            self.latent_mask = torch.from_numpy(lat_mask)[None, None]
            full_src = req.mask if req.mask is not None else req.latent_mask
            self.full_mask = mask_to_array(full_src, req.height, req.width)

        log.debug(f"  VAE: encoded init image -> latent {list(job.original_latents.shape)}")

    def _vae_encode_tiled(self, pixels: torch.Tensor) -> torch.Tensor:
        tiling = self.settings.tiling
        lat_tile = tiling.vae_tile_size // VAE_DOWNSCALE
        tile_hw = (min(lat_tile, self.latent_h), min(lat_tile, self.latent_w))
        tiles = list(tile_grid(self.latent_w, self.latent_h, lat_tile,
                               tiling.vae_latent_overlap, space="latent"))
        total_tiles = len(tiles)
        log.debug(f"  VAE: tiled encode {self.request.width}x{self.request.height} "
                  f"({total_tiles} tiles, tile={lat_tile * VAE_DOWNSCALE}px)")

        job = self.job
        job.stage_step = 0
        job.stage_total_steps = total_tiles
        tracer = get_current_tracer()

        stats = []
        tile_latent_shape = (1, self.latent_channels) + tile_hw
        for i, tile in enumerate(tiles, start=1):
            px = tile.scaled(VAE_DOWNSCALE)
            crop = pixels[:, :, px.y:px.y + px.height, px.x:px.x + px.width].contiguous()

            tile_start = time.monotonic()
            mean, std = call_encoder("vae_encoder", self.services.vae_encoder, crop,
                                     tile_latent_shape)
            tile_dur = time.monotonic() - tile_start

            stats.append((tile, mean, std))
            if tracer:
                tracer.vae_tile(job.job_id, i, total_tiles, px.width, px.height, "encode", tile_dur)
            job.stage_step = i

        return blend_encoder_tiles(stats, (1, self.latent_channels, self.latent_h, self.latent_w),
                                   tile_hw, tiling.vae_latent_overlap, generator=self.generator)

    # ------------------------------------------------------------------
    # Stage 3: denoise
    # ------------------------------------------------------------------

    def _predict(self, latent_input: torch.Tensor, t: float) -> torch.Tensor:
        job = self.job
        denoiser = self.services.denoiser
        out_shape = tuple(latent_input.shape)

        if self.services.denoiser_batched:
            latent_in = torch.cat([latent_input, latent_input])
            embeds = torch.cat([job.uncond_embeds, job.cond_embeds])
            out = call_service("denoiser", denoiser, latent_in, t, embeds,
                               expected_shape=(2,) + out_shape[1:])
            pred_uncond, pred_cond = out.chunk(2)
        else:
            pred_uncond = call_service("denoiser", denoiser, latent_input, t, job.uncond_embeds,
                                       expected_shape=out_shape)
            pred_cond = call_service("denoiser", denoiser, latent_input, t, job.cond_embeds,
                                     expected_shape=out_shape)

        return pred_uncond + self.request.guidance_scale * (pred_cond - pred_uncond)

    def denoise(self) -> None:
        job = self.job
        scheduler = self.scheduler
        timesteps = scheduler.timesteps
        tracer = get_current_tracer()

        latents = job.latents
        active_step_count = len(timesteps) - job.start_step
        log.debug(f"  Denoise: {active_step_count} steps with {scheduler.name} "
                  f"(start_step={job.start_step}, latent=[1,{self.latent_channels},{self.latent_h},{self.latent_w}])")

        job.stage_step = 0
        job.stage_total_steps = active_step_count
        for i in range(job.start_step, len(timesteps)):
            step_start = time.monotonic()
            t = timesteps[i]

            latent_input = scheduler.scale_model_input(latents, t)
            noise_pred = self._predict(latent_input, float(t))
            latents = scheduler.step(noise_pred, t, latents, generator=self.generator).prev_sample

            if self.latent_mask is not None:
                latents = composite_masked_latents(scheduler, job.original_latents,
                                                   self.latent_noise, self.latent_mask, t, latents)

            job.stage_step = i - job.start_step + 1
            if tracer:
                tracer.denoise_step(job.job_id, job.stage_step, active_step_count, float(t),
                                    time.monotonic() - step_start)
            job.report()

        # Diagnostic: check latent health after denoising
        has_nan = bool(torch.isnan(latents).any().item())
        if has_nan:
            log.warning("  Denoise: BAD latents after denoising (NaN present)")
        else:
            log.debug(f"  Denoise: complete. latent_range=[{latents.min().item():.4f}, "
                      f"{latents.max().item():.4f}]")
        job.latents = latents

    # ------------------------------------------------------------------
    # Stage 4: decode
    # ------------------------------------------------------------------

    def vae_decode(self) -> None:
        job = self.job
        req = self.request
        latents = job.latents / self.settings.model.vae_scale_factor

        if self._uses_vae_tiling():
            job.pixels = torch.from_numpy(self._vae_decode_tiled(latents))
        else:
            job.pixels = call_service("vae_decoder", self.services.vae_decoder, latents,
                                      expected_shape=(1, 3, req.height, req.width))
        log.debug(f"  VAE: decoded {req.width}x{req.height}")

    def _vae_decode_tiled(self, latents: torch.Tensor) -> np.ndarray:
        tiling = self.settings.tiling
        req = self.request
        lat_tile = tiling.vae_tile_size // VAE_DOWNSCALE
        lat_overlap = tiling.vae_tile_overlap // VAE_DOWNSCALE
        tile_hw = (min(lat_tile, self.latent_h), min(lat_tile, self.latent_w))

        xs = compute_tile_origins(self.latent_w, lat_tile, lat_overlap)
        ys = compute_tile_origins(self.latent_h, lat_tile, lat_overlap)
        tiles = [Tile(x, y, tile_hw[1], tile_hw[0], "latent") for y in ys for x in xs]
        total_tiles = len(tiles)
        log.debug(f"  VAE: tiled decode {req.width}x{req.height}, {len(xs)}x{len(ys)} grid "
                  f"({total_tiles} tiles, tile={lat_tile * VAE_DOWNSCALE}px)")

        job = self.job
        job.stage_step = 0
        job.stage_total_steps = total_tiles
        tracer = get_current_tracer()

        out_h, out_w = tile_hw[0] * VAE_DOWNSCALE, tile_hw[1] * VAE_DOWNSCALE
        decoded = []
        for i, tile in enumerate(tiles, start=1):
            crop = latents[:, :, tile.y:tile.y + tile.height, tile.x:tile.x + tile.width].contiguous()

            tile_start = time.monotonic()
            out = call_service("vae_decoder", self.services.vae_decoder, crop,
                               expected_shape=(1, 3, out_h, out_w))
            tile_dur = time.monotonic() - tile_start

            decoded.append((tile.scaled(VAE_DOWNSCALE), out.numpy()))
            if tracer:
                tracer.vae_tile(job.job_id, i, total_tiles, out_w, out_h, "decode", tile_dur)
            job.stage_step = i

        return blend_tiles(decoded, (1, 3, req.height, req.width), (out_h, out_w),
                           tiling.vae_tile_overlap)

    # ------------------------------------------------------------------
    # Stage 5: inpaint compositing
    # ------------------------------------------------------------------

    def composite(self) -> None:
        job = self.job
        original = job.original_pixels[0].numpy()
        generated = job.pixels[0].numpy()
        blended = laplacian_pyramid_blend(original, generated, self.full_mask)
        job.pixels = torch.from_numpy(np.ascontiguousarray(blended))[None]
        log.debug("  Composite: pyramid-blended generated pixels onto the source image")


def run_generation(request: GenerationRequest, services: GenerationServices,
                   progress: ProgressCallback | None = None) -> np.ndarray:
    """Generate one image; returns uint8 [height, width, 3]."""
    return GenerationOrchestrator(request, services, progress).run().image
