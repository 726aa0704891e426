"""Tiled 4x upscaler handler.

The upscaler graph has a fixed 192x192 input (768x768 output), so any image
is cut into overlapping tiles, each tile is run through the service, and the
outputs are merged with the same feathered blend used for VAE tiles.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import numpy as np
import torch
from PIL import Image

from localdiffuse import log
from localdiffuse.backends.services import Upscaler, call_service
from localdiffuse.config import TilingConfig
from localdiffuse.errors import ShapeMismatchError
from localdiffuse.profiling.tracer import get_current_tracer
from localdiffuse.utils.image import image_to_tensor, unit_to_uint8
from localdiffuse.utils.tiling import blend_tiles, tile_grid

if TYPE_CHECKING:
    from localdiffuse.job import GenerationJob

TILE_SIZE = 192
SCALE = 4
MIN_OVERLAP = 12


def _to_unit_tensor(image) -> torch.Tensor:
    """PIL / uint8 [H, W, 3] / [0, 1] tensor -> [1, 3, H, W] float32 in [0, 1]."""
    if isinstance(image, Image.Image):
        return image_to_tensor(image, normalize=False)
    if isinstance(image, np.ndarray) and image.dtype == np.uint8:
        return image_to_tensor(image, normalize=False)
    t = torch.as_tensor(image, dtype=torch.float32)
    if t.ndim == 3:
        t = t.unsqueeze(0)
    if t.ndim != 4 or t.shape[0] != 1 or t.shape[1] != 3:
        raise ShapeMismatchError(f"Expected [1, 3, H, W] or [3, H, W] pixels, got {list(t.shape)}")
    return t


def _resize_to_min_side(t: torch.Tensor, min_side: int) -> torch.Tensor:
    """Bicubic resize of a [1, 3, H, W] unit tensor so its shorter side is *min_side*."""
    height, width = t.shape[2], t.shape[3]
    ratio = min_side / min(height, width)
    new_w = max(min_side, round(width * ratio))
    new_h = max(min_side, round(height * ratio))
    channels = [
        np.asarray(Image.fromarray(c).resize((new_w, new_h), Image.BICUBIC), dtype=np.float32)
        for c in t[0].detach().cpu().numpy().astype(np.float32)
    ]
    return torch.from_numpy(np.clip(np.stack(channels), 0.0, 1.0)).unsqueeze(0)


def upscale_image(image, upscaler: Upscaler, *, tile_size: int = TILE_SIZE,
                  scale: int = SCALE, min_overlap: int = MIN_OVERLAP,
                  job: "GenerationJob | None" = None) -> np.ndarray:
    """Upscale *image* by *scale*; returns float32 [1, 3, scale*H, scale*W] in [0, 1].

    An image whose shorter side is below *tile_size* is first resized up to
    it (aspect ratio kept), and the result is the upscale of that resized
    image.
    """
    t = _to_unit_tensor(image)
    height, width = t.shape[2], t.shape[3]
    if height < tile_size or width < tile_size:
        t = _resize_to_min_side(t, tile_size)
        log.debug(f"  Upscale: {width}x{height} below the {tile_size}px tile, "
                  f"resized to {t.shape[3]}x{t.shape[2]}")
        height, width = t.shape[2], t.shape[3]

    tiles = list(tile_grid(width, height, tile_size, min_overlap))
    out_tile = tile_size * scale
    out_overlap = min_overlap * scale
    total_tiles = len(tiles)

    log.debug(f"  Upscale: {width}x{height} -> {width * scale}x{height * scale} "
              f"({total_tiles} tiles of {tile_size}px, overlap>={min_overlap}px)")

    if job is not None:
        job.stage_step = 0
        job.stage_total_steps = total_tiles

    tracer = get_current_tracer()
    outputs = []
    for i, tile in enumerate(tiles, start=1):
        crop = t[:, :, tile.y:tile.y + tile_size, tile.x:tile.x + tile_size].contiguous()

        tile_start = time.monotonic()
        result = call_service("upscaler", upscaler, crop,
                              expected_shape=(1, 3, out_tile, out_tile))
        tile_dur = time.monotonic() - tile_start

        outputs.append((tile.scaled(scale), result[0].numpy()))
        if tracer and job is not None:
            tracer.upscale_tile(job.job_id, i, total_tiles, tile_dur)
        if job is not None:
            job.stage_step = i

    canvas = blend_tiles(outputs, (3, height * scale, width * scale), out_tile, out_overlap)
    log.debug(f"  Upscale: complete ({total_tiles} tiles)")
    return canvas[np.newaxis]


def upscale_to_uint8(image, upscaler: Upscaler, *, tiling: TilingConfig | None = None,
                     job: "GenerationJob | None" = None) -> np.ndarray:
    """Upscale and convert to uint8 [H, W, 3] using the configured tile geometry."""
    tiling = tiling if tiling is not None else TilingConfig()
    result = upscale_image(image, upscaler,
                           tile_size=tiling.upscale_tile_size,
                           scale=tiling.upscale_scale,
                           min_overlap=tiling.upscale_min_overlap,
                           job=job)
    return unit_to_uint8(result)
