"""Tile placement and feathered blending for fixed-size inference graphs.

The VAE decoder, VAE encoder and upscaler all run on fixed tile sizes; an
image larger than one tile is cut into overlapping tiles whose outputs are
merged with a separable fade ramp.  All accumulation is done with numpy
broadcasting (no per-pixel Python loops).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator, Sequence

import numpy as np
import torch

from localdiffuse.errors import ConfigurationError, ShapeMismatchError

# Floor for the accumulated weight before normalizing
WEIGHT_FLOOR = 1e-8


@dataclass(frozen=True)
class Tile:
    x: int
    y: int
    width: int
    height: int
    space: str = "pixel"   # "pixel" or "latent"

    def scaled(self, factor: int, space: str = "pixel") -> "Tile":
        """Same tile in a space *factor* times larger (latent -> pixel is 8)."""
        return Tile(self.x * factor, self.y * factor,
                    self.width * factor, self.height * factor, space)


def compute_tile_origins(dimension: int, tile_size: int, min_overlap: int) -> list[int]:
    """Origins along one axis so tiles of *tile_size* cover *dimension*.

    Adjacent tiles overlap by at least *min_overlap*; the slack is spread as
    evenly as integers allow (remainder on the first strides) and the last
    tile ends exactly at the edge.
    """
    if tile_size <= 0:
        raise ConfigurationError(f"tile_size must be positive (got {tile_size})")
    if min_overlap < 0:
        raise ConfigurationError(f"min_overlap must be >= 0 (got {min_overlap})")
    if min_overlap >= tile_size:
        raise ConfigurationError(
            f"min_overlap ({min_overlap}) must be smaller than tile_size ({tile_size})")

    if dimension <= tile_size:
        return [0]

    effective = tile_size - min_overlap
    count = 1 + math.ceil((dimension - tile_size) / effective)

    total_distance = dimension - tile_size
    strides = count - 1
    base, remainder = divmod(total_distance, strides)

    origins = [0]
    pos = 0
    for i in range(strides):
        pos += base + (1 if i < remainder else 0)
        origins.append(pos)
    origins[-1] = total_distance
    return origins


def tile_grid(width: int, height: int, tile_size: int, min_overlap: int,
              space: str = "pixel") -> Iterator[Tile]:
    """Row-major tiles (y outer, x inner) covering a *width* x *height* area."""
    xs = compute_tile_origins(width, tile_size, min_overlap)
    ys = compute_tile_origins(height, tile_size, min_overlap)
    tw = min(tile_size, width)
    th = min(tile_size, height)
    for y in ys:
        for x in xs:
            yield Tile(x, y, tw, th, space)


def _ramp(length: int, fade: int) -> np.ndarray:
    w = np.ones(length, dtype=np.float32)
    fade = min(fade, length)
    if fade > 0:
        ramp = np.arange(1, fade + 1, dtype=np.float32) / fade
        w[:fade] *= ramp
        w[length - fade:] *= ramp[::-1]
    return w


def fade_weights(tile_h: int, tile_w: int, overlap: int) -> np.ndarray:
    """[tile_h, tile_w] weight mask with linear ramps of ``overlap // 2``.

    Row and column ramps are applied one after the other, so corner pixels
    carry the product of both ramps.  An axis shorter than the fade (a tile
    spanning a narrow image) ramps over its own length.
    """
    if overlap < 0:
        raise ConfigurationError(f"overlap must be >= 0 (got {overlap})")
    fade = overlap // 2
    wy = _ramp(tile_h, fade)
    wx = _ramp(tile_w, fade)
    return wy[:, np.newaxis] * wx[np.newaxis, :]


def _tile_hw(tile_size: int | tuple[int, int]) -> tuple[int, int]:
    if isinstance(tile_size, tuple):
        return tile_size
    return tile_size, tile_size


def _as_numpy(arr) -> np.ndarray:
    if isinstance(arr, torch.Tensor):
        return arr.detach().cpu().float().numpy()
    return np.asarray(arr, dtype=np.float32)


def _accumulate(tiles: Sequence[tuple[Tile, np.ndarray]], canvas: np.ndarray,
                weights: np.ndarray, w_mask: np.ndarray, th: int, tw: int) -> None:
    canvas_h, canvas_w = canvas.shape[-2:]
    for tile, data in tiles:
        if data.shape[-2:] != (th, tw):
            raise ShapeMismatchError(
                f"Tile at ({tile.x}, {tile.y}) is {data.shape[-1]}x{data.shape[-2]}, "
                f"expected {tw}x{th}")
        if tile.x < 0 or tile.y < 0 or tile.x + tw > canvas_w or tile.y + th > canvas_h:
            raise ShapeMismatchError(
                f"Tile at ({tile.x}, {tile.y}) falls outside the {canvas_w}x{canvas_h} canvas")
        canvas[..., tile.y:tile.y + th, tile.x:tile.x + tw] += data * w_mask
        weights[tile.y:tile.y + th, tile.x:tile.x + tw] += w_mask


def blend_tiles(tiles: Sequence[tuple[Tile, np.ndarray]],
                canvas_shape: tuple[int, ...],
                tile_size: int | tuple[int, int],
                overlap: int) -> np.ndarray:
    """Merge overlapping tile outputs into one canvas.

    *tiles* pairs each placement with its ``[..., th, tw]`` output; the
    leading dims must match ``canvas_shape[:-2]``.  Overlaps are averaged
    under :func:`fade_weights`.
    """
    if not tiles:
        raise ShapeMismatchError("Tile list cannot be empty for blending")

    th, tw = _tile_hw(tile_size)
    w_mask = fade_weights(th, tw, overlap)

    canvas = np.zeros(canvas_shape, dtype=np.float32)
    weights = np.zeros(canvas_shape[-2:], dtype=np.float32)

    prepared = []
    for tile, data in tiles:
        data = _as_numpy(data)
        if data.shape[:-2] != tuple(canvas_shape[:-2]):
            raise ShapeMismatchError(
                f"Tile leading shape {data.shape[:-2]} does not match canvas {tuple(canvas_shape[:-2])}")
        prepared.append((tile, data))
    _accumulate(prepared, canvas, weights, w_mask, th, tw)

    return canvas / np.maximum(weights, WEIGHT_FLOOR)


def blend_encoder_tiles(tiles_mean_std: Sequence[tuple[Tile, object, object]],
                        latent_shape: tuple[int, ...],
                        tile_size: int | tuple[int, int],
                        overlap: int,
                        generator: torch.Generator | None = None) -> torch.Tensor:
    """Blend per-tile VAE posterior (mean, std) and sample once.

    Mean and std are blended separately; a single ``mean + std * randn`` draw
    on the blended statistics keeps the noise coherent across tile seams.
    """
    if not tiles_mean_std:
        raise ShapeMismatchError("Tile list cannot be empty for VAE encoder blending")

    th, tw = _tile_hw(tile_size)
    w_mask = fade_weights(th, tw, overlap)

    acc_mean = np.zeros(latent_shape, dtype=np.float32)
    acc_std = np.zeros(latent_shape, dtype=np.float32)
    weights = np.zeros(latent_shape[-2:], dtype=np.float32)
    weights_std = np.zeros(latent_shape[-2:], dtype=np.float32)

    means = [(tile, _as_numpy(mean)) for tile, mean, _ in tiles_mean_std]
    stds = [(tile, _as_numpy(std)) for tile, _, std in tiles_mean_std]
    for tile, data in means + stds:
        if data.shape[:-2] != tuple(latent_shape[:-2]):
            raise ShapeMismatchError(
                f"Encoder tile leading shape {data.shape[:-2]} does not match latent {tuple(latent_shape[:-2])}")
    _accumulate(means, acc_mean, weights, w_mask, th, tw)
    _accumulate(stds, acc_std, weights_std, w_mask, th, tw)

    w_safe = np.maximum(weights, WEIGHT_FLOOR)
    mean = torch.from_numpy(acc_mean / w_safe)
    std = torch.from_numpy(acc_std / w_safe)

    noise = torch.randn(latent_shape, generator=generator, dtype=torch.float32)
    return mean + std * noise
