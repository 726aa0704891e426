"""Laplacian pyramid blending for inpaint compositing.

Blends two ``[C, H, W]`` images under a soft mask band by band, so the seam
between kept and regenerated regions is feathered at every spatial frequency
instead of only at full resolution.
"""

from __future__ import annotations

import math

import numpy as np

from localdiffuse import log
from localdiffuse.errors import ShapeMismatchError

# 5-tap binomial kernel (1, 4, 6, 4, 1) / 16
_KERNEL = np.array([1.0, 4.0, 6.0, 4.0, 1.0], dtype=np.float32) / 16.0
_OFFSETS = (-2, -1, 0, 1, 2)


def _shape_along(axis: int, ndim: int, n: int) -> tuple[int, ...]:
    shape = [1] * ndim
    shape[axis] = n
    return tuple(shape)


def _down_axis(img: np.ndarray, axis: int) -> np.ndarray:
    n = img.shape[axis]
    y = np.arange(n // 2)
    out = None
    for k, kw in zip(_OFFSETS, _KERNEL):
        src = np.clip(2 * y + k, 0, n - 1)
        term = np.take(img, src, axis=axis) * kw
        out = term if out is None else out + term
    return out


def _up_axis(img: np.ndarray, target: int, axis: int) -> np.ndarray:
    n = img.shape[axis]
    y = np.arange(target)
    out = None
    for k, kw in zip(_OFFSETS, _KERNEL):
        d = y - k
        # only taps landing on an inserted (even) sample contribute
        w = np.where(d % 2 == 0, 2.0 * kw, 0.0).astype(np.float32)
        src = np.clip(d // 2, 0, n - 1)
        term = np.take(img, src, axis=axis) * w.reshape(_shape_along(axis, img.ndim, target))
        out = term if out is None else out + term
    return out


def pyr_down(img: np.ndarray) -> np.ndarray:
    """Blur with the binomial kernel (edge clamped) and drop every other row/column."""
    return _down_axis(_down_axis(img, img.ndim - 2), img.ndim - 1)


def pyr_up(img: np.ndarray, target_h: int, target_w: int) -> np.ndarray:
    """Zero-insert to *target_h* x *target_w* and smooth with 4x the kernel.

    Source indices are clamped to the edge, so odd target sizes and borders
    keep unit gain.
    """
    return _up_axis(_up_axis(img, target_h, img.ndim - 2), target_w, img.ndim - 1)


def num_pyramid_levels(height: int, width: int) -> int:
    min_size = min(height, width)
    levels = max(int(math.floor(math.log2(min_size))) - 3, 2)
    while levels > 0 and (min_size >> levels) < 4:
        levels -= 1
    return max(levels, 1)


def _gaussian_pyramid(img: np.ndarray, levels: int) -> list[np.ndarray]:
    pyr = [img]
    for _ in range(1, levels):
        pyr.append(pyr_down(pyr[-1]))
    return pyr


def _laplacian_pyramid(gauss: list[np.ndarray]) -> list[np.ndarray]:
    bands = []
    for i in range(len(gauss) - 1):
        h, w = gauss[i].shape[-2:]
        bands.append(gauss[i] - pyr_up(gauss[i + 1], h, w))
    bands.append(gauss[-1])
    return bands


def laplacian_pyramid_blend(image_a: np.ndarray, image_b: np.ndarray,
                            mask: np.ndarray) -> np.ndarray:
    """Blend *image_b* over *image_a* where *mask* is 1.

    Images are ``[C, H, W]``; the mask is ``[H, W]`` or ``[1, H, W]`` in [0, 1].
    """
    a = np.asarray(image_a, dtype=np.float32)
    b = np.asarray(image_b, dtype=np.float32)
    m = np.asarray(mask, dtype=np.float32)
    if a.ndim != 3 or a.shape != b.shape:
        raise ShapeMismatchError(
            f"Pyramid blend needs two [C, H, W] images of equal shape (got {a.shape} and {b.shape})")
    if m.ndim == 2:
        m = m[np.newaxis]
    if m.ndim != 3 or m.shape[0] != 1 or m.shape[1:] != a.shape[1:]:
        raise ShapeMismatchError(
            f"Mask shape {np.shape(mask)} does not match image {a.shape[1:]}")

    height, width = a.shape[1:]
    levels = num_pyramid_levels(height, width)
    log.debug(f"  Pyramid: blending {width}x{height} over {levels} levels")

    gauss_mask = _gaussian_pyramid(m, levels)
    bands_a = _laplacian_pyramid(_gaussian_pyramid(a, levels))
    bands_b = _laplacian_pyramid(_gaussian_pyramid(b, levels))

    blended = [la * (1.0 - gm) + lb * gm
               for la, lb, gm in zip(bands_a, bands_b, gauss_mask)]

    result = blended[-1]
    for band in reversed(blended[:-1]):
        h, w = band.shape[-2:]
        result = pyr_up(result, h, w) + band
    return result
