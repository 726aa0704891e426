"""Pixel array <-> tensor <-> PIL Image conversion helpers."""

from __future__ import annotations

import numpy as np
import torch
from PIL import Image

from localdiffuse.errors import ShapeMismatchError


def image_to_tensor(image: Image.Image | np.ndarray, normalize: bool = True) -> torch.Tensor:
    """Convert a PIL image or uint8 [H, W, 3] array to a [1, 3, H, W] float32 tensor.

    If normalize=True, maps [0,255] -> [-1,1].
    If normalize=False, maps [0,255] -> [0,1].
    """
    if isinstance(image, Image.Image):
        arr = np.array(image.convert("RGB"), dtype=np.float32)
    else:
        arr = np.asarray(image)
        if arr.ndim != 3 or arr.shape[2] != 3:
            raise ShapeMismatchError(f"Expected an [H, W, 3] image array, got {arr.shape}")
        arr = arr.astype(np.float32)
    # HWC -> CHW
    t = torch.from_numpy(arr).permute(2, 0, 1).unsqueeze(0).contiguous()
    if normalize:
        t = t / 127.5 - 1.0
    else:
        t = t / 255.0
    return t


def pixels_to_uint8(pixels: torch.Tensor | np.ndarray) -> np.ndarray:
    """[-1, 1] pixels ([1, 3, H, W] or [3, H, W]) -> uint8 [H, W, 3]."""
    if isinstance(pixels, torch.Tensor):
        pixels = pixels.detach().cpu().float().numpy()
    arr = np.asarray(pixels, dtype=np.float32)
    if arr.ndim == 4:
        arr = arr[0]
    norm = np.clip((arr.transpose(1, 2, 0) + 1.0) / 2.0 * 255.0, 0.0, 255.0)
    return norm.astype(np.uint8)


def unit_to_uint8(pixels: torch.Tensor | np.ndarray) -> np.ndarray:
    """[0, 1] pixels ([1, 3, H, W] or [3, H, W]) -> uint8 [H, W, 3]."""
    if isinstance(pixels, torch.Tensor):
        pixels = pixels.detach().cpu().float().numpy()
    arr = np.asarray(pixels, dtype=np.float32)
    if arr.ndim == 4:
        arr = arr[0]
    return (np.clip(arr.transpose(1, 2, 0), 0.0, 1.0) * 255.0).astype(np.uint8)


def mask_to_array(mask: Image.Image | np.ndarray, height: int, width: int) -> np.ndarray:
    """Load a mask as float32 [height, width] in [0, 1] (1 = regenerate).

    Color masks are averaged over their RGB channels, for PIL images and
    arrays alike; uint8 input is scaled by 1/255. A mask of a different size
    is resized bilinearly.
    """
    if isinstance(mask, Image.Image):
        if mask.mode not in ("L", "F"):
            mask = mask.convert("RGB")
        mask = np.asarray(mask)

    arr = np.asarray(mask)
    if arr.ndim == 3:
        arr = arr[..., :3].mean(axis=2) if arr.shape[2] in (1, 3, 4) else arr[0]
    if arr.ndim != 2:
        raise ShapeMismatchError(f"Mask must be 2-D (got shape {np.shape(mask)})")
    if np.issubdtype(np.asarray(mask).dtype, np.integer):
        arr = arr.astype(np.float32) / 255.0
    arr = np.clip(arr.astype(np.float32), 0.0, 1.0)
    if arr.shape == (height, width):
        return arr

    img = Image.fromarray(arr).resize((width, height), Image.BILINEAR)
    return np.clip(np.asarray(img, dtype=np.float32), 0.0, 1.0)
