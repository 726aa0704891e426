"""Tests for localdiffuse.utils.image (pixel and mask conversion)."""

from __future__ import annotations

import numpy as np
import pytest
import torch
from PIL import Image

from localdiffuse.errors import ShapeMismatchError
from localdiffuse.utils.image import image_to_tensor, mask_to_array, pixels_to_uint8, unit_to_uint8


class TestPixelConversion:
    def test_image_to_tensor_range(self):
        arr = np.array([[[0, 255, 128]]], dtype=np.uint8)
        t = image_to_tensor(arr)
        assert t.shape == (1, 3, 1, 1)
        torch.testing.assert_close(t.flatten(), torch.tensor([-1.0, 1.0, 128 / 127.5 - 1.0]))
        torch.testing.assert_close(image_to_tensor(arr, normalize=False).flatten(),
                                   torch.tensor([0.0, 1.0, 128 / 255.0]))

    def test_pil_input(self):
        t = image_to_tensor(Image.new("RGB", (5, 3), (255, 0, 0)))
        assert t.shape == (1, 3, 3, 5)
        assert t[0, 0].min().item() == 1.0

    def test_bad_array(self):
        with pytest.raises(ShapeMismatchError):
            image_to_tensor(np.zeros((4, 4), np.uint8))

    def test_pixels_to_uint8_clips(self):
        pixels = torch.tensor([[[[-2.0]], [[0.0]], [[2.0]]]])
        assert pixels_to_uint8(pixels).tolist() == [[[0, 127, 255]]]

    def test_unit_to_uint8(self):
        out = unit_to_uint8(np.full((3, 2, 2), 1.0, np.float32))
        assert out.shape == (2, 2, 3)
        assert out.max() == 255


class TestMaskToArray:
    def test_uint8_scaled(self):
        mask = np.zeros((8, 8), np.uint8)
        mask[:, 4:] = 255
        out = mask_to_array(mask, 8, 8)
        assert out.dtype == np.float32
        assert out[0, 0] == 0.0 and out[0, 7] == 1.0

    def test_rgb_averaged(self):
        mask = np.zeros((4, 4, 3), np.float32)
        mask[..., 0] = 0.9
        np.testing.assert_allclose(mask_to_array(mask, 4, 4), 0.3, rtol=1e-6)

    def test_resized(self):
        out = mask_to_array(np.ones((64, 64), np.float32), 8, 8)
        assert out.shape == (8, 8)
        np.testing.assert_allclose(out, 1.0, atol=1e-5)

    def test_pil_mask(self):
        out = mask_to_array(Image.new("L", (16, 16), 255), 4, 4)
        assert out.shape == (4, 4)
        np.testing.assert_allclose(out, 1.0)

    def test_colored_pil_matches_array(self):
        """A colored PIL mask gives the same RGB mean as the equivalent array."""
        arr = np.zeros((4, 4, 3), np.uint8)
        arr[..., 0] = 255
        arr[..., 1] = 60
        from_pil = mask_to_array(Image.fromarray(arr), 4, 4)
        np.testing.assert_allclose(from_pil, mask_to_array(arr, 4, 4), rtol=1e-6)
        np.testing.assert_allclose(from_pil, (255 + 60) / 3 / 255, rtol=1e-6)

    def test_rgba_ignores_alpha(self):
        arr = np.zeros((4, 4, 4), np.uint8)
        arr[..., :3] = 51
        arr[..., 3] = 255
        np.testing.assert_allclose(mask_to_array(arr, 4, 4), 0.2, rtol=1e-6)
        np.testing.assert_allclose(mask_to_array(Image.fromarray(arr), 4, 4), 0.2, rtol=1e-6)

    def test_bad_rank(self):
        with pytest.raises(ShapeMismatchError):
            mask_to_array(np.zeros((2, 2, 2, 2)), 2, 2)
