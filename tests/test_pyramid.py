"""Tests for localdiffuse.utils.pyramid (Laplacian pyramid compositing)."""

from __future__ import annotations

import numpy as np
import pytest

from localdiffuse.errors import ShapeMismatchError
from localdiffuse.utils.pyramid import (
    laplacian_pyramid_blend,
    num_pyramid_levels,
    pyr_down,
    pyr_up,
)


@pytest.fixture()
def images(rng):
    a = rng.uniform(-1, 1, size=(3, 48, 64)).astype(np.float32)
    b = rng.uniform(-1, 1, size=(3, 48, 64)).astype(np.float32)
    return a, b


class TestResampling:
    """Binomial down/up sampling."""

    def test_pyr_down_halves(self, rng):
        img = rng.standard_normal((3, 13, 20)).astype(np.float32)
        assert pyr_down(img).shape == (3, 6, 10)

    def test_pyr_down_preserves_constant(self):
        out = pyr_down(np.full((1, 16, 16), 0.3, np.float32))
        np.testing.assert_allclose(out, 0.3, rtol=1e-6)

    @pytest.mark.parametrize("target", [(16, 16), (17, 15)])
    def test_pyr_up_unit_gain(self, target):
        out = pyr_up(np.full((2, 8, 8), -0.6, np.float32), *target)
        assert out.shape == (2,) + target
        np.testing.assert_allclose(out, -0.6, rtol=1e-6)

    @pytest.mark.parametrize("shape,levels", [
        ((512, 512), 6),
        ((64, 64), 3),
        ((16, 16), 2),
        ((8, 8), 1),
        ((12, 100), 1),
    ])
    def test_level_count(self, shape, levels):
        assert num_pyramid_levels(*shape) == levels


class TestLaplacianPyramidBlend:
    """Mask-weighted multi-band blending."""

    def test_zero_mask_keeps_first(self, images):
        a, b = images
        out = laplacian_pyramid_blend(a, b, np.zeros((48, 64), np.float32))
        np.testing.assert_allclose(out, a, atol=1e-5)

    def test_full_mask_takes_second(self, images):
        a, b = images
        out = laplacian_pyramid_blend(a, b, np.ones((1, 48, 64), np.float32))
        np.testing.assert_allclose(out, b, atol=1e-5)

    def test_same_image_is_identity(self, images, rng):
        a, _ = images
        mask = rng.uniform(0, 1, size=(48, 64)).astype(np.float32)
        out = laplacian_pyramid_blend(a, a, mask)
        np.testing.assert_allclose(out, a, atol=1e-5)

    def test_half_mask_seam_is_soft(self):
        a = np.zeros((1, 32, 64), np.float32)
        b = np.ones((1, 32, 64), np.float32)
        mask = np.zeros((32, 64), np.float32)
        mask[:, 32:] = 1.0
        out = laplacian_pyramid_blend(a, b, mask)
        row = out[0, 16]
        assert row[0] == pytest.approx(0.0, abs=1e-3)
        assert row[-1] == pytest.approx(1.0, abs=1e-3)
        assert 0.0 < row[31] < 1.0 and 0.0 < row[32] < 1.0

    def test_output_shape_and_dtype(self, images):
        a, b = images
        out = laplacian_pyramid_blend(a, b, np.full((48, 64), 0.5, np.float32))
        assert out.shape == a.shape
        assert out.dtype == np.float32

    def test_image_shape_mismatch(self, images):
        a, _ = images
        with pytest.raises(ShapeMismatchError):
            laplacian_pyramid_blend(a, a[:, :32], np.zeros((48, 64)))

    def test_mask_shape_mismatch(self, images):
        a, b = images
        with pytest.raises(ShapeMismatchError):
            laplacian_pyramid_blend(a, b, np.zeros((48, 32)))
