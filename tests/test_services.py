"""Tests for localdiffuse.backends.services (backend call normalization)."""

from __future__ import annotations

import pytest
import torch

from conftest import FakeDenoiser, FakeTextEncoder, FakeUpscaler, FakeVaeDecoder, FakeVaeEncoder
from localdiffuse.backends.services import (
    Denoiser,
    GenerationServices,
    TextEncoder,
    VaeEncoder,
    call_encoder,
    call_service,
)
from localdiffuse.errors import ConfigurationError, ExternalServiceError, ShapeMismatchError


class TestCallService:
    """Exception wrapping and shape checks."""

    def test_passes_result_as_float(self):
        out = call_service("svc", lambda x: x.half(), torch.ones(2, 2))
        assert out.dtype == torch.float32

    def test_wraps_backend_error(self):
        def boom(_):
            raise OSError("device lost")

        with pytest.raises(ExternalServiceError) as exc_info:
            call_service("vae_decoder", boom, torch.zeros(1))
        assert exc_info.value.service == "vae_decoder"
        assert isinstance(exc_info.value.__cause__, OSError)
        assert "device lost" in str(exc_info.value)

    def test_own_errors_pass_through(self):
        def bad_config(_):
            raise ConfigurationError("nope")

        with pytest.raises(ConfigurationError):
            call_service("svc", bad_config, torch.zeros(1))

    def test_shape_check_with_wildcards(self):
        out = call_service("svc", lambda x: x, torch.zeros(2, 4, 8, 8),
                           expected_shape=(None, 4, 8, 8))
        assert out.shape == (2, 4, 8, 8)
        with pytest.raises(ShapeMismatchError):
            call_service("svc", lambda x: x, torch.zeros(2, 4, 8, 8),
                         expected_shape=(2, 4, 16, 16))

    def test_rank_mismatch(self):
        with pytest.raises(ShapeMismatchError):
            call_service("svc", lambda x: x, torch.zeros(4, 8), expected_shape=(1, 4, 8))

    def test_non_tensor_result(self):
        with pytest.raises(ShapeMismatchError):
            call_service("svc", lambda x: [1, 2], torch.zeros(1), expected_shape=(2,))


class TestCallEncoder:
    """(mean, std) pair validation."""

    def test_pair(self):
        pixels = torch.zeros(1, 3, 16, 16)
        mean, std = call_encoder("vae_encoder", FakeVaeEncoder(), pixels, (1, 4, 2, 2))
        assert mean.shape == std.shape == (1, 4, 2, 2)

    def test_not_a_pair(self):
        with pytest.raises(ShapeMismatchError):
            call_encoder("vae_encoder", lambda x: torch.zeros(1, 4, 2, 2),
                         torch.zeros(1, 3, 16, 16), (1, 4, 2, 2))

    def test_wrong_latent_shape(self):
        with pytest.raises(ShapeMismatchError):
            call_encoder("vae_encoder", FakeVaeEncoder(), torch.zeros(1, 3, 16, 16),
                         (1, 4, 4, 4))


class TestGenerationServices:
    """Service bundle and protocol conformance."""

    def test_fakes_satisfy_protocols(self):
        assert isinstance(FakeTextEncoder(), TextEncoder)
        assert isinstance(FakeDenoiser(), Denoiser)
        assert isinstance(FakeVaeEncoder(), VaeEncoder)

    def test_denoiser_batched_flag(self):
        services = GenerationServices(FakeTextEncoder(), FakeDenoiser(batched=False),
                                      FakeVaeDecoder())
        assert not services.denoiser_batched
        assert services.vae_encoder is None

    def test_plain_callable_defaults_to_batched(self):
        services = GenerationServices(FakeTextEncoder(), lambda x, t, e: x, FakeVaeDecoder(),
                                      upscaler=FakeUpscaler())
        assert services.denoiser_batched
