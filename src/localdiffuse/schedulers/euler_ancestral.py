"""Euler ancestral sampler (stochastic, first order)."""

from __future__ import annotations

import math

import torch

from localdiffuse.schedulers.base import Scheduler, SchedulerOutput


class EulerAncestralScheduler(Scheduler):
    """Ancestral Euler steps on the sigma-parameterized probability flow.

    Each step moves deterministically to ``sigma_down`` and then re-injects
    fresh Gaussian noise of scale ``sigma_up`` so the marginal at the next
    sigma is matched.  Noise comes from *generator* (seeded per request) or,
    via :meth:`step_with_noise`, from the caller.
    """

    name = "EulerA"

    @property
    def init_noise_sigma(self) -> float:
        self._require_timesteps()
        max_sigma = float(self._sigmas.max())
        if self.config.timestep_spacing in ("linspace", "trailing"):
            return max_sigma
        return math.sqrt(max_sigma * max_sigma + 1.0)

    def scale_model_input(self, sample: torch.Tensor, timestep) -> torch.Tensor:
        self._require_timesteps()
        if self._step_index is None:
            self._init_step_index(timestep)
        sigma = float(self._sigmas[self._step_index])
        return sample / math.sqrt(sigma * sigma + 1.0)

    def _noise_with_sigma(self, original, noise, sigma):
        return original + noise * sigma

    def _predict_original(self, model_output: torch.Tensor, sample: torch.Tensor,
                          sigma: float) -> torch.Tensor:
        prediction_type = self.config.prediction_type
        if prediction_type == "epsilon":
            return sample - sigma * model_output
        if prediction_type == "v_prediction":
            return (model_output * (-sigma / math.sqrt(sigma * sigma + 1.0))
                    + sample / (sigma * sigma + 1.0))
        # "sample": the network predicts x0 directly
        return model_output

    def _advance(self, model_output: torch.Tensor, timestep, sample: torch.Tensor,
                 noise_fn) -> SchedulerOutput:
        self._require_timesteps()
        if self._step_index is None:
            self._init_step_index(timestep)

        sigma_from = float(self._sigmas[self._step_index])
        sigma_to = float(self._sigmas[self._step_index + 1])

        pred_original = self._predict_original(model_output, sample, sigma_from)

        sigma_up = math.sqrt(sigma_to ** 2 * (sigma_from ** 2 - sigma_to ** 2) / sigma_from ** 2)
        sigma_down = math.sqrt(max(sigma_to ** 2 - sigma_up ** 2, 0.0))

        derivative = (sample - pred_original) / sigma_from
        dt = sigma_down - sigma_from
        prev_sample = sample + derivative * dt

        noise = noise_fn(model_output)
        prev_sample = prev_sample + noise * sigma_up

        self._step_index += 1
        return SchedulerOutput(prev_sample=prev_sample, pred_original_sample=pred_original)

    def step(self, model_output: torch.Tensor, timestep, sample: torch.Tensor,
             generator: torch.Generator | None = None) -> SchedulerOutput:
        def _draw(like: torch.Tensor) -> torch.Tensor:
            return torch.randn(like.shape, generator=generator,
                               dtype=like.dtype, device=like.device)
        return self._advance(model_output, timestep, sample, _draw)

    def step_with_noise(self, model_output: torch.Tensor, timestep, sample: torch.Tensor,
                        noise: torch.Tensor) -> SchedulerOutput:
        """Same as :meth:`step` but with caller-supplied ancestral noise."""
        return self._advance(model_output, timestep, sample, lambda _like: noise)
