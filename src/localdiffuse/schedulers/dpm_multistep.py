"""DPM-Solver++ multistep sampler (deterministic, orders 1-3).

Works in the sigma parameterization shared with the Euler sampler:
``alpha_t = 1/sqrt(sigma^2 + 1)``, ``sigma_t = sigma * alpha_t`` and the
half log-SNR ``lambda = log(alpha_t) - log(sigma_t)``.  Every model output is
first converted to a data prediction (x0); the last ``solver_order`` of those
are kept and combined by the multistep update.
"""

from __future__ import annotations

import math

import torch

from localdiffuse.config import SchedulerConfig
from localdiffuse.schedulers.base import Scheduler, SchedulerOutput

# Below this many steps the second-to-last step also drops to second order
_LOWER_ORDER_SECOND_MAX_STEPS = 15


def _alpha_sigma(sigma: float) -> tuple[float, float]:
    alpha_t = 1.0 / math.sqrt(sigma * sigma + 1.0)
    return alpha_t, sigma * alpha_t


def _lambda(alpha_t: float, sigma_t: float) -> float:
    return math.log(alpha_t) - math.log(sigma_t)


class DPMSolverMultistepScheduler(Scheduler):
    name = "DPM++"

    def __init__(self, config: SchedulerConfig | None = None):
        super().__init__(config)
        self.solver_order = self.config.solver_order
        self._model_outputs: list[torch.Tensor | None] = [None] * self.solver_order
        self._lower_order_nums = 0

    def _reset_solver_state(self) -> None:
        self._model_outputs = [None] * self.solver_order
        self._lower_order_nums = 0

    @property
    def init_noise_sigma(self) -> float:
        return 1.0

    def scale_model_input(self, sample: torch.Tensor, timestep) -> torch.Tensor:
        return sample

    def _noise_with_sigma(self, original, noise, sigma):
        alpha_t = 1.0 / torch.sqrt(sigma * sigma + 1.0)
        sigma_t = sigma * alpha_t
        return alpha_t * original + sigma_t * noise

    # ------------------------------------------------------------------
    # Data prediction
    # ------------------------------------------------------------------

    def convert_model_output(self, model_output: torch.Tensor,
                             sample: torch.Tensor) -> torch.Tensor:
        """Turn the network output at the current sigma into an x0 estimate."""
        sigma = float(self._sigmas[self._step_index])
        alpha_t, sigma_t = _alpha_sigma(sigma)
        prediction_type = self.config.prediction_type
        if prediction_type == "epsilon":
            return (sample - sigma_t * model_output) / alpha_t
        if prediction_type == "v_prediction":
            return alpha_t * sample - sigma_t * model_output
        return model_output

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def _first_order_update(self, x0: torch.Tensor, sample: torch.Tensor) -> torch.Tensor:
        sigma_next = float(self._sigmas[self._step_index + 1])
        sigma_cur = float(self._sigmas[self._step_index])
        if sigma_next == 0.0:
            # alpha_t = 1, sigma_t = 0, exp(-h) -> 0: the update lands on x0
            return x0

        alpha_t, sigma_t = _alpha_sigma(sigma_next)
        alpha_s, sigma_s = _alpha_sigma(sigma_cur)
        h = _lambda(alpha_t, sigma_t) - _lambda(alpha_s, sigma_s)
        return (sigma_t / sigma_s) * sample - (alpha_t * (math.exp(-h) - 1.0)) * x0

    def _second_order_update(self, sample: torch.Tensor) -> torch.Tensor:
        i = self._step_index
        alpha_t, sigma_t = _alpha_sigma(float(self._sigmas[i + 1]))
        alpha_s0, sigma_s0 = _alpha_sigma(float(self._sigmas[i]))
        alpha_s1, sigma_s1 = _alpha_sigma(float(self._sigmas[i - 1]))

        lambda_t = _lambda(alpha_t, sigma_t)
        lambda_s0 = _lambda(alpha_s0, sigma_s0)
        lambda_s1 = _lambda(alpha_s1, sigma_s1)

        m0, m1 = self._model_outputs[-1], self._model_outputs[-2]
        h = lambda_t - lambda_s0
        h_0 = lambda_s0 - lambda_s1
        r0 = h_0 / h
        D0 = m0
        D1 = (1.0 / r0) * (m0 - m1)

        # midpoint variant
        coeff = alpha_t * (math.exp(-h) - 1.0)
        return (sigma_t / sigma_s0) * sample - coeff * D0 - 0.5 * coeff * D1

    def _third_order_update(self, sample: torch.Tensor) -> torch.Tensor:
        i = self._step_index
        alpha_t, sigma_t = _alpha_sigma(float(self._sigmas[i + 1]))
        alpha_s0, sigma_s0 = _alpha_sigma(float(self._sigmas[i]))
        alpha_s1, sigma_s1 = _alpha_sigma(float(self._sigmas[i - 1]))
        alpha_s2, sigma_s2 = _alpha_sigma(float(self._sigmas[i - 2]))

        lambda_t = _lambda(alpha_t, sigma_t)
        lambda_s0 = _lambda(alpha_s0, sigma_s0)
        lambda_s1 = _lambda(alpha_s1, sigma_s1)
        lambda_s2 = _lambda(alpha_s2, sigma_s2)

        m0, m1, m2 = self._model_outputs[-1], self._model_outputs[-2], self._model_outputs[-3]
        h = lambda_t - lambda_s0
        h_0 = lambda_s0 - lambda_s1
        h_1 = lambda_s1 - lambda_s2
        r0, r1 = h_0 / h, h_1 / h

        D0 = m0
        D1_0 = (1.0 / r0) * (m0 - m1)
        D1_1 = (1.0 / r1) * (m1 - m2)
        D1 = D1_0 + (r0 / (r0 + r1)) * (D1_0 - D1_1)
        D2 = (1.0 / (r0 + r1)) * (D1_0 - D1_1)

        exp_term = math.exp(-h) - 1.0
        return ((sigma_t / sigma_s0) * sample
                - (alpha_t * exp_term) * D0
                + (alpha_t * (exp_term / h + 1.0)) * D1
                - (alpha_t * ((exp_term + h) / h ** 2 - 0.5)) * D2)

    # ------------------------------------------------------------------
    # Step
    # ------------------------------------------------------------------

    def step(self, model_output: torch.Tensor, timestep, sample: torch.Tensor,
             generator: torch.Generator | None = None) -> SchedulerOutput:
        """Advance one step.  *generator* is accepted for a uniform call
        signature; the solver injects no noise."""
        self._require_timesteps()
        if self._step_index is None:
            self._init_step_index(timestep)

        n = len(self._timesteps)
        # Terminal sigma is 0, so the last step is always first order
        lower_order_final = self._step_index == n - 1
        lower_order_second = (self._step_index == n - 2
                              and self.config.lower_order_final
                              and n < _LOWER_ORDER_SECOND_MAX_STEPS)

        x0 = self.convert_model_output(model_output, sample)
        self._model_outputs = self._model_outputs[1:] + [x0]

        if self.solver_order == 1 or self._lower_order_nums < 1 or lower_order_final:
            prev_sample = self._first_order_update(x0, sample)
        elif self.solver_order == 2 or self._lower_order_nums < 2 or lower_order_second:
            prev_sample = self._second_order_update(sample)
        else:
            prev_sample = self._third_order_update(sample)

        if self._lower_order_nums < self.solver_order:
            self._lower_order_nums += 1

        self._step_index += 1
        return SchedulerOutput(prev_sample=prev_sample, pred_original_sample=x0)
