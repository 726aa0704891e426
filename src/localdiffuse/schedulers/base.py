"""Shared noise-schedule state for the discrete-time diffusion solvers.

Both solvers build the same training schedule (betas -> cumulative alphas ->
Karras-style sigmas), the same inference timesteps and the same step cursor.
They differ only in how ``step`` turns a model prediction into the next
latent, so everything else lives here.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace

import numpy as np
import torch

from localdiffuse import log
from localdiffuse.config import PREDICTION_TYPES, SchedulerConfig
from localdiffuse.errors import ConfigurationError, SequencingError

# Terminal cumulative alpha after zero-SNR rescaling (exactly 0 gives inf sigma)
_ZERO_SNR_EPS = 2.0 ** -24


@dataclass
class SchedulerOutput:
    prev_sample: torch.Tensor
    pred_original_sample: torch.Tensor


# ==================================================================
# Training schedule
# ==================================================================

def _alpha_bar_cosine(t: float) -> float:
    return math.cos((t + 0.008) / 1.008 * math.pi / 2) ** 2


def _squaredcos_cap_v2(num_train_timesteps: int, max_beta: float = 0.999) -> np.ndarray:
    betas = []
    for i in range(num_train_timesteps):
        t1 = i / num_train_timesteps
        t2 = (i + 1) / num_train_timesteps
        betas.append(min(1.0 - _alpha_bar_cosine(t2) / _alpha_bar_cosine(t1), max_beta))
    return np.array(betas, dtype=np.float64)


def make_betas(config: SchedulerConfig) -> np.ndarray:
    """Per-timestep betas for the configured schedule (float64)."""
    n = config.num_train_timesteps
    if config.beta_schedule == "linear":
        return np.linspace(config.beta_start, config.beta_end, n, dtype=np.float64)
    if config.beta_schedule == "scaled_linear":
        return np.linspace(config.beta_start ** 0.5, config.beta_end ** 0.5, n,
                           dtype=np.float64) ** 2
    if config.beta_schedule == "squaredcos_cap_v2":
        return _squaredcos_cap_v2(n)
    raise ConfigurationError(f"{config.beta_schedule} is not implemented")


def rescale_zero_terminal_snr(betas: np.ndarray) -> np.ndarray:
    """Shift/scale sqrt(alphas_cumprod) so the last timestep has zero SNR."""
    alphas_cumprod = np.cumprod(1.0 - betas)
    sqrt_acp = np.sqrt(alphas_cumprod)

    first = sqrt_acp[0]
    last = sqrt_acp[-1]
    sqrt_acp = (sqrt_acp - last) * (first / (first - last))

    acp = sqrt_acp ** 2
    alphas = np.concatenate([acp[:1], acp[1:] / acp[:-1]])
    return 1.0 - alphas


def make_timesteps(config: SchedulerConfig, num_inference_steps: int) -> np.ndarray:
    """Descending inference timesteps for the configured spacing policy."""
    T = config.num_train_timesteps
    n = num_inference_steps
    if config.timestep_spacing == "linspace":
        return np.linspace(0, T - 1, n, dtype=np.float64)[::-1].copy()
    if config.timestep_spacing == "leading":
        step_ratio = T // n
        return (np.arange(n - 1, -1, -1, dtype=np.float64) * step_ratio
                + config.steps_offset)
    if config.timestep_spacing == "trailing":
        step_ratio = T / n
        return np.round(T - np.arange(n, dtype=np.float64) * step_ratio) - 1.0
    raise ConfigurationError(f"{config.timestep_spacing} is not supported")


# ==================================================================
# Scheduler base
# ==================================================================

class Scheduler(ABC):
    """Common cursor/schedule handling; subclasses implement the solver."""

    name = "scheduler"

    def __init__(self, config: SchedulerConfig | None = None):
        config = config if config is not None else SchedulerConfig()
        config.validate()
        self.config = replace(config)

        betas = make_betas(config)
        if config.rescale_betas_zero_snr:
            betas = rescale_zero_terminal_snr(betas)
        alphas_cumprod = np.cumprod(1.0 - betas)
        if config.rescale_betas_zero_snr:
            alphas_cumprod[-1] = _ZERO_SNR_EPS

        self.betas = betas
        self.alphas_cumprod = alphas_cumprod
        self._train_sigmas = np.sqrt((1.0 - alphas_cumprod) / alphas_cumprod)

        self.num_inference_steps: int | None = None
        self._timesteps: np.ndarray | None = None
        self._sigmas: np.ndarray | None = None
        self._step_index: int | None = None
        self._begin_index: int | None = None

    # -- schedule ------------------------------------------------------

    def set_timesteps(self, num_inference_steps: int) -> None:
        """Build timesteps + sigmas for *num_inference_steps* and reset the cursor."""
        if not isinstance(num_inference_steps, (int, np.integer)) or isinstance(num_inference_steps, bool):
            raise ConfigurationError(f"num_inference_steps must be an int (got {num_inference_steps!r})")
        if not 1 <= num_inference_steps <= self.config.num_train_timesteps:
            raise ConfigurationError(
                f"num_inference_steps must be in [1, {self.config.num_train_timesteps}] "
                f"(got {num_inference_steps})")

        timesteps = make_timesteps(self.config, int(num_inference_steps)).astype(np.float32)
        train_index = np.arange(len(self._train_sigmas), dtype=np.float64)
        sigmas = np.interp(timesteps, train_index, self._train_sigmas)

        self.num_inference_steps = int(num_inference_steps)
        self._timesteps = timesteps
        self._sigmas = np.concatenate([sigmas, [0.0]]).astype(np.float32)
        self._step_index = None
        self._begin_index = None
        self._reset_solver_state()

        log.debug(f"  {self.name}: {num_inference_steps} steps "
                  f"({self.config.timestep_spacing}, {self.config.beta_schedule}), "
                  f"sigma_max={float(self._sigmas[0]):.4f}")

    def _reset_solver_state(self) -> None:
        """Hook for solvers that carry history between steps."""

    def _require_timesteps(self) -> None:
        if self._timesteps is None:
            raise SequencingError(
                "Number of inference steps is not set; call set_timesteps() first")

    # -- cursor --------------------------------------------------------

    def index_for_timestep(self, timestep) -> int:
        """Position of *timestep* in the schedule.

        With duplicates the second occurrence wins (so a step started in the
        middle of the schedule does not skip a sigma); an unmatched timestep
        maps to the last index.
        """
        self._require_timesteps()
        t = float(timestep.item() if isinstance(timestep, torch.Tensor) else timestep)
        matches = np.nonzero(self._timesteps == t)[0]
        if len(matches) > 1:
            return int(matches[1])
        if len(matches) == 1:
            return int(matches[0])
        return len(self._timesteps) - 1

    def _init_step_index(self, timestep) -> None:
        if self._begin_index is None:
            self._step_index = self.index_for_timestep(timestep)
        else:
            self._step_index = self._begin_index

    def set_begin_index(self, begin_index: int = 0) -> None:
        """Start the cursor at *begin_index* (img2img starts part-way down)."""
        self._require_timesteps()
        if not 0 <= begin_index < len(self._timesteps):
            raise ConfigurationError(
                f"begin_index {begin_index} out of range for {len(self._timesteps)} steps")
        self._begin_index = int(begin_index)

    def set_prediction_type(self, prediction_type: str) -> None:
        if prediction_type not in PREDICTION_TYPES:
            raise ConfigurationError(f"prediction_type {prediction_type} is not implemented")
        self.config.prediction_type = prediction_type

    # -- accessors -----------------------------------------------------

    @property
    def timesteps(self) -> torch.Tensor:
        self._require_timesteps()
        return torch.from_numpy(self._timesteps.copy())

    @property
    def sigmas(self) -> torch.Tensor:
        self._require_timesteps()
        return torch.from_numpy(self._sigmas.copy())

    @property
    def step_index(self) -> int | None:
        return self._step_index

    @property
    def begin_index(self) -> int | None:
        return self._begin_index

    @property
    def current_sigma(self) -> float:
        """Sigma at the cursor (the first sigma before the first step)."""
        self._require_timesteps()
        index = self._step_index if self._step_index is not None else 0
        return float(self._sigmas[index])

    @property
    @abstractmethod
    def init_noise_sigma(self) -> float:
        """Standard deviation of the initial latent noise."""

    # -- noising -------------------------------------------------------

    def _noise_indices(self, timesteps, batch: int) -> list[int]:
        if self._begin_index is None:
            if isinstance(timesteps, torch.Tensor) and timesteps.ndim > 0:
                return [self.index_for_timestep(t) for t in timesteps.reshape(-1)]
            return [self.index_for_timestep(timesteps)] * batch
        if self._step_index is not None:
            return [self._step_index] * batch
        return [self._begin_index] * batch

    def add_noise(self, original_samples: torch.Tensor, noise: torch.Tensor,
                  timesteps) -> torch.Tensor:
        """Forward-diffuse *original_samples* to the given timestep(s)."""
        self._require_timesteps()
        indices = self._noise_indices(timesteps, original_samples.shape[0])
        if len(indices) == 1 and original_samples.shape[0] > 1:
            indices = indices * original_samples.shape[0]
        sigma = torch.tensor([float(self._sigmas[i]) for i in indices],
                             dtype=original_samples.dtype, device=original_samples.device)
        sigma = sigma.reshape(-1, *([1] * (original_samples.ndim - 1)))
        return self._noise_with_sigma(original_samples, noise, sigma)

    @abstractmethod
    def _noise_with_sigma(self, original: torch.Tensor, noise: torch.Tensor,
                          sigma: torch.Tensor) -> torch.Tensor:
        ...

    # -- solver --------------------------------------------------------

    @abstractmethod
    def scale_model_input(self, sample: torch.Tensor, timestep) -> torch.Tensor:
        ...

    @abstractmethod
    def step(self, model_output: torch.Tensor, timestep, sample: torch.Tensor,
             generator: torch.Generator | None = None) -> SchedulerOutput:
        ...

    def __len__(self) -> int:
        return self.config.num_train_timesteps
