"""Generation request/job definitions and types."""

from __future__ import annotations

import random
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

import numpy as np
import torch
from PIL import Image

from localdiffuse.config import ModelConfig, SchedulerConfig, TilingConfig
from localdiffuse.errors import ConfigurationError, SequencingError, ShapeMismatchError

ProgressCallback = Callable[[int, int], None]


class GenerationState(Enum):
    INIT = "Init"
    TEXT_ENCODED = "TextEncoded"
    IMG2IMG_ENCODED = "Img2ImgEncoded"
    DENOISING = "Denoising"
    DECODED = "Decoded"
    COMPOSITED = "Composited"
    DONE = "Done"
    ERROR = "Error"


# Legal forward transitions; ERROR is reachable from every state
_TRANSITIONS: dict[GenerationState, tuple[GenerationState, ...]] = {
    GenerationState.INIT: (GenerationState.TEXT_ENCODED,),
    GenerationState.TEXT_ENCODED: (GenerationState.IMG2IMG_ENCODED, GenerationState.DENOISING),
    GenerationState.IMG2IMG_ENCODED: (GenerationState.DENOISING,),
    GenerationState.DENOISING: (GenerationState.DECODED,),
    GenerationState.DECODED: (GenerationState.COMPOSITED, GenerationState.DONE),
    GenerationState.COMPOSITED: (GenerationState.DONE,),
    GenerationState.DONE: (),
    GenerationState.ERROR: (),
}


@dataclass
class PipelineSettings:
    """Per-model settings passed explicitly with every request."""
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    tiling: TilingConfig = field(default_factory=TilingConfig)
    model: ModelConfig = field(default_factory=ModelConfig)


@dataclass
class GenerationRequest:
    # Either token ids (77 each) or precomputed [1, 77, D] embeddings
    prompt_tokens: list[int] = field(default_factory=list)
    negative_tokens: list[int] = field(default_factory=list)
    prompt_embeds: torch.Tensor | None = None
    negative_embeds: torch.Tensor | None = None

    width: int = 512
    height: int = 512
    steps: int = 20
    guidance_scale: float = 7.5
    seed: int = 0

    # img2img / inpaint
    init_image: Image.Image | np.ndarray | None = None    # RGB, width x height
    denoise_strength: float = 0.6
    mask: Image.Image | np.ndarray | None = None          # full-res, 1 = regenerate
    latent_mask: Image.Image | np.ndarray | None = None   # derived from mask when None

    settings: PipelineSettings = field(default_factory=PipelineSettings)

    @property
    def is_img2img(self) -> bool:
        return self.init_image is not None

    @property
    def has_mask(self) -> bool:
        return self.mask is not None or self.latent_mask is not None

    def validate(self) -> None:
        if self.width <= 0 or self.height <= 0 or self.width % 8 or self.height % 8:
            raise ConfigurationError(
                f"width/height must be positive multiples of 8 (got {self.width}x{self.height})")
        if self.steps < 1:
            raise ConfigurationError(f"steps must be >= 1 (got {self.steps})")
        if self.has_mask and not self.is_img2img:
            raise ConfigurationError("A mask requires an init image")
        if self.is_img2img and not 0.0 < self.denoise_strength <= 1.0:
            raise ConfigurationError(
                f"denoise_strength must be in (0, 1] (got {self.denoise_strength})")
        if self.prompt_embeds is None and not self.prompt_tokens:
            raise ConfigurationError("Request needs prompt_tokens or prompt_embeds")
        if (self.prompt_embeds is None) != (self.negative_embeds is None):
            raise ConfigurationError("prompt_embeds and negative_embeds must be given together")

        max_tokens = self.settings.model.max_tokens
        for name, tokens in (("prompt_tokens", self.prompt_tokens),
                             ("negative_tokens", self.negative_tokens)):
            if tokens and len(tokens) != max_tokens:
                raise ShapeMismatchError(f"{name} must hold {max_tokens} ids (got {len(tokens)})")

        if self.init_image is not None:
            if isinstance(self.init_image, Image.Image):
                w, h = self.init_image.size
            else:
                h, w = np.shape(self.init_image)[:2]
            if (w, h) != (self.width, self.height):
                raise ShapeMismatchError(
                    f"init_image is {w}x{h}, request is {self.width}x{self.height}")

        self.settings.scheduler.validate()
        self.settings.tiling.validate()


@dataclass
class GenerationResult:
    """Output of a completed run; failures raise instead of returning a result."""
    image: np.ndarray                    # uint8 [H, W, 3]
    seed: int
    width: int
    height: int
    job_id: str = ""


class GenerationJob:
    """Progress and state of one request as it moves through the pipeline."""

    def __init__(self, request: GenerationRequest, progress: ProgressCallback | None = None):
        _JOB_CHARS = string.ascii_letters + string.digits  # a-zA-Z0-9
        self.job_id: str = ''.join(random.choices(_JOB_CHARS, k=10))
        self.created_at: datetime = datetime.now(timezone.utc)
        self.completed_at: datetime | None = None

        self.request = request
        self.state = GenerationState.INIT
        self._progress = progress

        # Progress tracking
        self.current_step: int = 0
        self.total_steps: int = 0
        self.start_step: int = 0
        self.stage_step: int = 0          # generic stage progress (e.g. VAE tiles)
        self.stage_total_steps: int = 0   # total sub-steps for current stage

        # Intermediate state
        self.cond_embeds: torch.Tensor | None = None     # [1, 77, D]
        self.uncond_embeds: torch.Tensor | None = None   # [1, 77, D]
        self.latents: torch.Tensor | None = None
        self.original_latents: torch.Tensor | None = None
        self.original_pixels: torch.Tensor | None = None  # [1, 3, H, W] in [-1, 1]
        self.pixels: torch.Tensor | None = None

    def advance(self, state: GenerationState) -> None:
        """Move to *state*; only forward transitions (or ERROR) are accepted."""
        if state is not GenerationState.ERROR and state not in _TRANSITIONS[self.state]:
            raise SequencingError(f"Illegal transition {self.state.value} -> {state.value}")
        self.state = state
        if state in (GenerationState.DONE, GenerationState.ERROR):
            self.completed_at = datetime.now(timezone.utc)

    def report(self) -> None:
        """Count one unit of progress and notify the callback."""
        self.current_step += 1
        if self._progress is not None:
            self._progress(self.current_step, self.total_steps)

    def __str__(self):
        return f"Job[{self.job_id}] {self.state.value} step={self.current_step}/{self.total_steps}"
