"""INI config parser for localdiffuse.ini, plus the scheduler/tiling settings
threaded through every generation request."""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field, replace

from localdiffuse.errors import ConfigurationError

BETA_SCHEDULES = ("linear", "scaled_linear", "squaredcos_cap_v2")
PREDICTION_TYPES = ("epsilon", "v_prediction", "sample")
TIMESTEP_SPACINGS = ("linspace", "leading", "trailing")
SOLVERS = ("dpm_multistep", "euler_ancestral")

# Accepted spellings for SchedulerConfig.solver
_SOLVER_ALIASES = {
    "dpm_multistep": "dpm_multistep",
    "dpm++_2m": "dpm_multistep",
    "dpmpp_2m": "dpm_multistep",
    "dpmsolver++": "dpm_multistep",
    "euler_ancestral": "euler_ancestral",
    "euler_a": "euler_ancestral",
}


@dataclass
class SchedulerConfig:
    num_train_timesteps: int = 1000
    beta_start: float = 0.00085
    beta_end: float = 0.012
    beta_schedule: str = "scaled_linear"
    prediction_type: str = "epsilon"
    timestep_spacing: str = "leading"
    steps_offset: int = 0
    rescale_betas_zero_snr: bool = False
    solver: str = "dpm_multistep"
    solver_order: int = 2                # multistep only
    lower_order_final: bool = True       # multistep only

    def validate(self) -> None:
        """Raise ConfigurationError on any unsupported setting."""
        if self.beta_schedule not in BETA_SCHEDULES:
            raise ConfigurationError(f"{self.beta_schedule} is not implemented")
        if self.prediction_type not in PREDICTION_TYPES:
            raise ConfigurationError(f"prediction_type {self.prediction_type} is not implemented")
        if self.timestep_spacing not in TIMESTEP_SPACINGS:
            raise ConfigurationError(f"{self.timestep_spacing} is not supported")
        if self.solver_name not in SOLVERS:
            raise ConfigurationError(f"Unknown solver: {self.solver!r}")
        if self.num_train_timesteps < 2:
            raise ConfigurationError("num_train_timesteps must be >= 2")
        if not 0.0 < self.beta_start < self.beta_end < 1.0:
            raise ConfigurationError(
                f"beta range must satisfy 0 < beta_start < beta_end < 1 "
                f"(got {self.beta_start}, {self.beta_end})")
        if self.steps_offset < 0:
            raise ConfigurationError("steps_offset must be >= 0")
        if self.solver_order not in (1, 2, 3):
            raise ConfigurationError(f"solver_order must be 1, 2 or 3 (got {self.solver_order})")

    @property
    def solver_name(self) -> str:
        """Canonical solver name, or the raw string when it is not recognised."""
        return _SOLVER_ALIASES.get(self.solver.strip().lower(), self.solver)

    def for_v_prediction(self) -> "SchedulerConfig":
        """v-prediction checkpoints: zero terminal SNR + trailing spacing."""
        return replace(self, prediction_type="v_prediction",
                       rescale_betas_zero_snr=True, timestep_spacing="trailing")


@dataclass
class TilingConfig:
    vae_tile_size: int = 512          # pixels; 0 disables tiling
    vae_tile_overlap: int = 256       # pixels, decoder output blending
    vae_latent_overlap: int = 32      # latent units, encoder stats blending
    upscale_tile_size: int = 192      # upscaler input tile (pixels)
    upscale_min_overlap: int = 12     # pixels, measured on the input
    upscale_scale: int = 4            # fixed by the upscaler graph

    def validate(self) -> None:
        if self.vae_tile_size < 0 or self.vae_tile_size % 8:
            raise ConfigurationError(
                f"vae_tile_size must be a non-negative multiple of 8 (got {self.vae_tile_size})")
        if self.vae_tile_size and self.vae_tile_overlap >= self.vae_tile_size:
            raise ConfigurationError("vae_tile_overlap must be smaller than vae_tile_size")
        if self.vae_tile_overlap % 8:
            raise ConfigurationError("vae_tile_overlap must be a multiple of 8")
        if self.vae_tile_size and self.vae_latent_overlap >= self.vae_tile_size // 8:
            raise ConfigurationError("vae_latent_overlap must be smaller than the latent tile")
        if self.upscale_tile_size <= 0 or self.upscale_scale <= 0:
            raise ConfigurationError("upscale_tile_size and upscale_scale must be positive")
        if not 0 <= self.upscale_min_overlap < self.upscale_tile_size:
            raise ConfigurationError("upscale_min_overlap must be in [0, upscale_tile_size)")


@dataclass
class ModelConfig:
    vae_scale_factor: float = 0.18215   # SD 1.x/2.x latent scaling
    latent_channels: int = 4
    text_embedding_size: int = 768      # 1024 for SD 2.x text encoders
    max_tokens: int = 77


@dataclass
class LogConfig:
    file: str = ""
    level: str = "info"


@dataclass
class LocalDiffuseConfig:
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    tiling: TilingConfig = field(default_factory=TilingConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    log: LogConfig = field(default_factory=LogConfig)

    @staticmethod
    def load_from_file(path: str) -> "LocalDiffuseConfig":
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Config file not found: {path}")

        parser = configparser.ConfigParser()
        with open(path, encoding="utf-8") as f:
            parser.read_file(f)

        try:
            config = _parse(parser)
        except ValueError as ex:
            # configparser raises plain ValueError for unparsable ints/bools
            if isinstance(ex, ConfigurationError):
                raise
            raise ConfigurationError(f"{path}: {ex}") from ex

        config.scheduler.validate()
        config.tiling.validate()
        return config


def _parse(parser: configparser.ConfigParser) -> LocalDiffuseConfig:
    # Parse [scheduler] section
    scheduler = SchedulerConfig()
    if parser.has_section("scheduler"):
        s = parser["scheduler"]
        scheduler.num_train_timesteps = s.getint("num_train_timesteps", scheduler.num_train_timesteps)
        scheduler.beta_start = s.getfloat("beta_start", scheduler.beta_start)
        scheduler.beta_end = s.getfloat("beta_end", scheduler.beta_end)
        scheduler.beta_schedule = s.get("beta_schedule", scheduler.beta_schedule).strip()
        scheduler.prediction_type = s.get("prediction_type", scheduler.prediction_type).strip()
        scheduler.timestep_spacing = s.get("timestep_spacing", scheduler.timestep_spacing).strip()
        scheduler.steps_offset = s.getint("steps_offset", scheduler.steps_offset)
        scheduler.rescale_betas_zero_snr = s.getboolean(
            "rescale_betas_zero_snr", scheduler.rescale_betas_zero_snr)
        scheduler.solver = s.get("solver", scheduler.solver).strip()
        scheduler.solver_order = s.getint("solver_order", scheduler.solver_order)
        scheduler.lower_order_final = s.getboolean("lower_order_final", scheduler.lower_order_final)

    # Parse [tiling] section
    tiling = TilingConfig()
    if parser.has_section("tiling"):
        t = parser["tiling"]
        tiling.vae_tile_size = t.getint("vae_tile_size", tiling.vae_tile_size)
        tiling.vae_tile_overlap = t.getint("vae_tile_overlap", tiling.vae_tile_overlap)
        tiling.vae_latent_overlap = t.getint("vae_latent_overlap", tiling.vae_latent_overlap)
        tiling.upscale_tile_size = t.getint("upscale_tile_size", tiling.upscale_tile_size)
        tiling.upscale_min_overlap = t.getint("upscale_min_overlap", tiling.upscale_min_overlap)
        tiling.upscale_scale = t.getint("upscale_scale", tiling.upscale_scale)

    # Parse [model] section
    model = ModelConfig()
    if parser.has_section("model"):
        m = parser["model"]
        model.vae_scale_factor = m.getfloat("vae_scale_factor", model.vae_scale_factor)
        model.latent_channels = m.getint("latent_channels", model.latent_channels)
        model.text_embedding_size = m.getint("text_embedding_size", model.text_embedding_size)
        model.max_tokens = m.getint("max_tokens", model.max_tokens)

    # Parse [log] section
    log_cfg = LogConfig()
    if parser.has_section("log"):
        lg = parser["log"]
        log_cfg.file = lg.get("file", log_cfg.file).strip()
        log_cfg.level = lg.get("level", log_cfg.level).strip()

    return LocalDiffuseConfig(scheduler=scheduler, tiling=tiling, model=model, log=log_cfg)


def setup_logging(config: LocalDiffuseConfig) -> None:
    """Apply the [log] section: open the file sink and set the stdout level."""
    from localdiffuse import log

    try:
        level = log.parse_level(config.log.level)
    except ValueError as ex:
        raise ConfigurationError(str(ex)) from ex
    log.set_stdout_level(level)
    if config.log.file:
        log.init_file(config.log.file)
