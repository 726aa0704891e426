from __future__ import annotations

from localdiffuse import log
from localdiffuse.config import SchedulerConfig
from localdiffuse.schedulers.base import Scheduler, SchedulerOutput
from localdiffuse.schedulers.dpm_multistep import DPMSolverMultistepScheduler
from localdiffuse.schedulers.euler_ancestral import EulerAncestralScheduler

_SOLVER_CLASSES: dict[str, type[Scheduler]] = {
    "dpm_multistep": DPMSolverMultistepScheduler,
    "euler_ancestral": EulerAncestralScheduler,
}


def create_scheduler(config: SchedulerConfig | None = None) -> Scheduler:
    """Instantiate the solver named by ``config.solver``."""
    config = config if config is not None else SchedulerConfig()
    config.validate()
    cls = _SOLVER_CLASSES[config.solver_name]
    log.debug(f"  Scheduler: {cls.__name__} (prediction={config.prediction_type}, "
              f"spacing={config.timestep_spacing}, zero_snr={config.rescale_betas_zero_snr})")
    return cls(config)


__all__ = [
    "DPMSolverMultistepScheduler",
    "EulerAncestralScheduler",
    "Scheduler",
    "SchedulerOutput",
    "create_scheduler",
]
