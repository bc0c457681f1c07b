from .engine import ConvergeCtx, ConvergenceStep, converge, run_step
from .steps import STEP_NAMES, apply_network, default_steps

__all__ = [
    "ConvergeCtx",
    "ConvergenceStep",
    "STEP_NAMES",
    "apply_network",
    "converge",
    "default_steps",
    "run_step",
]
