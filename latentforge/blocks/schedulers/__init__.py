# latentforge/blocks/schedulers/__init__.py
"""Scheduler variants, registered under ``scheduler/<name>``."""

from .euler import EulerScheduler
from .euler_ancestral import EulerAncestralScheduler
from .ddpm import DDPMScheduler
from .ddim import DDIMScheduler
from .kdpm2 import KDPM2Scheduler
from .lcm import LCMScheduler
from .flow_match_euler import FlowMatchEulerDiscreteScheduler

__all__ = [
    "EulerScheduler",
    "EulerAncestralScheduler",
    "DDPMScheduler",
    "DDIMScheduler",
    "KDPM2Scheduler",
    "LCMScheduler",
    "FlowMatchEulerDiscreteScheduler",
]
