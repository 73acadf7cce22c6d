"""Shared test configuration: offline HF hub, block discovery and fake stage sets."""
import os

# Must happen before any other imports
os.environ["TRANSFORMERS_OFFLINE"] = "1"
os.environ["HF_HUB_OFFLINE"] = "1"

import pytest
import torch

from latentforge.core.block.registry import auto_discover
from latentforge.core.options import PromptOptions, SchedulerOptions

from helpers import stage_set


@pytest.fixture(autouse=True)
def discover():
    auto_discover()


@pytest.fixture
def events():
    return []


@pytest.fixture
def sd_stages(events):
    return stage_set("single", events=events)


@pytest.fixture
def small_options():
    """64x64 image, 8x8 latent, a handful of steps."""
    return {"width": 64, "height": 64, "inference_steps": 6, "seed": 1234}


@pytest.fixture
def source_image():
    gen = torch.Generator().manual_seed(7)
    return torch.rand(1, 3, 64, 64, generator=gen) * 2 - 1


@pytest.fixture
def prompt():
    return PromptOptions(prompt="a red fox in the snow", negative_prompt="blurry")


@pytest.fixture
def default_scheduler_options():
    return SchedulerOptions(seed=42)
