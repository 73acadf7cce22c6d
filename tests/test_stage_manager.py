"""Tests for StageHandle and the memory-mode lifecycle manager."""
import asyncio
import threading
import time

import pytest
import torch

from latentforge.core.errors import MissingStageError, StageInferenceError
from latentforge.core.options import MemoryMode, StageRole, UnetMode
from latentforge.core.stage import StageBackend, StageHandle, StageLifecycleManager

from helpers import FakeBackend, FakeDenoiser, handle, stage_set


class BrokenLoad(FakeBackend):
    def load(self):
        raise OSError("weights missing")


class NotADict(FakeBackend):
    def forward(self, inputs):
        return [inputs["sample"]]


class SlowBackend(FakeBackend):
    """Tracks how many calls are inside ``run`` at once."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def forward(self, inputs):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        time.sleep(0.02)
        with self._lock:
            self.active -= 1
        return {"sample": inputs["sample"]}


# ==================== StageHandle ====================

class TestStageHandle:
    def test_fake_backend_satisfies_protocol(self):
        assert isinstance(FakeDenoiser(), StageBackend)

    def test_role_parsed_from_string(self):
        h = StageHandle("unet", "unet", FakeDenoiser())
        assert h.role == StageRole.UNET

    def test_run_before_load_fails(self):
        h = handle(StageRole.UNET, FakeDenoiser())
        with pytest.raises(StageInferenceError, match="not loaded"):
            asyncio.run(h.run_inference({"sample": torch.zeros(1)}))

    def test_load_is_idempotent(self, events):
        h = handle(StageRole.UNET, FakeDenoiser(events))

        async def go():
            await h.load()
            await h.load()

        asyncio.run(go())
        assert h.is_loaded
        assert events == ["load:unet"]

    def test_unload_never_loaded_is_noop(self, events):
        h = handle(StageRole.UNET, FakeDenoiser(events))
        asyncio.run(h.unload())
        assert events == []

    def test_load_failure_wrapped(self):
        h = handle(StageRole.VAE_DECODER, BrokenLoad())
        with pytest.raises(StageInferenceError) as exc_info:
            asyncio.run(h.load())
        assert exc_info.value.stage == "test:vae_decoder"
        assert isinstance(exc_info.value.__cause__, OSError)
        assert not h.is_loaded

    def test_inference_failure_wrapped(self):
        from helpers import FailingBackend

        h = handle(StageRole.UNET, FailingBackend(fail_on_call=0))

        async def go():
            await h.load()
            await h.run_inference({"sample": torch.zeros(1)})

        with pytest.raises(StageInferenceError, match="device lost"):
            asyncio.run(go())

    def test_non_dict_output_rejected(self):
        h = handle(StageRole.UNET, NotADict())

        async def go():
            await h.load()
            await h.run_inference({"sample": torch.zeros(1)})

        with pytest.raises(StageInferenceError, match="expected dict"):
            asyncio.run(go())

    def test_calls_into_one_stage_are_serialised(self):
        backend = SlowBackend()
        h = handle(StageRole.UNET, backend)

        async def go():
            await h.load()
            await asyncio.gather(*(h.run_inference({"sample": torch.zeros(1)}) for _ in range(4)))

        asyncio.run(go())
        assert backend.max_active == 1
        assert len(backend.calls) == 4


# ==================== StageLifecycleManager ====================

class TestLifecycleManager:
    def test_get_missing_role(self):
        manager = stage_set("single")
        with pytest.raises(MissingStageError) as exc_info:
            manager.get(StageRole.CONTROL_NET)
        assert exc_info.value.role == "control_net"
        assert manager.get_optional("control_net") is None

    def test_mapping_with_string_keys(self):
        manager = StageLifecycleManager({"unet": handle(StageRole.UNET, FakeDenoiser())}, "minimum")
        assert manager.has(StageRole.UNET)
        assert manager.is_minimum

    def test_maximum_preloads_default_roles(self):
        manager = stage_set("single", control_net=True)
        asyncio.run(manager.load_all())
        loaded = set(manager.loaded_roles())
        assert StageRole.UNET in loaded and StageRole.VAE_DECODER in loaded
        assert StageRole.CONTROL_NET not in loaded

    def test_unet_mode_both_preloads_control_net(self):
        manager = stage_set("single", control_net=True)
        asyncio.run(manager.load_all(UnetMode.BOTH))
        assert StageRole.CONTROL_NET in manager.loaded_roles()

    def test_minimum_preloads_nothing(self):
        manager = stage_set("single", memory_mode=MemoryMode.MINIMUM)
        asyncio.run(manager.load_all())
        assert manager.loaded_roles() == []

    def test_load_all_surfaces_stage_failure(self):
        manager = StageLifecycleManager([
            handle(StageRole.UNET, FakeDenoiser()),
            handle(StageRole.VAE_DECODER, BrokenLoad()),
        ])
        with pytest.raises(StageInferenceError, match="weights missing"):
            asyncio.run(manager.load_all())

    def test_unload_all(self):
        manager = stage_set("single")
        asyncio.run(manager.load_all())
        asyncio.run(manager.unload_all())
        assert manager.loaded_roles() == []

    def test_acquire_minimum_releases_on_error(self, events):
        manager = stage_set("single", memory_mode=MemoryMode.MINIMUM, events=events)

        async def go():
            async with manager.acquire(StageRole.UNET):
                raise KeyError("boom")

        with pytest.raises(KeyError):
            asyncio.run(go())
        assert events == ["load:unet", "unload:unet"]
        assert manager.loaded_roles() == []

    def test_acquire_maximum_keeps_stage(self):
        manager = stage_set("single")

        async def go():
            async with manager.acquire(StageRole.UNET) as unet:
                assert unet.is_loaded

        asyncio.run(go())
        assert manager.loaded_roles() == [StageRole.UNET]

    def test_release_is_noop_under_maximum(self):
        manager = stage_set("single")
        asyncio.run(manager.load_all())
        asyncio.run(manager.release(StageRole.UNET))
        assert StageRole.UNET in manager.loaded_roles()

    def test_release_under_minimum(self):
        manager = stage_set("single", memory_mode=MemoryMode.MINIMUM)
        unet = manager.get(StageRole.UNET)
        asyncio.run(unet.load())
        asyncio.run(manager.release(StageRole.UNET, StageRole.CONTROL_NET))
        assert not unet.is_loaded
