# latentforge/core/stage/handle.py
"""Model stage handles.

A stage is one opaque neural component (tokenizer, text encoder, denoiser,
autoencoder half, control adapter). The core only talks to it through
``load``, ``unload`` and ``run(inputs) -> outputs`` with named tensors.
Backends are synchronous; ``StageHandle`` runs them in a worker thread and
serialises every call into the same stage.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from ..errors import StageInferenceError
from ..options import StageRole, parse_enum
from ..utils.logging import log_duration

logger = logging.getLogger(__name__)


@runtime_checkable
class StageBackend(Protocol):
    def load(self) -> None: ...

    def unload(self) -> None: ...

    def run(self, inputs: Dict[str, Any]) -> Dict[str, Any]: ...


@dataclass
class ExecutionTarget:
    """Where and how a stage executes. Passed through to backends untouched."""

    device: str = "cpu"
    dtype: str = "float32"
    intra_op_threads: int = 0
    inter_op_threads: int = 0


@dataclass
class StageConfig:
    token_limit: int = 77
    pad_token_id: int = 49407
    hidden_size: int = 768
    extra: Dict[str, Any] = field(default_factory=dict)


class StageHandle:
    """Loaded/unloaded reference to one stage with exclusive call access."""

    def __init__(
        self,
        name: str,
        role: StageRole | str,
        backend: StageBackend,
        target: Optional[ExecutionTarget] = None,
        config: Optional[StageConfig] = None,
    ):
        self.name = name
        self.role = parse_enum(StageRole, role)
        self.backend = backend
        self.target = target or ExecutionTarget()
        self.config = config or StageConfig()
        self._loaded = False
        self._lock = asyncio.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    async def load(self) -> None:
        async with self._lock:
            if self._loaded:
                return
            try:
                with log_duration(logger, f"Loaded stage '{self.name}'", logging.INFO):
                    await asyncio.to_thread(self.backend.load)
            except Exception as e:
                raise StageInferenceError(self.name, f"load failed: {e}") from e
            self._loaded = True

    async def unload(self) -> None:
        """Release the stage. Safe on a stage that was never loaded."""
        async with self._lock:
            if not self._loaded:
                return
            self._loaded = False
            try:
                await asyncio.to_thread(self.backend.unload)
            except Exception as e:
                raise StageInferenceError(self.name, f"unload failed: {e}") from e
            logger.info(f"Unloaded stage '{self.name}'")

    async def run_inference(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            if not self._loaded:
                raise StageInferenceError(self.name, "inference on a stage that is not loaded")
            try:
                with log_duration(logger, f"Stage '{self.name}' inference"):
                    outputs = await asyncio.to_thread(self.backend.run, inputs)
            except Exception as e:
                raise StageInferenceError(self.name, f"inference failed: {e}") from e
        if not isinstance(outputs, dict):
            raise StageInferenceError(self.name, f"backend returned {type(outputs).__name__}, expected dict")
        return outputs

    def __repr__(self) -> str:
        state = "loaded" if self._loaded else "unloaded"
        return f"<StageHandle {self.name} role={self.role.value} {state} device={self.target.device}>"
