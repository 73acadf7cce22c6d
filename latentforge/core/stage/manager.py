# latentforge/core/stage/manager.py
"""Stage lifecycle under a memory policy.

``maximum``: every configured stage is preloaded concurrently and kept until
``unload_all``. ``minimum``: a stage is loaded when acquired and released as
soon as the acquiring block exits, error and cancellation included.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Mapping, Optional

from ..errors import MissingStageError
from ..options import MemoryMode, StageRole, UnetMode, parse_enum
from .handle import StageHandle

logger = logging.getLogger(__name__)

ENCODER_ROLES = (
    StageRole.TOKENIZER,
    StageRole.TOKENIZER_2,
    StageRole.TOKENIZER_3,
    StageRole.TEXT_ENCODER,
    StageRole.TEXT_ENCODER_2,
    StageRole.TEXT_ENCODER_3,
)


def denoiser_roles(unet_mode: UnetMode) -> tuple:
    if unet_mode == UnetMode.DEFAULT:
        return (StageRole.UNET,)
    if unet_mode == UnetMode.CONTROL_NET:
        return (StageRole.CONTROL_NET_UNET, StageRole.CONTROL_NET)
    return (StageRole.UNET, StageRole.CONTROL_NET_UNET, StageRole.CONTROL_NET)


class StageLifecycleManager:
    def __init__(
        self,
        stages: Mapping[StageRole | str, StageHandle] | Iterable[StageHandle],
        memory_mode: MemoryMode | str = MemoryMode.MAXIMUM,
    ):
        if isinstance(stages, Mapping):
            self._stages: Dict[StageRole, StageHandle] = {
                parse_enum(StageRole, role): handle for role, handle in stages.items()
            }
        else:
            self._stages = {handle.role: handle for handle in stages}
        self.memory_mode = parse_enum(MemoryMode, memory_mode)

    @property
    def is_minimum(self) -> bool:
        return self.memory_mode == MemoryMode.MINIMUM

    def has(self, role: StageRole | str) -> bool:
        return parse_enum(StageRole, role) in self._stages

    def get(self, role: StageRole | str) -> StageHandle:
        role = parse_enum(StageRole, role)
        if role not in self._stages:
            raise MissingStageError(role.value)
        return self._stages[role]

    def get_optional(self, role: StageRole | str) -> Optional[StageHandle]:
        return self._stages.get(parse_enum(StageRole, role))

    @property
    def stages(self) -> Dict[StageRole, StageHandle]:
        return dict(self._stages)

    def loaded_roles(self) -> List[StageRole]:
        return [role for role, handle in self._stages.items() if handle.is_loaded]

    def roles_for(self, unet_mode: UnetMode | str = UnetMode.DEFAULT) -> List[StageRole]:
        """Configured stages a run in ``unet_mode`` can touch."""
        unet_mode = parse_enum(UnetMode, unet_mode)
        wanted = ENCODER_ROLES + denoiser_roles(unet_mode) + (StageRole.VAE_ENCODER, StageRole.VAE_DECODER)
        return [role for role in wanted if role in self._stages]

    async def load_all(self, unet_mode: UnetMode | str = UnetMode.DEFAULT) -> None:
        """Preload every stage for ``unet_mode`` concurrently (maximum policy only)."""
        if self.is_minimum:
            logger.info("Memory mode 'minimum': stages load on first use")
            return
        roles = self.roles_for(unet_mode)
        logger.info(f"Preloading {len(roles)} stages: {[r.value for r in roles]}")
        try:
            async with asyncio.TaskGroup() as tg:
                for role in roles:
                    tg.create_task(self._stages[role].load())
        except ExceptionGroup as eg:
            for exc in eg.exceptions[1:]:
                logger.error(f"Additional stage load failure: {exc}")
            raise eg.exceptions[0] from eg

    async def unload_all(self) -> None:
        """Release every stage, loaded or not."""
        errors = []
        for handle in self._stages.values():
            try:
                await handle.unload()
            except Exception as e:
                logger.error(f"Failed to unload stage '{handle.name}': {e}")
                errors.append(e)
        if errors:
            raise errors[0]

    async def release(self, *roles: StageRole | str) -> None:
        """Unload ``roles`` if the policy is minimum; no-op under maximum."""
        if not self.is_minimum:
            return
        for role in roles:
            handle = self.get_optional(role)
            if handle is not None:
                await handle.unload()

    def acquire(self, role: StageRole | str):
        """Scoped use of a configured stage: loaded on entry, released on exit under minimum."""
        return self.acquire_handle(self.get(role))

    @asynccontextmanager
    async def acquire_handle(self, handle: StageHandle) -> AsyncIterator[StageHandle]:
        await handle.load()
        try:
            yield handle
        finally:
            if self.is_minimum:
                await handle.unload()

    def __repr__(self) -> str:
        loaded = [r.value for r in self.loaded_roles()]
        return f"<StageLifecycleManager mode={self.memory_mode.value} stages={len(self._stages)} loaded={loaded}>"
