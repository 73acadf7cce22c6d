"""Model stage handles and their lifecycle manager."""

from .handle import ExecutionTarget, StageBackend, StageConfig, StageHandle
from .manager import StageLifecycleManager

__all__ = [
    "ExecutionTarget",
    "StageBackend",
    "StageConfig",
    "StageHandle",
    "StageLifecycleManager",
]
