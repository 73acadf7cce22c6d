import importlib
import logging
import pkgutil
from typing import Any, Dict, Type
from difflib import get_close_matches

from ..errors import UnsupportedVariantError

logger = logging.getLogger(__name__)


class BlockRegistry:
    """Global registry of schedulers and diffusers.

    Blocks register themselves via the @register_block decorator under keys
    like ``scheduler/euler`` or ``diffuser/text_to_image``.
    Auto-discovery scans latentforge.blocks, logging any import failures
    (not silently swallowing them).
    """
    _registry: Dict[str, Type[Any]] = {}
    _import_errors: Dict[str, str] = {}  # module -> error message
    _discovered: bool = False

    @classmethod
    def register(cls, block_type: str):
        """Decorator: @register_block("scheduler/euler")"""
        def decorator(block_cls: Type[Any]):
            cls._registry[block_type] = block_cls
            block_cls.block_type = block_type
            return block_cls
        return decorator

    @classmethod
    def get(cls, key: str) -> Type[Any]:
        """Get block class by key. Raises UnsupportedVariantError with suggestions."""
        if key not in cls._registry:
            cls._auto_discover()
            if key not in cls._registry:
                similar = get_close_matches(key, cls._registry.keys(), n=5, cutoff=0.4)
                msg = f"Unsupported variant '{key}'."
                if similar:
                    msg += f" Did you mean: {', '.join(similar)}?"
                if cls._import_errors:
                    msg += f"\n  Note: {len(cls._import_errors)} modules failed to import during auto-discovery."
                raise UnsupportedVariantError(msg)
        return cls._registry[key]

    @classmethod
    def build(cls, key: str, *args, **kwargs) -> Any:
        return cls.get(key)(*args, **kwargs)

    @classmethod
    def list_blocks(cls, prefix: str = "") -> Dict[str, Type[Any]]:
        cls._auto_discover()
        return {k: v for k, v in cls._registry.items() if k.startswith(prefix)}

    @classmethod
    def get_import_errors(cls) -> Dict[str, str]:
        """Return a dict of module -> error for all failed auto-discovery imports."""
        return cls._import_errors.copy()

    @classmethod
    def _auto_discover(cls):
        """Auto-import all blocks from latentforge.blocks (recursive)."""
        if cls._discovered:
            return
        cls._discovered = True

        pkg = importlib.import_module("latentforge.blocks")
        for _, name, _ in pkgutil.walk_packages(pkg.__path__, prefix="latentforge.blocks."):
            try:
                importlib.import_module(name)
            except ImportError as e:
                error_msg = f"{type(e).__name__}: {e}"
                cls._import_errors[name] = error_msg
                logger.warning(f"Auto-discover: failed to import {name}: {error_msg}")

    @classmethod
    def reset(cls):
        """Reset discovery state (for testing)."""
        cls._discovered = False
        cls._import_errors.clear()


# Convenience aliases
register_block = BlockRegistry.register
get_block_class = BlockRegistry.get
list_blocks = BlockRegistry.list_blocks


def auto_discover():
    """Import every module under latentforge.blocks so all variants are registered."""
    BlockRegistry._auto_discover()
