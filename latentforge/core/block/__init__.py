"""Block registry used as the factory for schedulers and diffusers."""

from .registry import register_block, get_block_class, list_blocks, BlockRegistry, auto_discover

__all__ = [
    "register_block",
    "get_block_class",
    "list_blocks",
    "BlockRegistry",
    "auto_discover",
]
