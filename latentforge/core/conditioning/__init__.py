"""Prompt tokenization and multi-encoder embedding fusion."""

from .prompt import EncoderLayout, PromptEmbedding, PromptEncoder
from .tokens import TokenizedPrompt, chunk_tokens, pad_pair, tokenize

__all__ = [
    "EncoderLayout",
    "PromptEmbedding",
    "PromptEncoder",
    "TokenizedPrompt",
    "chunk_tokens",
    "pad_pair",
    "tokenize",
]
