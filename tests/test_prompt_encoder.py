"""Tests for tokenization, chunking and the prompt encoder layouts."""
import asyncio

import pytest
import torch

from latentforge.core.conditioning import (
    EncoderLayout,
    PromptEmbedding,
    PromptEncoder,
    TokenizedPrompt,
    chunk_tokens,
    pad_pair,
    tokenize,
)
from latentforge.core.options import MemoryMode, StageRole
from latentforge.core.stage.manager import StageLifecycleManager

from helpers import BOS, EOS, FakeTokenizer, backend_of, handle, stage_set

LONG_PROMPT = " ".join(f"word{i}" for i in range(100))  # 102 tokens with BOS/EOS


def encode(manager, layout, prompt, negative="", guidance=False):
    encoder = PromptEncoder(manager, layout)
    return asyncio.run(encoder.encode(prompt, negative, guidance=guidance))


# ==================== Tokens ====================

class TestTokens:
    def test_chunk_empty(self):
        assert chunk_tokens(TokenizedPrompt(), 77, EOS) == []

    def test_chunk_exact_limit(self):
        chunks = chunk_tokens(TokenizedPrompt(list(range(77))), 77, EOS)
        assert len(chunks) == 1
        assert chunks[0].input_ids == list(range(77))

    def test_chunk_overflow_pads_last(self):
        chunks = chunk_tokens(TokenizedPrompt(list(range(78))), 77, EOS)
        assert [len(c) for c in chunks] == [77, 77]
        assert chunks[1].input_ids[0] == 77
        assert chunks[1].input_ids[1:] == [EOS] * 76

    def test_padded_mask_uses_ones(self):
        padded = TokenizedPrompt([1, 2], [1, 1]).padded(5, EOS)
        assert padded.input_ids == [1, 2, EOS, EOS, EOS]
        assert padded.attention_mask == [1] * 5

    def test_padded_never_truncates(self):
        assert len(TokenizedPrompt(list(range(10))).padded(4, EOS)) == 10

    def test_pad_pair(self):
        pos, neg = pad_pair(TokenizedPrompt([1, 2, 3]), TokenizedPrompt([4]), EOS)
        assert len(pos) == len(neg) == 3
        assert neg.input_ids == [4, EOS, EOS]

    def test_as_inputs_shapes(self):
        inputs = TokenizedPrompt([BOS, 5, EOS]).as_inputs()
        assert inputs["input_ids"].shape == (1, 3)
        assert inputs["input_ids"].dtype == torch.long
        assert inputs["attention_mask"].tolist() == [[1, 1, 1]]

    def test_tokenize_empty_skips_backend(self):
        backend = FakeTokenizer()
        tok = handle(StageRole.TOKENIZER, backend)
        assert len(asyncio.run(tokenize(tok, ""))) == 0
        assert backend.calls == []

    def test_tokenize_text(self):
        tok = handle(StageRole.TOKENIZER, FakeTokenizer())

        async def go():
            await tok.load()
            return await tokenize(tok, "two words")

        tokens = asyncio.run(go())
        assert len(tokens) == 4
        assert tokens.input_ids[0] == BOS and tokens.input_ids[-1] == EOS


# ==================== Single encoder ====================

class TestSingleLayout:
    def test_short_prompt_is_one_chunk(self, sd_stages):
        emb = encode(sd_stages, "single", "a cat")
        assert emb.prompt_embeds.shape == (1, 77, 768)
        assert emb.pooled_prompt_embeds is None

    def test_guidance_stacks_negative_first(self, sd_stages):
        emb = encode(sd_stages, "single", "a cat", "", guidance=True)
        assert emb.batch_size == 2
        # empty negative encodes as all padding, the positive starts with BOS
        assert float(emb.prompt_embeds[0, 0, 0]) == pytest.approx(EOS / 1000.0)
        assert float(emb.prompt_embeds[1, 0, 0]) == pytest.approx(BOS / 1000.0)

    def test_long_prompt_is_chunked(self, sd_stages):
        emb = encode(sd_stages, "single", LONG_PROMPT)
        assert emb.prompt_embeds.shape == (1, 154, 768)

    def test_long_negative_pads_positive_to_match(self, sd_stages):
        emb = encode(sd_stages, "single", "a cat", LONG_PROMPT, guidance=True)
        assert emb.prompt_embeds.shape == (2, 154, 768)

    def test_encoder_sees_limit_sized_chunks(self, sd_stages):
        encode(sd_stages, "single", LONG_PROMPT)
        calls = backend_of(sd_stages, StageRole.TEXT_ENCODER).calls
        assert [tuple(c["input_ids"].shape) for c in calls] == [(1, 77)] * 4


# ==================== Dual / second-only / triple ====================

class TestMultiEncoderLayouts:
    def test_dual_concatenates_hidden_and_pools_second(self):
        emb = encode(stage_set("dual"), "dual", "a cat", "ugly", guidance=True)
        assert emb.prompt_embeds.shape == (2, 77, 768 + 1280)
        assert emb.pooled_prompt_embeds.shape == (2, 1280)

    def test_second_tokenizer_falls_back_to_first(self):
        full = stage_set("dual")
        stages = {role: h for role, h in full.stages.items() if role != StageRole.TOKENIZER_2}
        manager = StageLifecycleManager(stages)
        emb = encode(manager, "dual", "a cat")
        assert emb.prompt_embeds.shape == (1, 77, 2048)
        assert len(backend_of(manager, StageRole.TOKENIZER).calls) == 2

    def test_second_only(self):
        emb = encode(stage_set("dual_second_only"), "dual_second_only", "a cat")
        assert emb.prompt_embeds.shape == (1, 77, 1280)
        assert emb.pooled_prompt_embeds.shape == (1, 1280)

    def test_triple_with_t5(self):
        emb = encode(stage_set("triple"), EncoderLayout.TRIPLE, "a cat", "", guidance=True)
        # 77 clip tokens followed by 77 T5 tokens, clip hidden zero-padded to 4096
        assert emb.prompt_embeds.shape == (2, 154, 4096)
        assert emb.pooled_prompt_embeds.shape == (2, 768 + 1280)
        assert torch.all(emb.prompt_embeds[:, :77, 2048:] == 0)
        # empty negative: T5 half is zeros
        assert torch.all(emb.prompt_embeds[0, 77:] == 0)
        assert not torch.all(emb.prompt_embeds[1, 77:] == 0)

    def test_triple_without_t5_uses_zeros(self):
        manager = stage_set("triple", t5=False)
        emb = encode(manager, "triple", "a cat")
        assert emb.prompt_embeds.shape == (1, 154, 4096)
        assert torch.all(emb.prompt_embeds[:, 77:] == 0)

    def test_for_guidance_rejects_hidden_mismatch(self):
        a = PromptEmbedding(torch.zeros(1, 77, 768))
        b = PromptEmbedding(torch.zeros(1, 77, 1024))
        with pytest.raises(ValueError):
            PromptEmbedding.for_guidance(a, b)


# ==================== Stage lifecycle during encoding ====================

class TestEncodingLifecycle:
    def test_minimum_mode_releases_encoders(self, events):
        manager = stage_set("single", memory_mode=MemoryMode.MINIMUM, events=events)
        encode(manager, "single", "a cat")
        assert manager.loaded_roles() == []
        assert events.index("load:tokenizer") < events.index("unload:tokenizer") < events.index("load:text_encoder")

    def test_maximum_mode_keeps_encoders(self):
        manager = stage_set("single")
        encode(manager, "single", "a cat")
        assert set(manager.loaded_roles()) == {StageRole.TOKENIZER, StageRole.TEXT_ENCODER}

    def test_required_roles(self):
        assert PromptEncoder(stage_set("single"), "single").required_roles() == [
            StageRole.TOKENIZER,
            StageRole.TEXT_ENCODER,
        ]
        assert PromptEncoder(stage_set("dual_second_only"), "dual_second_only").required_roles() == [
            StageRole.TEXT_ENCODER_2
        ]
