"""Tests for completion cursors and samplers"""

import asyncio

import pytest
import torch

from .cancellation import Cancellable
from .errors import Cancelled, CursorBusy, OutOfBounds
from .sampler import ArgmaxSampler, FunctionalSampler, TopKTopPSampler
from .test_gpt2_decode import make_model

PROMPT = "The meaning of life is:"


def cancel_on_call(cancellable: Cancellable, call: int) -> FunctionalSampler:
    """Greedy sampler that triggers ``cancellable`` during its ``call``-th use."""
    calls = []

    def sample(logits: torch.Tensor) -> int:
        calls.append(1)
        if len(calls) == call:
            cancellable.cancel()
        return int(logits.argmax())

    return FunctionalSampler(sample)


class TestCompletionCursor:
    """Tests for synchronous cursor execution."""

    def test_first_exec_echoes_prompt(self):
        """Test priming returns the prompt followed by generated text."""
        cursor = make_model().create_completion(PROMPT)
        text, end_of_sequence = cursor.exec(5)

        assert text.startswith(PROMPT)
        assert len(text) > len(PROMPT)
        assert not end_of_sequence
        assert cursor.text == text

    def test_n_past_counts_folded_tokens(self):
        """Test n_past covers the prompt plus all but the last sampled token."""
        cursor = make_model().create_completion(PROMPT)
        assert cursor.n_past == 0
        cursor.exec(4)
        assert cursor.n_past == len(cursor.prompt_tokens) + 3

    def test_deterministic(self):
        """Test fresh cursors over the same model agree."""
        model = make_model()
        a = model.create_completion(PROMPT).exec(7)
        b = model.create_completion(PROMPT).exec(7)
        assert a == b

    @pytest.mark.parametrize("a,b", [(0, 7), (1, 6), (3, 4), (7, 0), (5, 5)])
    def test_resumption_equivalence(self, a, b):
        """Test exec(a) then exec(b) equals exec(a + b)."""
        model = make_model()
        whole, _ = model.create_completion(PROMPT).exec(a + b)

        cursor = model.create_completion(PROMPT)
        first, _ = cursor.exec(a)
        second, _ = cursor.exec(b)
        assert first + second == whole

    def test_resumption_with_quantized_model(self):
        """Test chunked execution is exact on quantized weights too."""
        model = make_model(quantization="q4_0")
        whole, _ = model.create_completion(PROMPT).exec(6)
        cursor = model.create_completion(PROMPT)
        assert cursor.exec(2)[0] + cursor.exec(4)[0] == whole

    def test_zero_tokens_is_noop(self):
        """Test exec(0) does not prime the cursor."""
        cursor = make_model().create_completion(PROMPT)
        assert cursor.exec(0) == ("", False)
        assert cursor.n_past == 0

    def test_pre_cancelled_exec_raises(self):
        """Test a cancelled token fails exec before any work."""
        cursor = make_model().create_completion(PROMPT)
        cancellable = Cancellable()
        cancellable.cancel()
        with pytest.raises(Cancelled):
            cursor.exec(7, cancellable)
        assert cursor.n_past == 0

    def test_cancelled_exec_is_all_or_nothing(self):
        """Test cancellation mid-exec leaves the cursor as it was."""
        model = make_model()
        expected, _ = model.create_completion(PROMPT).exec(6)

        cancellable = Cancellable()
        cursor = model.create_completion(PROMPT, sampler=cancel_on_call(cancellable, 3))
        with pytest.raises(Cancelled):
            cursor.exec(6, cancellable)

        assert cursor.n_past == 0
        assert cursor.text == PROMPT
        cursor.sampler = ArgmaxSampler()
        assert cursor.exec(6)[0] == expected

    def test_end_of_sequence(self):
        """Test sampling the end-of-text token stops generation."""
        model = make_model(with_eos=True)
        eos = model.eos_token_id
        calls = []

        def sample(logits: torch.Tensor) -> int:
            calls.append(1)
            return eos if len(calls) == 3 else 9

        cursor = model.create_completion(PROMPT, sampler=FunctionalSampler(sample))
        text, end_of_sequence = cursor.exec(10)
        assert text == PROMPT + " a a"
        assert end_of_sequence
        assert cursor.exec(4) == ("", True)

    def test_empty_prompt_primes_with_eos(self):
        """Test an empty prompt starts from the end-of-text token."""
        model = make_model(with_eos=True)
        cursor = model.create_completion("")
        assert cursor.prompt_tokens == [model.eos_token_id]
        with pytest.raises(ValueError):
            make_model().create_completion("")

    def test_cache_overflow_raises(self):
        """Test generating past max_cache_tokens raises OutOfBounds."""
        cursor = make_model().create_completion(PROMPT, max_cache_tokens=8)
        assert cursor.kv_cache.n_ctx == 8
        with pytest.raises(OutOfBounds):
            cursor.exec(10)

    def test_overflow_leaves_cursor_unchanged(self):
        """Test a failed exec leaves the cursor as it was and it can still run."""
        model = make_model()
        n_prompt = len(model.tokenize(PROMPT))
        cursor = model.create_completion(PROMPT, max_cache_tokens=n_prompt + 3)
        with pytest.raises(OutOfBounds):
            cursor.exec(10)

        assert cursor.n_past == 0
        assert cursor.most_recent_token is None
        assert cursor.text == PROMPT
        assert not cursor.is_primed

        expected = model.create_completion(PROMPT, max_cache_tokens=n_prompt + 3).exec(3)
        assert cursor.exec(3) == expected

    def test_stream_overflow_keeps_delivered_fragments(self):
        """Test a failing stream rolls back to the last fragment it delivered."""
        model = make_model()
        n_prompt = len(model.tokenize(PROMPT))
        cursor = model.create_completion(PROMPT, max_cache_tokens=n_prompt + 3)
        fragments = []
        with pytest.raises(OutOfBounds):
            for fragment, _ in cursor.exec_stream(10, batch_size=1):
                fragments.append(fragment)

        generated = fragments[1:]
        assert fragments[0] == PROMPT
        assert cursor.text == PROMPT + "".join(generated)
        assert cursor.n_past == n_prompt + len(generated) - 1
        assert not cursor.is_executing

    def test_cursors_share_model(self):
        """Test two cursors over one model keep independent caches."""
        model = make_model()
        expected_a, _ = model.create_completion(PROMPT).exec(5)
        expected_b, _ = model.create_completion("The world").exec(5)

        a = model.create_completion(PROMPT)
        b = model.create_completion("The world")
        text_a, _ = a.exec(3)
        text_b, _ = b.exec(3)
        text_a += a.exec(2)[0]
        text_b += b.exec(2)[0]

        assert a.kv_cache is not b.kv_cache
        assert text_a == expected_a
        assert text_b == expected_b


class TestExecStream:
    """Tests for streamed execution and cancellation."""

    def test_fragments_per_batch(self):
        """Test one fragment per batch_size tokens plus the remainder."""
        model = make_model()
        fragments = list(model.create_completion(PROMPT).exec_stream(5, batch_size=2))

        assert fragments[0] == (PROMPT, False)
        assert len(fragments) == 4
        assert "".join(f for f, _ in fragments) == model.create_completion(PROMPT).exec(5)[0]

    def test_no_prompt_echo_after_priming(self):
        """Test a continuing stream yields generated text only."""
        cursor = make_model().create_completion(PROMPT)
        cursor.exec(2)
        fragments = list(cursor.exec_stream(4, batch_size=4))
        assert len(fragments) == 1

    def test_cancel_after_k_fragments(self):
        """Test n_past matches delivered fragments and exec continues correctly."""
        model = make_model()
        expected, _ = model.create_completion(PROMPT).exec(9)

        cursor = model.create_completion(PROMPT)
        cancellable = Cancellable()
        stream = cursor.exec_stream(9, batch_size=2, cancellable=cancellable)
        delivered = [next(stream)[0], next(stream)[0], next(stream)[0]]
        cancellable.cancel()
        with pytest.raises(Cancelled):
            next(stream)

        assert cursor.n_past == len(cursor.prompt_tokens) + 4 - 1
        rest, _ = cursor.exec(5)
        assert "".join(delivered) + rest == expected

    def test_cancel_mid_step_rolls_back_to_last_fragment(self):
        """Test a token sampled after cancellation is never committed."""
        model = make_model()
        expected, _ = model.create_completion(PROMPT).exec(6)

        cancellable = Cancellable()
        cursor = model.create_completion(PROMPT, sampler=cancel_on_call(cancellable, 4))
        delivered = []
        with pytest.raises(Cancelled):
            for fragment, _ in cursor.exec_stream(6, batch_size=2, cancellable=cancellable):
                delivered.append(fragment)

        assert len(delivered) == 2
        assert cursor.n_past == len(cursor.prompt_tokens) + 1
        cursor.sampler = ArgmaxSampler()
        rest, _ = cursor.exec(4)
        assert "".join(delivered) + rest == expected

    def test_already_executing(self):
        """Test a second execution while a stream is open is rejected."""
        cursor = make_model().create_completion(PROMPT)
        stream = cursor.exec_stream(4, batch_size=1)
        next(stream)
        assert cursor.is_executing
        with pytest.raises(CursorBusy, match="Already executing"):
            cursor.exec(1)

        stream.close()
        assert not cursor.is_executing
        assert cursor.exec(1)[0]

    def test_invalid_batch_size(self):
        """Test batch_size must be positive."""
        cursor = make_model().create_completion(PROMPT)
        with pytest.raises(ValueError):
            next(cursor.exec_stream(3, batch_size=0))


class TestAsyncCursor:
    """Tests for the asyncio execution paths."""

    def test_exec_async_matches_exec(self):
        """Test the awaitable exec gives the synchronous result."""
        model = make_model()
        expected = model.create_completion(PROMPT).exec(5)

        async def run():
            cursor = model.create_completion(PROMPT)
            try:
                return await cursor.exec_async(5)
            finally:
                cursor.close()

        assert asyncio.run(run()) == expected

    def test_exec_stream_async_fragments(self):
        """Test async streaming yields the same fragments as sync streaming."""
        model = make_model()
        expected = list(model.create_completion(PROMPT).exec_stream(5, batch_size=2))

        async def run():
            cursor = model.create_completion(PROMPT)
            fragments = []
            async for item in cursor.exec_stream_async(5, batch_size=2):
                fragments.append(item)
            cursor.close()
            return fragments

        assert asyncio.run(run()) == expected

    def test_exec_stream_async_cancel(self):
        """Test cancelling between fragments raises Cancelled and keeps delivered text."""
        model = make_model()
        expected, _ = model.create_completion(PROMPT).exec(6)

        async def run():
            cursor = model.create_completion(PROMPT)
            cancellable = Cancellable()
            delivered = []
            with pytest.raises(Cancelled):
                async for fragment, _ in cursor.exec_stream_async(6, batch_size=2, cancellable=cancellable):
                    delivered.append(fragment)
                    if len(delivered) == 2:
                        cancellable.cancel()
            rest, _ = await cursor.exec_async(4)
            cursor.close()
            return "".join(delivered) + rest

        assert asyncio.run(run()) == expected

    def test_closed_cursor_starts_no_worker(self):
        """Test async execution on a closed cursor raises Cancelled without a new executor."""
        model = make_model()

        async def run():
            cursor = model.create_completion(PROMPT)
            cursor.close()
            with pytest.raises(Cancelled):
                await cursor.exec_async(2)
            assert cursor._executor is None

            cursor = model.create_completion(PROMPT)
            delivered = []
            with pytest.raises(Cancelled):
                async for fragment, _ in cursor.exec_stream_async(6, batch_size=2):
                    delivered.append(fragment)
                    cursor.close()
            assert delivered == [PROMPT]
            assert cursor._executor is None
            assert not cursor.is_executing

        asyncio.run(run())


class TestSamplers:
    """Tests for token samplers."""

    def test_argmax(self):
        """Test greedy sampling picks the largest logit."""
        assert ArgmaxSampler().sample(torch.tensor([0.1, 2.0, -1.0])) == 1

    def test_top_k_one_is_greedy(self):
        """Test top_k=1 always returns the argmax."""
        sampler = TopKTopPSampler(top_k=1, top_p=1.0, seed=3)
        logits = torch.randn(50)
        assert all(sampler.sample(logits) == int(logits.argmax()) for _ in range(10))

    def test_small_top_p_is_greedy(self):
        """Test a tiny nucleus keeps only the most likely token."""
        sampler = TopKTopPSampler(top_k=50, top_p=1e-6, seed=0)
        logits = torch.randn(50)
        assert sampler.sample(logits) == int(logits.argmax())

    def test_samples_stay_in_top_k(self):
        """Test sampled ids are among the top_k logits."""
        sampler = TopKTopPSampler(top_k=3, top_p=1.0, seed=1)
        logits = torch.arange(10, dtype=torch.float32)
        assert {sampler.sample(logits) for _ in range(50)} <= {7, 8, 9}

    def test_seed_reproducible(self):
        """Test equal seeds give equal sequences."""
        logits = torch.zeros(20)
        a = TopKTopPSampler(top_k=20, seed=42)
        b = TopKTopPSampler(top_k=20, seed=42)
        assert [a.sample(logits) for _ in range(10)] == [b.sample(logits) for _ in range(10)]

    def test_state_restore(self):
        """Test restoring generator state replays the same draws."""
        logits = torch.zeros(20)
        sampler = TopKTopPSampler(top_k=20, seed=7)
        state = sampler.getstate()
        first = [sampler.sample(logits) for _ in range(5)]
        sampler.setstate(state)
        assert [sampler.sample(logits) for _ in range(5)] == first

    def test_validation(self):
        """Test out-of-range parameters are rejected."""
        with pytest.raises(ValueError):
            TopKTopPSampler(top_k=0)
        with pytest.raises(ValueError):
            TopKTopPSampler(top_p=0.0)
        with pytest.raises(ValueError):
            TopKTopPSampler(top_p=1.5)

    def test_seeded_cursor_resumption(self):
        """Test chunked execution matches one call with a seeded sampler."""
        model = make_model()
        whole, _ = model.create_completion(PROMPT, sampler=TopKTopPSampler(top_k=10, seed=5)).exec(6)
        cursor = model.create_completion(PROMPT, sampler=TopKTopPSampler(top_k=10, seed=5))
        assert cursor.exec(4)[0] + cursor.exec(2)[0] == whole


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
