import asyncio
import codecs
import logging
import threading
from collections.abc import AsyncIterator, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .cancellation import Cancellable
from .errors import Cancelled, CursorBusy
from .kv_cache import KVCache
from .sampler import ArgmaxSampler, LanguageModelSampler

if TYPE_CHECKING:
    from .model import LanguageModel

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 128

_DONE = object()


@dataclass
class _Checkpoint:
    n_past: int
    most_recent_token: int | None
    end_of_sequence: bool
    echo_prompt: bool
    n_text_parts: int
    decoder_state: tuple[bytes, int]
    sampler_state: Any


class CompletionCursor:
    """Incremental completion of one prompt over a shared language model.

    The first execution primes the KV cache with the whole prompt and emits
    the prompt text as its first fragment; later executions feed only the
    most recently sampled token. Running ``exec(a)`` then ``exec(b)`` gives
    the same text as ``exec(a + b)``.
    """

    def __init__(
        self,
        model: "LanguageModel",
        prompt: str,
        max_cache_tokens: int | None = None,
        sampler: LanguageModelSampler | None = None,
    ):
        hparams = model.hyperparameters()
        n_ctx = hparams.n_ctx if max_cache_tokens is None else min(max_cache_tokens, hparams.n_ctx)
        if n_ctx <= 0:
            raise ValueError(f"max_cache_tokens must be positive, got {max_cache_tokens}")

        self.model = model
        self.prompt = prompt
        self.prompt_tokens = model.tokenize(prompt)
        if not self.prompt_tokens:
            if model.eos_token_id is None:
                raise ValueError("Prompt produced no tokens and the model has no end-of-text token")
            self.prompt_tokens = [model.eos_token_id]

        self.kv_cache = KVCache.create(hparams.n_layer, n_ctx, hparams.d_model)
        self.sampler = sampler if sampler is not None else ArgmaxSampler()

        self.n_past = 0
        self.most_recent_token: int | None = None
        self.end_of_sequence = False
        self._echo_prompt = True
        self._text_parts: list[str] = []
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._closed = False

    @property
    def text(self) -> str:
        """Prompt followed by everything generated so far."""
        return self.prompt + "".join(self._text_parts)

    @property
    def is_executing(self) -> bool:
        return self._lock.locked()

    @property
    def is_primed(self) -> bool:
        """True once the prompt has been emitted; the next execution yields no echo."""
        return not self._echo_prompt

    def _checkpoint(self) -> _Checkpoint:
        return _Checkpoint(
            n_past=self.n_past,
            most_recent_token=self.most_recent_token,
            end_of_sequence=self.end_of_sequence,
            echo_prompt=self._echo_prompt,
            n_text_parts=len(self._text_parts),
            decoder_state=self._decoder.getstate(),
            sampler_state=self.sampler.getstate(),
        )

    def _restore(self, checkpoint: _Checkpoint) -> None:
        # Cache rows past n_past are rewritten by the next step.
        self.n_past = checkpoint.n_past
        self.most_recent_token = checkpoint.most_recent_token
        self.end_of_sequence = checkpoint.end_of_sequence
        self._echo_prompt = checkpoint.echo_prompt
        del self._text_parts[checkpoint.n_text_parts:]
        self._decoder.setstate(checkpoint.decoder_state)
        self.sampler.setstate(checkpoint.sampler_state)

    def _step(self, cancellable: Cancellable) -> int:
        cancellable.raise_if_cancelled()

        tokens = self.prompt_tokens if self.n_past == 0 else [self.most_recent_token]
        logits = self.model.forward(tokens, self.n_past, self.kv_cache)
        token = self.sampler.sample(logits[-1])

        # Cancelled mid-step: the sampled token is never committed.
        cancellable.raise_if_cancelled()
        self.n_past += len(tokens)
        self.most_recent_token = token
        return token

    def _flush(self, pending: list[int]) -> str:
        fragment = self._decoder.decode(self.model.dictionary.decode(pending))
        self._text_parts.append(fragment)
        pending.clear()
        return fragment

    def exec_stream(
        self,
        n_tokens: int,
        batch_size: int = DEFAULT_CHUNK_SIZE,
        cancellable: Cancellable | None = None,
    ) -> Iterator[tuple[str, bool]]:
        """Generate up to ``n_tokens`` tokens, yielding ``(fragment, end_of_sequence)``.

        A fragment is yielded every ``batch_size`` tokens, plus a final one for
        any remainder. If generation fails or is cancelled the cursor is rolled
        back to the last yielded fragment.
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if not self._lock.acquire(blocking=False):
            raise CursorBusy("Already executing on this cursor")

        cancellable = cancellable if cancellable is not None else Cancellable()
        eos_token = self.model.eos_token_id
        checkpoint = self._checkpoint()
        try:
            cancellable.raise_if_cancelled()
            if self.end_of_sequence:
                yield "", True
                return
            if n_tokens <= 0:
                return

            if self._echo_prompt:
                self._echo_prompt = False
                yield self.prompt, False
                checkpoint = self._checkpoint()

            pending: list[int] = []
            for _ in range(n_tokens):
                token = self._step(cancellable)
                if token == eos_token:
                    self.end_of_sequence = True
                    break
                pending.append(token)
                if len(pending) >= batch_size:
                    fragment = self._flush(pending)
                    yield fragment, False
                    checkpoint = self._checkpoint()

            if pending or self.end_of_sequence:
                yield self._flush(pending), self.end_of_sequence
        except GeneratorExit:
            raise
        except Cancelled:
            self._restore(checkpoint)
            logger.debug("cursor cancelled, rolled back to n_past=%d", self.n_past)
            raise
        except BaseException:
            # Steps past the last fragment were never delivered.
            self._restore(checkpoint)
            raise
        finally:
            self._lock.release()

    def exec(self, n_tokens: int, cancellable: Cancellable | None = None) -> tuple[str, bool]:
        """Generate up to ``n_tokens`` tokens; a failed or cancelled call leaves the cursor untouched."""
        checkpoint = self._checkpoint()
        parts = []
        end_of_sequence = False
        try:
            for fragment, end_of_sequence in self.exec_stream(n_tokens, DEFAULT_CHUNK_SIZE, cancellable):
                parts.append(fragment)
        except CursorBusy:
            raise
        except BaseException:
            self._restore(checkpoint)
            raise
        return "".join(parts), end_of_sequence

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._closed:
            raise Cancelled("Cursor is closed")
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="completion-cursor")
        return self._executor

    async def exec_async(self, n_tokens: int, cancellable: Cancellable | None = None) -> tuple[str, bool]:
        inner = Cancellable()
        handle = cancellable.connect(inner.cancel) if cancellable is not None else None
        try:
            return await asyncio.wrap_future(self._get_executor().submit(self.exec, n_tokens, inner))
        except asyncio.CancelledError:
            inner.cancel()
            raise
        finally:
            if handle is not None:
                cancellable.disconnect(handle)

    async def exec_stream_async(
        self,
        n_tokens: int,
        batch_size: int = DEFAULT_CHUNK_SIZE,
        cancellable: Cancellable | None = None,
    ) -> AsyncIterator[tuple[str, bool]]:
        """Like ``exec_stream`` with the forward passes on a worker thread."""
        inner = Cancellable()
        handle = cancellable.connect(inner.cancel) if cancellable is not None else None
        stream = self.exec_stream(n_tokens, batch_size, inner)
        in_flight: Future | None = None
        try:
            while True:
                in_flight = self._get_executor().submit(next, stream, _DONE)
                item = await asyncio.wrap_future(in_flight)
                in_flight = None
                if item is _DONE:
                    return
                yield item
        finally:
            if handle is not None:
                cancellable.disconnect(handle)
            if in_flight is None:
                stream.close()
            else:
                inner.cancel()
                in_flight.add_done_callback(lambda _: stream.close())

    def close(self) -> None:
        self._closed = True
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None


def create_completion(
    model: "LanguageModel",
    prompt: str,
    max_cache_tokens: int | None = None,
    sampler: LanguageModelSampler | None = None,
) -> CompletionCursor:
    return CompletionCursor(model, prompt, max_cache_tokens=max_cache_tokens, sampler=sampler)
