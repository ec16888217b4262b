import logging
from collections.abc import Callable

from gpt2_decode import Cancellable, CompletionCursor, LanguageModel, TopKTopPSampler

from .config import SessionConfig
from .loader import ModelKey, ModelLoader, ProgressCallback, model_key

logger = logging.getLogger(__name__)


class CursorManager:
    """Hands out completion cursors for the session's current model.

    With ``retain_cursor`` set, the cursor of the last prediction is reused
    for the next one as long as the model is unchanged and the buffer still
    reads exactly like the cursor's text, so accepted text is never re-primed.
    """

    def __init__(self, loader: ModelLoader, config: SessionConfig):
        self.loader = loader
        self.config = config
        self._cursor: CompletionCursor | None = None
        self._cursor_key: ModelKey | None = None

    @property
    def cursor(self) -> CompletionCursor | None:
        return self._cursor

    def _reusable(self, key: ModelKey, text: str) -> bool:
        cursor = self._cursor
        return (
            cursor is not None
            and self.config.retain_cursor
            and self._cursor_key == key
            and not cursor.is_executing
            and cursor.text == text
        )

    def with_cursor(
        self,
        text: str,
        cancellable: Cancellable,
        on_cursor: Callable[[CompletionCursor], None],
        on_progress: ProgressCallback | None = None,
        on_error: Callable[[BaseException], None] | None = None,
    ) -> None:
        key = model_key(self.config.architecture, self.config.quantization)
        if self._reusable(key, text):
            logger.debug("Reusing cursor at n_past=%d", self._cursor.n_past)
            on_cursor(self._cursor)
            return

        self.invalidate_cursor()

        def on_model(model: LanguageModel) -> None:
            if cancellable.is_cancelled:
                return
            sampler = TopKTopPSampler(top_k=self.config.top_k, top_p=self.config.top_p, seed=self.config.seed)
            try:
                cursor = model.create_completion(text, self.config.max_cache_tokens, sampler)
            except ValueError as error:
                if on_error is None:
                    raise
                on_error(error)
                return
            self._cursor = cursor
            self._cursor_key = key
            on_cursor(cursor)

        self.loader.with_model(key.architecture, key.quantization, cancellable, on_model, on_progress, on_error)

    def invalidate_cursor(self) -> None:
        if self._cursor is not None:
            logger.debug("Invalidating cursor")
            self._cursor.close()
        self._cursor = None
        self._cursor_key = None

    def destroy(self) -> None:
        self.invalidate_cursor()
        self.loader.shutdown()
