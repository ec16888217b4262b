import asyncio
import functools
import itertools
import logging
from collections.abc import Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from gpt2_decode import Cancellable, Cancelled, DefinedLanguageModel, LanguageModel
from gpt2_decode.quantize import quantization_config

from .config import LoaderConfig

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
LoadFn = Callable[[DefinedLanguageModel, "str | None", Cancellable, "ProgressCallback | None"], LanguageModel]


@dataclass(frozen=True)
class ModelKey:
    architecture: DefinedLanguageModel
    quantization: str | None

    def __str__(self) -> str:
        return f"{self.architecture.name}/{self.quantization or 'none'}"


def model_key(architecture: "str | DefinedLanguageModel", quantization: str | None) -> ModelKey:
    if quantization is not None:
        quantization = quantization.lower()
        if quantization == "none":
            quantization = None
        else:
            quantization_config(quantization)
    return ModelKey(DefinedLanguageModel.from_name(architecture), quantization)


@dataclass
class PendingLoad:
    key: ModelKey
    sequence: int
    load_cancellable: Cancellable
    on_ready: Callable[[LanguageModel], None]
    caller_cancellable: Cancellable | None = None
    on_progress: ProgressCallback | None = None
    on_error: Callable[[BaseException], None] | None = None

    @property
    def caller_cancelled(self) -> bool:
        return self.caller_cancellable is not None and self.caller_cancellable.is_cancelled


class LocalModelSource:
    """Loads ``<models_dir>/<file_name>`` for a named model; fetching the file is up to the user."""

    def __init__(self, config: LoaderConfig | None = None):
        self.config = config or LoaderConfig.from_env()

    def path_for(self, architecture: DefinedLanguageModel) -> Path:
        return self.config.models_dir / architecture.file_name

    def __call__(
        self,
        architecture: DefinedLanguageModel,
        quantization: str | None,
        cancellable: Cancellable,
        progress: ProgressCallback | None = None,
    ) -> LanguageModel:
        path = self.path_for(architecture)
        if not path.exists():
            raise FileNotFoundError(
                f"Model file {path} not found, it can be downloaded from {architecture.remote_url}"
            )
        logger.info("Loading %s from %s", architecture.name, path)
        return LanguageModel.from_path(path, quantization, cancellable, progress)


class ModelLoader:
    """Keeps one loaded model and at most one load in flight.

    ``with_model`` and every callback run on the event loop thread; the
    ``load_fn`` itself runs on ``executor``. A request for the key already
    in flight only swaps the callback, a request for a different key
    cancels the in-flight transfer and starts a new one.
    """

    def __init__(
        self,
        load_fn: LoadFn | None = None,
        executor: Executor | None = None,
    ):
        self.load_fn = load_fn if load_fn is not None else LocalModelSource()
        self.executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="model-loader")
        self._cached_key: ModelKey | None = None
        self._cached_model: LanguageModel | None = None
        self._cached_sequence = -1
        self._pending: PendingLoad | None = None
        self._sequence = itertools.count()

    @property
    def cached_key(self) -> ModelKey | None:
        return self._cached_key

    @property
    def has_pending_load(self) -> bool:
        return self._pending is not None

    def with_model(
        self,
        architecture: "str | DefinedLanguageModel",
        quantization: str | None,
        cancellable: Cancellable | None,
        on_ready: Callable[[LanguageModel], None],
        on_progress: ProgressCallback | None = None,
        on_error: Callable[[BaseException], None] | None = None,
    ) -> None:
        key = model_key(architecture, quantization)

        if self._cached_key == key:
            on_ready(self._cached_model)
            return

        if self._pending is not None:
            if self._pending.key == key:
                self._pending.on_ready = on_ready
                self._pending.caller_cancellable = cancellable
                self._pending.on_progress = on_progress
                self._pending.on_error = on_error
                return
            logger.debug("Superseding load of %s with %s", self._pending.key, key)
            self._pending.load_cancellable.cancel()

        pending = PendingLoad(
            key=key,
            sequence=next(self._sequence),
            load_cancellable=Cancellable(),
            on_ready=on_ready,
            caller_cancellable=cancellable,
            on_progress=on_progress,
            on_error=on_error,
        )
        self._pending = pending
        self._start(pending)

    def _start(self, pending: PendingLoad) -> None:
        loop = asyncio.get_running_loop()

        def progress(received: int, total: int) -> None:
            loop.call_soon_threadsafe(self._report_progress, pending, received, total)

        future = loop.run_in_executor(
            self.executor,
            self.load_fn,
            pending.key.architecture,
            pending.key.quantization,
            pending.load_cancellable,
            progress,
        )
        future.add_done_callback(functools.partial(self._on_load_done, pending))

    def _report_progress(self, pending: PendingLoad, received: int, total: int) -> None:
        if self._pending is pending and pending.on_progress is not None:
            pending.on_progress(received, total)

    def _on_load_done(self, pending: PendingLoad, future: asyncio.Future) -> None:
        is_current = self._pending is pending
        if is_current:
            self._pending = None

        if future.cancelled():
            return
        error = future.exception()
        if isinstance(error, Cancelled):
            logger.debug("Load of %s cancelled", pending.key)
            return
        if error is not None:
            if not is_current:
                logger.warning("Superseded load of %s failed: %s", pending.key, error)
            elif pending.caller_cancelled:
                logger.debug("Load of %s failed after its caller cancelled: %s", pending.key, error)
            elif pending.on_error is not None:
                pending.on_error(error)
            else:
                logger.error("Failed to load %s: %s", pending.key, error)
            return

        model = future.result()
        # Results of superseded loads are kept unless something newer is cached.
        if pending.sequence > self._cached_sequence:
            self._cached_key = pending.key
            self._cached_model = model
            self._cached_sequence = pending.sequence
            logger.info("Model %s ready", pending.key)

        if is_current and not pending.caller_cancelled:
            pending.on_ready(model)

    def clear(self) -> None:
        if self._pending is not None:
            self._pending.load_cancellable.cancel()
            self._pending = None
        self._cached_key = None
        self._cached_model = None

    def shutdown(self) -> None:
        self.clear()
        self.executor.shutdown(wait=False)
