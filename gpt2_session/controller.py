import asyncio
import logging

from gpt2_decode import Cancelled, CompletionCursor

from .config import SessionConfig
from .cursor_manager import CursorManager
from .loader import ProgressCallback
from .state_machine import (
    BufferEdited,
    CancelPrediction,
    CaretMoved,
    Command,
    CommitCandidate,
    CompletionSession,
    DiscardCandidate,
    Event,
    InvalidateCursor,
    ModeChanged,
    PredictionFailed,
    PredictionFinished,
    PredictionFragment,
    SessionState,
    ShowCandidate,
    StartPrediction,
)

logger = logging.getLogger(__name__)


class TextBuffer:
    """Committed text plus an optional candidate shown at ``candidate_start``."""

    def __init__(self, text: str = ""):
        self.text = text
        self.candidate = ""
        self.candidate_start: int | None = None

    def insert(self, position: int, text: str) -> None:
        self.text = self.text[:position] + text + self.text[position:]

    def delete(self, start: int, end: int) -> None:
        self.text = self.text[:start] + self.text[end:]

    def show_candidate(self, position: int, text: str) -> None:
        if self.candidate_start is None:
            self.candidate_start = position
        offset = position - self.candidate_start
        self.candidate = self.candidate[:offset] + text + self.candidate[offset:]

    def discard_candidate(self) -> None:
        self.candidate = ""
        self.candidate_start = None

    def commit_candidate(self, start: int, text: str) -> None:
        self.discard_candidate()
        self.insert(start, text)

    def render(self) -> str:
        if self.candidate_start is None:
            return self.text
        return self.text[:self.candidate_start] + self.candidate + self.text[self.candidate_start:]


class CompletionController:
    """Drives a ``CompletionSession`` against a buffer on the running event loop.

    Predictions stream from the cursor on its worker thread; every buffer
    mutation and session transition happens on the loop thread.
    """

    def __init__(
        self,
        cursor_manager: CursorManager,
        config: SessionConfig | None = None,
        buffer: TextBuffer | None = None,
        on_progress: ProgressCallback | None = None,
    ):
        self.cursor_manager = cursor_manager
        self.config = config or cursor_manager.config
        self.buffer = buffer or TextBuffer()
        self.on_progress = on_progress
        self.session = CompletionSession()
        self.caret = len(self.buffer.text)
        self.last_error: BaseException | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> SessionState:
        return self.session.state

    # User input

    def insert_text(self, position: int, text: str) -> None:
        self.buffer.insert(position, text)
        if self.caret >= position:
            self.caret += len(text)
        self.dispatch(BufferEdited())

    def delete_text(self, start: int, end: int) -> None:
        self.buffer.delete(start, end)
        if self.caret > start:
            self.caret = max(start, self.caret - (end - start))
        self.dispatch(BufferEdited())

    def move_caret(self, count: int) -> None:
        self.caret = min(max(self.caret + count, 0), len(self.buffer.text))
        self.dispatch(CaretMoved(self.caret, count, self.buffer.text))

    def change_mode(self, architecture: str | None = None, quantization: str | None = None) -> None:
        if architecture is not None:
            self.config.architecture = architecture
        if quantization is not None:
            self.config.quantization = quantization
        self.dispatch(ModeChanged())

    # Session plumbing

    def dispatch(self, event: Event) -> None:
        for command in self.session.handle(event):
            self._execute(command)

    def _execute(self, command: Command) -> None:
        if isinstance(command, StartPrediction):
            self._start_prediction(command)
        elif isinstance(command, ShowCandidate):
            self.buffer.show_candidate(command.position, command.text)
        elif isinstance(command, CancelPrediction):
            command.cancellable.cancel()
        elif isinstance(command, DiscardCandidate):
            self.buffer.discard_candidate()
        elif isinstance(command, CommitCandidate):
            self.buffer.commit_candidate(command.start, command.text)
            self.caret = command.start + len(command.text)
        elif isinstance(command, InvalidateCursor):
            self.cursor_manager.invalidate_cursor()
        else:
            raise TypeError(f"Unknown command {command!r}")

    def _start_prediction(self, command: StartPrediction) -> None:
        def on_cursor(cursor: CompletionCursor) -> None:
            task = asyncio.get_running_loop().create_task(self._run_prediction(cursor, command))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        def on_error(error: BaseException) -> None:
            self._fail(command.prediction_id, error)

        self.cursor_manager.with_cursor(command.prompt, command.cancellable, on_cursor, self.on_progress, on_error)

    async def _run_prediction(self, cursor: CompletionCursor, command: StartPrediction) -> None:
        skip_echo = not cursor.is_primed
        stream = cursor.exec_stream_async(
            self.config.prediction_tokens,
            self.config.stream_batch_size,
            command.cancellable,
        )
        try:
            async for fragment, _ in stream:
                if skip_echo:
                    skip_echo = False
                    continue
                self.dispatch(PredictionFragment(command.prediction_id, fragment))
        except Cancelled:
            logger.debug("Prediction %d cancelled", command.prediction_id)
            return
        except Exception as error:
            self._fail(command.prediction_id, error)
            return
        self.dispatch(PredictionFinished(command.prediction_id))

    def _fail(self, prediction_id: int, error: BaseException) -> None:
        logger.error("Prediction %d failed: %s", prediction_id, error)
        self.last_error = error
        self.dispatch(PredictionFailed(prediction_id, error))

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def close(self) -> None:
        if self.session.cancellable is not None:
            self.session.cancellable.cancel()
        for task in self._tasks:
            task.cancel()
        self.cursor_manager.destroy()
