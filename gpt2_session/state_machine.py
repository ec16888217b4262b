"""Inline completion session: user and prediction events in, commands out.

The session holds no buffer and runs nothing itself. The controller feeds it
events and carries out the commands it returns, which keeps every transition
testable without a model or an event loop.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from gpt2_decode import Cancellable

logger = logging.getLogger(__name__)


class SessionState(Enum):
    EDITING = "editing"
    PREDICTING = "predicting"
    AWAITING_ACCEPT = "awaiting_accept"


# Events


@dataclass(frozen=True)
class CaretMoved:
    """Caret moved by ``count`` characters (negative is backwards) and now sits at ``position``."""

    position: int
    count: int
    text: str

    @property
    def is_forward_at_end(self) -> bool:
        return self.count > 0 and 0 < self.position and self.position >= len(self.text)


@dataclass(frozen=True)
class BufferEdited:
    pass


@dataclass(frozen=True)
class ModeChanged:
    pass


@dataclass(frozen=True)
class PredictionFragment:
    prediction_id: int
    text: str


@dataclass(frozen=True)
class PredictionFinished:
    prediction_id: int


@dataclass(frozen=True)
class PredictionFailed:
    prediction_id: int
    error: BaseException


Event = CaretMoved | BufferEdited | ModeChanged | PredictionFragment | PredictionFinished | PredictionFailed


# Commands


@dataclass(frozen=True)
class StartPrediction:
    prediction_id: int
    prompt: str
    candidate_start: int
    cancellable: Cancellable


@dataclass(frozen=True)
class ShowCandidate:
    position: int
    text: str


@dataclass(frozen=True)
class CancelPrediction:
    cancellable: Cancellable


@dataclass(frozen=True)
class DiscardCandidate:
    start: int
    text: str


@dataclass(frozen=True)
class CommitCandidate:
    start: int
    text: str


@dataclass(frozen=True)
class InvalidateCursor:
    pass


Command = StartPrediction | ShowCandidate | CancelPrediction | DiscardCandidate | CommitCandidate | InvalidateCursor


class CompletionSession:
    def __init__(self):
        self.state = SessionState.EDITING
        self.prediction_id = 0
        self.candidate_start: int | None = None
        self.candidate = ""
        self.cancellable: Cancellable | None = None

    def handle(self, event: Event) -> list[Command]:
        if isinstance(event, (PredictionFragment, PredictionFinished, PredictionFailed)):
            if self.state is not SessionState.PREDICTING or event.prediction_id != self.prediction_id:
                logger.debug("Ignoring stale %s", type(event).__name__)
                return []
            return self._handle_prediction(event)

        if self.state is SessionState.EDITING:
            return self._handle_editing(event)
        if self.state is SessionState.PREDICTING:
            return self._handle_predicting(event)
        return self._handle_awaiting_accept(event)

    def _handle_editing(self, event: Event) -> list[Command]:
        if isinstance(event, CaretMoved):
            if not event.is_forward_at_end:
                return []
            self.prediction_id += 1
            self.cancellable = Cancellable()
            self.candidate_start = event.position
            self.candidate = ""
            self.state = SessionState.PREDICTING
            return [StartPrediction(self.prediction_id, event.text, event.position, self.cancellable)]
        # Any edit makes a retained cursor's text stale.
        return [InvalidateCursor()]

    def _handle_predicting(self, event: Event) -> list[Command]:
        if isinstance(event, CaretMoved) and event.count >= 0:
            return []
        commands: list[Command] = [CancelPrediction(self.cancellable)]
        commands.extend(self._reset())
        return commands

    def _handle_awaiting_accept(self, event: Event) -> list[Command]:
        if isinstance(event, CaretMoved) and event.count > 0:
            command = CommitCandidate(self.candidate_start, self.candidate)
            self._clear()
            return [command]
        return self._reset()

    def _handle_prediction(self, event: Event) -> list[Command]:
        if isinstance(event, PredictionFragment):
            if not event.text:
                return []
            position = self.candidate_start + len(self.candidate)
            self.candidate += event.text
            return [ShowCandidate(position, event.text)]
        if isinstance(event, PredictionFinished):
            self.state = SessionState.AWAITING_ACCEPT
            self.cancellable = None
            return []
        logger.debug("Prediction %d failed: %s", event.prediction_id, event.error)
        return self._reset()

    def _reset(self) -> list[Command]:
        commands: list[Command] = []
        if self.candidate:
            commands.append(DiscardCandidate(self.candidate_start, self.candidate))
        commands.append(InvalidateCursor())
        self._clear()
        return commands

    def _clear(self) -> None:
        self.state = SessionState.EDITING
        self.candidate_start = None
        self.candidate = ""
        self.cancellable = None
