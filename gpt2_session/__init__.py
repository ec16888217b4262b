"""
GPT-2 completion sessions

This package covers:
- A model loader with one cached model and a single de-duplicated load in flight
- Cursor reuse across predictions when the buffer still matches the cursor
- The inline-completion state machine (editing, predicting, awaiting accept)
- An asyncio controller that streams predictions into a text buffer
"""

from .config import LoaderConfig, SessionConfig
from .controller import CompletionController, TextBuffer
from .cursor_manager import CursorManager
from .loader import LocalModelSource, ModelKey, ModelLoader, PendingLoad, model_key
from .state_machine import (
    BufferEdited,
    CancelPrediction,
    CaretMoved,
    CommitCandidate,
    CompletionSession,
    DiscardCandidate,
    InvalidateCursor,
    ModeChanged,
    PredictionFailed,
    PredictionFinished,
    PredictionFragment,
    SessionState,
    ShowCandidate,
    StartPrediction,
)

__all__ = [
    "LoaderConfig",
    "SessionConfig",
    "ModelKey",
    "model_key",
    "PendingLoad",
    "LocalModelSource",
    "ModelLoader",
    "CursorManager",
    "SessionState",
    "CompletionSession",
    "CaretMoved",
    "BufferEdited",
    "ModeChanged",
    "PredictionFragment",
    "PredictionFinished",
    "PredictionFailed",
    "StartPrediction",
    "ShowCandidate",
    "CancelPrediction",
    "DiscardCandidate",
    "CommitCandidate",
    "InvalidateCursor",
    "TextBuffer",
    "CompletionController",
]
