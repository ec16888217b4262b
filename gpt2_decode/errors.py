class Cancelled(Exception):
    """Raised when an operation observes a triggered cancellation token."""


class NotFound(KeyError):
    """A tensor path is missing from a weight registry."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class OutOfBounds(IndexError):
    """A KV cache access falls outside the allocated context."""


class FormatError(ValueError):
    """A model file does not match the expected layout."""


class CursorBusy(RuntimeError):
    """A completion cursor is already executing."""
