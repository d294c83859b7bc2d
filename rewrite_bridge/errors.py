"""Error taxonomy for the interception pipeline.

Only ``DoubleResumeError`` is treated as a programming/protocol fault.
Everything else is a data or environment failure and the pipeline
fails open: the exchange is resumed with the original content.
"""

from __future__ import annotations

from typing import Optional


class InterceptError(Exception):
    def __init__(self, message: str, handle: Optional[str] = None) -> None:
        super().__init__(message)
        self.handle = handle


class FetchFailure(InterceptError):
    """The body for an intercepted handle could not be retrieved."""


class TransformFailure(InterceptError):
    """The content transformer rejected or crashed on its input."""


class RewriteFailure(InterceptError):
    """An internal rewriting invariant was violated."""


class DoubleResumeError(InterceptError):
    """A handle was resumed (or aborted) more than once."""


class InvalidHandleError(InterceptError):
    """The transport no longer knows the handle (navigation, tab closed)."""


class RelayUnavailable(InterceptError):
    """The telemetry sink cannot be reached."""
