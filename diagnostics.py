"""Render failure taxonomy and diagnostic formatting.

Every failure is fatal to the render. Components raise one of the
:class:`TemplateError` subclasses below; only the command-line handler turns
them into a single ``<filename>: error: <message>`` line and an exit status.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional


EXIT_OK = 0
EXIT_FAILURE = 0xFF

CONTEXT_LIMIT = 10
ELLIPSIS = "..."


class TemplateError(Exception):
    """Base class for fatal render failures."""

    def __init__(self, message: str, *, context: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    @property
    def diagnostic(self) -> "Diagnostic":
        return Diagnostic(message=self.message, context=self.context)


class UsageError(TemplateError):
    """Malformed invocation, detected before any file I/O."""


class SourceIOError(TemplateError):
    """The template file could not be opened or mapped."""

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class BoundaryError(TemplateError):
    """The interpreter rejected a statement or broke the boundary contract."""

    def __init__(self, message: str, *, offset: int) -> None:
        super().__init__(message)
        self.offset = offset


class UnterminatedSpanError(TemplateError):
    """A statement parsed but the close marker does not follow it."""

    def __init__(self, message: str, *, offset: int, context: str) -> None:
        super().__init__(message, context=context)
        self.offset = offset


@dataclass(frozen=True)
class Diagnostic:
    message: str
    context: Optional[str] = None


def truncate_context(rest: bytes, limit: int = CONTEXT_LIMIT) -> str:
    """Return at most ``limit`` bytes of ``rest``, with an ellipsis if cut."""
    if len(rest) <= limit:
        return rest.decode("utf-8", "replace")
    return rest[:limit].decode("utf-8", "replace") + ELLIPSIS


def format_diagnostic(filename: str, error: TemplateError) -> str:
    return f"{filename}: error: {error.message}"
