"""Template interleaver.

Copies literal text to the output and hands every ``{{ ... }}`` span to the
statement interpreter, one statement per span, with a single execution
environment kept alive for the whole file.
"""

from __future__ import annotations
import enum
import logging
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, List, Optional, Tuple

from diagnostics import CONTEXT_LIMIT, BoundaryError, TemplateError, UnterminatedSpanError, truncate_context
from interpreter import Interpreter, StatementFailure, execute_statement
from lexer import skip_trivia
from source import SourceView

logger = logging.getLogger(__name__)


class State(enum.Enum):
    LITERAL = "literal"
    SCRIPT = "script"
    VERIFY_CLOSE = "verify_close"
    DONE = "done"
    FATAL = "fatal"


@dataclass(frozen=True)
class RenderOptions:
    open_marker: bytes = b"{{"
    close_marker: bytes = b"}}"
    context_limit: int = CONTEXT_LIMIT

    def __post_init__(self) -> None:
        if not self.open_marker or not self.close_marker:
            raise ValueError("markers must be non-empty")
        if self.context_limit < 0:
            raise ValueError("context_limit must be >= 0")


class Renderer:
    """Drive one render of ``source`` into the binary stream ``out``.

    ``execute`` is the statement boundary and ``environment_factory`` builds
    the execution environment (called once, with ``filename`` and
    ``output_sink`` keywords); both default to the bundled interpreter.
    """

    def __init__(
        self,
        source: SourceView,
        out: BinaryIO,
        *,
        options: Optional[RenderOptions] = None,
        execute: Callable[..., Any] = execute_statement,
        environment_factory: Callable[..., Any] = Interpreter,
        trivia: Callable[..., int] = skip_trivia,
    ) -> None:
        self.source = source
        self.out = out
        self.options = options or RenderOptions()
        self.execute = execute
        self.environment_factory = environment_factory
        self.trivia = trivia
        self.state = State.LITERAL
        self.cursor = 0
        self.literal_spans: List[Tuple[int, int]] = []
        self.script_spans: List[Tuple[int, int]] = []

    def render(self) -> None:
        if self.state is not State.LITERAL or self.cursor != 0:
            raise RuntimeError("a Renderer can only render once")
        environment = self.environment_factory(filename=self.source.filename, output_sink=self._write_text)
        try:
            self._run(environment)
        except TemplateError:
            self.state = State.FATAL
            raise
        finally:
            environment.close()

    def _run(self, environment: Any) -> None:
        source = self.source
        open_marker = self.options.open_marker
        close_marker = self.options.close_marker
        length = len(source)

        while True:
            self.state = State.LITERAL
            open_pos = source.find(open_marker, self.cursor)
            if open_pos == -1:
                self._emit(self.cursor, length)
                self.cursor = length
                self.state = State.DONE
                logger.debug("%s: rendered %d spans", source.filename, len(self.script_spans))
                return
            self._emit(self.cursor, open_pos)

            self.state = State.SCRIPT
            statement_start = open_pos + len(open_marker)
            result = self.execute(source, statement_start, environment)
            if isinstance(result, StatementFailure):
                raise BoundaryError(result.message, offset=result.offset)
            statement_end = result.offset
            if not statement_start < statement_end <= length:
                raise BoundaryError(
                    f"statement at offset {statement_start} ended at invalid offset {statement_end}",
                    offset=statement_start,
                )

            self.state = State.VERIFY_CLOSE
            token_start = self.trivia(source, statement_end, length)
            if not source.startswith(close_marker, token_start):
                limit = self.options.context_limit
                context = truncate_context(source[token_start:token_start + limit + 1], limit)
                raise UnterminatedSpanError(
                    f"expected '{close_marker.decode('utf-8', 'replace')}' after statement but got '{context}'",
                    offset=token_start,
                    context=context,
                )
            self.script_spans.append((statement_start, statement_end))
            logger.debug("%s: statement [%d, %d)", source.filename, statement_start, statement_end)
            self.cursor = token_start + len(close_marker)

    def _emit(self, start: int, end: int) -> None:
        if end <= start:
            return
        self.out.write(self.source[start:end])
        self.literal_spans.append((start, end))

    def _write_text(self, text: str) -> None:
        self.out.write(text.encode("utf-8"))


def render_source(source: SourceView, out: BinaryIO, **kwargs: Any) -> Renderer:
    renderer = Renderer(source, out, **kwargs)
    renderer.render()
    return renderer


def render_file(filename: str, out: BinaryIO, *, backend: Optional[str] = None, **kwargs: Any) -> Renderer:
    with SourceView.open(filename, backend=backend) as source:
        return render_source(source, out, **kwargs)
