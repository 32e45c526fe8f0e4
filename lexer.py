from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional


class ScriptError(Exception):
    """Base class for statement language errors."""


class ScriptParseError(ScriptError):
    """Raised when lexing or parsing a statement fails."""


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int
    start: int
    end: int


KEYWORDS = {
    "IF",
    "ELSEIF",
    "ELSE",
    "WHILE",
    "FOR",
    "FUNC",
    "RETURN",
    "BREAK",
    "CONTINUE",
}

SYMBOLS = {
    b"(": "LPAREN",
    b")": "RPAREN",
    b"{": "LBRACE",
    b"}": "RBRACE",
    b"[": "LBRACKET",
    b"]": "RBRACKET",
    b",": "COMMA",
    b"=": "EQUALS",
    b":": "COLON",
}

ESCAPES = {
    b"n": b"\n",
    b"t": b"\t",
    b"\\": b"\\",
    b'"': b'"',
    b"'": b"'",
}

DIGITS = b"0123456789"
IDENT_START = b"abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ_"
IDENT_PART = IDENT_START + DIGITS + b"."


def skip_trivia(text, index: int, end: Optional[int] = None) -> int:
    """Return the offset of the next token boundary at or after ``index``.

    Whitespace, newlines, ``;`` separators and ``#`` comments are trivia.
    Never reads at or past ``end``.
    """
    if end is None:
        end = len(text)
    while index < end:
        ch = text[index:index + 1]
        if ch in (b" ", b"\t", b"\r", b"\n", b";"):
            index += 1
            continue
        if ch == b"#":
            while index < end and text[index:index + 1] != b"\n":
                index += 1
            continue
        break
    return index


class Lexer:
    """On-demand lexer over a bytes-like buffer.

    Tokens are produced one at a time from ``start`` so that only the bytes a
    statement actually needs are ever examined; everything past ``end`` is
    out of bounds.
    """

    def __init__(
        self,
        text,
        filename: str,
        *,
        start: int = 0,
        end: Optional[int] = None,
        line: int = 1,
        column: int = 1,
    ) -> None:
        self.text = text
        self.filename = filename
        self.index = start
        self.end = len(text) if end is None else end
        self.line = line
        self.column = column

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        while True:
            token = self.next_token()
            tokens.append(token)
            if token.type == "EOF":
                return tokens

    def next_token(self) -> Token:
        _advance = self._advance
        while not self._eof:
            ch = self._peek()
            if ch in (b" ", b"\t", b"\r"):
                _advance()
                continue
            if ch == b"#":
                self._consume_comment()
                continue
            break
        if self._eof:
            return Token("EOF", "", self.line, self.column, self.index, self.index)

        ch = self._peek()
        line, col, start = self.line, self.column, self.index
        # Semicolon acts as a newline-token alias (outside string literals)
        if ch == b"\n" or ch == b";":
            _advance()
            return Token("NEWLINE", "\n", line, col, start, self.index)
        if ch in SYMBOLS:
            _advance()
            return Token(SYMBOLS[ch], ch.decode("ascii"), line, col, start, self.index)
        if ch in (b'"', b"'"):
            return self._consume_string()
        if ch == b"-":
            j = self.index + 1
            if j < self.end and self.text[j:j + 1] in DIGITS:
                _advance()
                return self._consume_number(line, col, start, sign="-")
            raise ScriptParseError(
                f"Expected digits after '-' at {self.filename}:{line}:{col}"
            )
        if ch in DIGITS:
            return self._consume_number(line, col, start)
        if ch in IDENT_START:
            return self._consume_identifier()
        raise ScriptParseError(
            f"Unexpected character '{ch.decode('utf-8', 'replace')}' at {self.filename}:{line}:{col}"
        )

    def _consume_comment(self) -> None:
        while not self._eof and self._peek() != b"\n":
            self._advance()

    def _consume_number(self, line: int, col: int, start: int, sign: str = "") -> Token:
        whole = self._consume_digits()
        if not self._eof and self._peek() == b".":
            j = self.index + 1
            if j < self.end and self.text[j:j + 1] in DIGITS:
                self._advance()  # consume '.'
                frac = self._consume_digits()
                return Token("FLOAT", f"{sign}{whole}.{frac}", line, col, start, self.index)
        return Token("NUMBER", f"{sign}{whole}", line, col, start, self.index)

    def _consume_digits(self) -> str:
        digits: List[str] = []
        while not self._eof and self._peek() in DIGITS:
            digits.append(self._peek().decode("ascii"))
            self._advance()
        return "".join(digits)

    def _consume_string(self) -> Token:
        line, col, start = self.line, self.column, self.index
        opening = self._peek()
        self._advance()  # consume opening quote
        raw = bytearray()
        while not self._eof:
            ch = self._peek()
            if ch == opening:
                self._advance()
                try:
                    value = raw.decode("utf-8")
                except UnicodeDecodeError:
                    raise ScriptParseError(
                        f"Invalid UTF-8 in string literal at {self.filename}:{line}:{col}"
                    )
                return Token("STRING", value, line, col, start, self.index)
            if ch == b"\n":
                raise ScriptParseError(
                    f"Unterminated string literal at {self.filename}:{line}:{col}"
                )
            if ch == b"\\":
                self._advance()
                if self._eof:
                    break
                escaped = self._peek()
                if escaped not in ESCAPES:
                    raise ScriptParseError(
                        f"Unknown escape '\\{escaped.decode('utf-8', 'replace')}' at "
                        f"{self.filename}:{self.line}:{self.column}"
                    )
                raw += ESCAPES[escaped]
                self._advance()
                continue
            raw += ch
            self._advance()
        raise ScriptParseError(
            f"Unterminated string literal at {self.filename}:{line}:{col}"
        )

    def _consume_identifier(self) -> Token:
        line, col, start = self.line, self.column, self.index
        chars: List[str] = []
        while not self._eof and self._peek() in IDENT_PART:
            chars.append(self._peek().decode("ascii"))
            self._advance()
        value = "".join(chars)
        token_type: str = value if value in KEYWORDS else "IDENT"
        return Token(token_type, value, line, col, start, self.index)

    @property
    def _eof(self) -> bool:
        return self.index >= self.end

    def _peek(self) -> bytes:
        return self.text[self.index:self.index + 1]

    def _advance(self) -> None:
        if self._peek() == b"\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1
