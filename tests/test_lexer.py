"""Tests for lexer."""

from __future__ import annotations

import pytest

from lexer import Lexer, ScriptParseError, skip_trivia


def _types(text: bytes):
    return [token.type for token in Lexer(text, "<test>").tokenize()]


def _values(text: bytes):
    return [token.value for token in Lexer(text, "<test>").tokenize() if token.type != "EOF"]


def test_declaration_tokens():
    assert _types(b"INT: x = ADD(1, 2)") == [
        "IDENT", "COLON", "IDENT", "EQUALS", "IDENT",
        "LPAREN", "NUMBER", "COMMA", "NUMBER", "RPAREN", "EOF",
    ]


def test_keywords_are_their_own_type():
    assert _types(b"IF ELSEIF ELSE WHILE FOR FUNC RETURN BREAK CONTINUE")[:-1] == [
        "IF", "ELSEIF", "ELSE", "WHILE", "FOR", "FUNC", "RETURN", "BREAK", "CONTINUE",
    ]


def test_semicolon_and_newline_are_newline_tokens():
    assert _types(b"a;b\nc") == ["IDENT", "NEWLINE", "IDENT", "NEWLINE", "IDENT", "EOF"]


def test_comment_runs_to_end_of_line():
    assert _values(b"x # PRINT(1) }}\ny") == ["x", "\n", "y"]


@pytest.mark.parametrize(
    "text, token_type, value",
    [
        (b"42", "NUMBER", "42"),
        (b"-7", "NUMBER", "-7"),
        (b"3.25", "FLOAT", "3.25"),
        (b"-0.5", "FLOAT", "-0.5"),
    ],
)
def test_numbers(text, token_type, value):
    token = Lexer(text, "<test>").next_token()
    assert (token.type, token.value) == (token_type, value)


def test_trailing_dot_is_not_a_float():
    lexer = Lexer(b"1.", "<test>")
    token = lexer.next_token()
    assert (token.type, token.value, token.end) == ("NUMBER", "1", 1)


def test_lone_minus_is_an_error():
    with pytest.raises(ScriptParseError, match="Expected digits after '-'"):
        Lexer(b"- 1", "<test>").next_token()


def test_string_escapes():
    token = Lexer(b'"a\\tb\\n\\"q\\" \\\\"', "<test>").next_token()
    assert token.type == "STRING"
    assert token.value == 'a\tb\n"q" \\'


def test_single_quoted_string():
    assert _values(b"'it\\'s'") == ["it's"]


def test_multibyte_string():
    token = Lexer('"€uro"'.encode("utf-8"), "<test>").next_token()
    assert token.value == "€uro"
    assert token.end == len('"€uro"'.encode("utf-8"))


def test_unknown_escape():
    with pytest.raises(ScriptParseError, match="Unknown escape"):
        Lexer(b'"\\q"', "<test>").next_token()


def test_unterminated_string_at_newline():
    with pytest.raises(ScriptParseError, match="Unterminated string literal at <test>:1:1"):
        Lexer(b'"abc\n"', "<test>").next_token()


def test_unexpected_character_reports_position():
    with pytest.raises(ScriptParseError, match="Unexpected character '@' at page:2:3"):
        Lexer(b"x\n  @", "page").tokenize()


def test_positions_and_offsets():
    tokens = Lexer(b"ab\n  cd", "<test>").tokenize()
    assert [(t.line, t.column, t.start, t.end) for t in tokens[:3]] == [
        (1, 1, 0, 2),
        (1, 3, 2, 3),
        (2, 3, 5, 7),
    ]


def test_start_offset_and_initial_position():
    tokens = Lexer(b"xxxx PRINT", "<test>", start=5, line=4, column=9).tokenize()
    assert (tokens[0].value, tokens[0].line, tokens[0].column, tokens[0].start) == ("PRINT", 4, 9, 5)


def test_end_bound_is_never_crossed():
    lexer = Lexer(b'ab "unterminated', "<test>", end=2)
    assert [t.type for t in lexer.tokenize()] == ["IDENT", "EOF"]
    assert lexer.index == 2


def test_string_reaching_end_bound_is_unterminated():
    with pytest.raises(ScriptParseError, match="Unterminated"):
        Lexer(b'"abc"', "<test>", end=3).tokenize()


class TestSkipTrivia:
    def test_whitespace_and_separators(self):
        assert skip_trivia(b" \t\r\n;;x", 0) == 6

    def test_comments(self):
        assert skip_trivia(b"# one\n  # two\n}}", 0) == 14

    def test_comment_at_end(self):
        text = b"  # trailing"
        assert skip_trivia(text, 0) == len(text)

    def test_stops_at_non_trivia(self):
        assert skip_trivia(b"a  b", 1) == 3

    def test_respects_end(self):
        assert skip_trivia(b"      x", 0, end=3) == 3

    def test_already_at_end(self):
        assert skip_trivia(b"abc", 3) == 3
