"""Tests for the bundled statement interpreter."""

from __future__ import annotations

from typing import List

import pytest

from interpreter import Interpreter, StatementEnd, StatementFailure, execute_statement
from source import SourceView


class Session:
    """Runs statements one at a time against a single interpreter."""

    def __init__(self) -> None:
        self.output: List[str] = []
        self.interpreter = Interpreter(filename="<test>", output_sink=self.output.append)

    def run(self, text: str):
        return execute_statement(text.encode("utf-8"), 0, self.interpreter)

    def ok(self, *statements: str) -> str:
        for text in statements:
            result = self.run(text)
            assert isinstance(result, StatementEnd), result
        return "".join(self.output)

    def fail(self, text: str) -> str:
        result = self.run(text)
        assert isinstance(result, StatementFailure), result
        return result.message


@pytest.fixture
def session():
    return Session()


class TestBoundary:
    def test_end_offset_points_past_statement(self, session):
        result = execute_statement(b"  PRINT(1) }} tail", 0, session.interpreter)
        assert result == StatementEnd(offset=10)

    def test_failure_carries_start_offset(self, session):
        result = execute_statement(b"xx{{ @ }}", 5, session.interpreter)
        assert isinstance(result, StatementFailure)
        assert result.offset == 5

    def test_parse_error_is_failure(self, session):
        message = session.fail("INT: = 3")
        assert "Expected token IDENT" in message

    def test_runtime_error_is_failure(self, session):
        message = session.fail("PRINT(DIV(1, 0))")
        assert message == "Division by zero at <test>:1:7"

    def test_source_view_locations(self):
        output: List[str] = []
        interpreter = Interpreter(filename="page.tmpl", output_sink=output.append)
        view = SourceView.from_bytes(b"#!x\nline\n{{ PRINT(nope) }}", filename="page.tmpl")
        result = execute_statement(view, 8, interpreter)
        assert isinstance(result, StatementFailure)
        assert result.message == "Undefined identifier 'nope' at page.tmpl:3:10"

    def test_closed_environment(self, session):
        session.interpreter.close()
        assert session.fail("PRINT(1)").startswith("Environment is closed")

    def test_statement_count(self, session):
        session.ok("INT: a = 1", "PRINT(a)")
        session.fail("PRINT(b)")
        assert session.interpreter.statements_executed == 3


class TestState:
    def test_declarations_persist(self, session):
        assert session.ok("INT: x = 5", "x = ADD(x, 2)", "PRINT(x)") == "7"

    def test_assignment_requires_declaration(self, session):
        assert "must be declared with a type" in session.fail("y = 1")

    def test_type_is_fixed(self, session):
        session.ok('STR: s = "a"')
        assert "Type mismatch for 's'" in session.fail("s = 1")
        assert "previously declared as STR" in session.fail("INT: s = 1")

    def test_del_and_exist(self, session):
        session.ok("INT: gone = 1", "DEL(gone)", "PRINT(EXIST(gone))")
        assert session.output == ["0"]
        session.ok("INT: gone = 2", "PRINT(EXIST(gone), gone)")
        assert session.output[-1] == "12"

    def test_functions_persist(self, session):
        session.ok("FUNC double(INT: n): INT { RETURN(MUL(n, 2)) }")
        assert session.ok("PRINT(double(21))") == "42"

    def test_function_name_conflicts_with_builtin(self, session):
        assert "conflicts with built-in" in session.fail("FUNC PRINT(): INT { }")

    def test_close_clears_state(self, session):
        session.ok("INT: x = 1")
        session.interpreter.close()
        assert not session.interpreter.globals.has("x")


class TestControlFlow:
    def test_if_chain(self, session):
        session.ok("INT: n = 2")
        session.ok('IF(EQ(n, 1)){ PRINT("one") } ELSEIF(EQ(n, 2)){ PRINT("two") } ELSE { PRINT("many") }')
        assert session.output == ["two"]

    def test_while_with_break(self, session):
        session.ok("INT: i = 0", "WHILE(1){ i = ADD(i, 1); IF(EQ(i, 4)){ BREAK(1) } }", "PRINT(i)")
        assert session.output == ["4"]

    def test_for_is_one_indexed(self, session):
        session.ok('FOR(i, 3){ PRINT(i, ",") }')
        assert "".join(session.output) == "1,2,3,"

    def test_continue(self, session):
        session.ok("FOR(i, 4){ IF(MOD(i, 2)){ CONTINUE() } PRINT(i) }")
        assert session.output == ["2", "4"]

    def test_nested_break(self, session):
        session.ok("FOR(i, 3){ FOR(j, 3){ IF(EQ(j, 2)){ BREAK(2) } PRINT(i, j) } }")
        assert session.output == ["11"]

    def test_break_outside_loop(self, session):
        assert "BREAK(1) escaped enclosing loops" in session.fail("BREAK(1)")

    def test_return_outside_function(self, session):
        assert "RETURN outside of function" in session.fail("RETURN(1)")

    def test_default_and_keyword_arguments(self, session):
        session.ok('FUNC greet(STR: name, STR: greeting = "Hello"): STR { RETURN(JOIN(greeting, ", ", name)) }')
        session.ok('PRINT(greet("Ada"))', 'PRINT(greet("Bob", greeting="Hi"))')
        assert session.output == ["Hello, Ada", "Hi, Bob"]

    def test_bare_return_gives_default(self, session):
        session.ok("FUNC nothing(): STR { RETURN() }", "PRINT(SLEN(nothing()))")
        assert session.output == ["0"]

    def test_wrong_return_type(self, session):
        session.ok('FUNC bad(): INT { RETURN("x") }')
        assert "must return INT but got STR" in session.fail("PRINT(bad())")


class TestBuiltins:
    @pytest.mark.parametrize(
        "expression, expected",
        [
            ("DIV(7, 2)", "3"),
            ("DIV(-7, 2)", "-3"),
            ("DIV(7.0, 2.0)", "3.5"),
            ("MOD(7, 3)", "1"),
            ("POW(2, 10)", "1024"),
            ("NEG(5)", "-5"),
            ("ABS(-2.5)", "2.5"),
            ("GT(3, 2)", "1"),
            ("LTE(3, 2)", "0"),
            ('LT("a", "b")', "1"),
            ("AND(1, 0)", "0"),
            ("OR(0, 2)", "1"),
            ("NOT(0)", "1"),
            ('BOOL("")', "0"),
            ("SUM(1, 2, 3)", "6"),
            ("MAX([4, 9, 2])", "9"),
            ("MIN(1.5, 0.5)", "0.5"),
            ('INT(" 12 ")', "12"),
            ("INT(3.9)", "3"),
            ("FLT(2)", "2.0"),
            ("STR([1, 2])", "[1, 2]"),
            ('TYPE("s")', "STR"),
            ('SLEN("héllo")', "5"),
            ('UPPER("abc")', "ABC"),
            ('LOWER("ABC")', "abc"),
            ('REPLACE("a-b-c", "-", "+")', "a+b+c"),
            ('JOIN(SPLIT("a b c"), "/")', "a/b/c"),
            ('SPLIT("x,y", ",")', "[x, y]"),
            ("TNS([2, 2], 0)", "[0, 0, 0, 0]"),
            ("SHAPE([[1, 2, 3], [4, 5, 6]])", "[2, 3]"),
            ("TLEN([[1, 2, 3], [4, 5, 6]], 2)", "3"),
            ("EQ([1, 2], [1, 2])", "1"),
        ],
    )
    def test_builtin(self, session, expression, expected):
        assert session.ok(f"PRINT({expression})") == expected

    def test_println(self, session):
        assert session.ok('PRINTLN("a", 1)') == "a1\n"

    def test_mixed_numeric_types(self, session):
        assert "ADD cannot mix INT and FLT" in session.fail("PRINT(ADD(1, 2.0))")

    def test_arity(self, session):
        assert "UPPER expects at most 1 arguments" in session.fail('PRINT(UPPER("a", "b"))')

    def test_unknown_function(self, session):
        assert "Unknown function 'NOPE'" in session.fail("NOPE()")

    def test_assert(self, session):
        session.ok("ASSERT(1)")
        assert "Assertion failed" in session.fail("ASSERT(0)")


class TestTensors:
    def test_index_and_negative_index(self, session):
        session.ok("TNS: t = [[1, 2], [3, 4]]")
        assert session.ok("PRINT(t[2, 1], t[-1, -1], t[1][2])") == "342"

    def test_element_assignment(self, session):
        session.ok("TNS: t = TNS([3], 0)", "t[2] = 7", "PRINT(t)")
        assert session.output == ["[0, 7, 0]"]

    def test_fill_does_not_alias(self, session):
        session.ok('TNS: t = TNS([2], "a")', 't[1] = "b"', "PRINT(t)")
        assert session.output == ["[b, a]"]

    def test_zero_index(self, session):
        session.ok("TNS: t = [1, 2]")
        assert "Tensor indices are 1-indexed" in session.fail("PRINT(t[0])")

    def test_out_of_range(self, session):
        session.ok("TNS: t = [1, 2]")
        assert "Tensor index out of range" in session.fail("PRINT(t[3])")

    def test_element_type_is_fixed(self, session):
        session.ok("TNS: t = [1, 2]")
        assert "Tensor element type mismatch" in session.fail('t[1] = "x"')

    def test_ragged_literal(self, session):
        assert "Inconsistent tensor shape" in session.fail("TNS: t = [[1, 2], [3]]")

    def test_empty_literal(self, session):
        assert "Tensor literal cannot be empty" in session.fail("TNS: t = []")


INFINITY = "MUL(POW(10.0, 300.0), POW(10.0, 300.0))"


class TestNumericFaults:
    @pytest.mark.parametrize(
        "statement, message",
        [
            ('PRINT(INT(FLT("inf")))', "FLT cannot convert 'inf'"),
            ('PRINT(INT(FLT("nan")))', "FLT cannot convert 'nan'"),
            (f"PRINT(INT({INFINITY}))", "INT cannot convert 'inf'"),
            ("PRINT(POW(2.0, 10000.0))", "POW result out of range"),
            ("PRINT(POW(-8.0, 0.5))", "POW of a negative FLT needs an integral exponent"),
            (f"PRINT(MOD({INFINITY}, 2.0))", "MOD of a non-finite FLT"),
        ],
    )
    def test_reported_as_failure(self, session, statement, message):
        assert message in session.fail(statement)
        assert session.output == []

    def test_negative_base_with_integral_exponent(self, session):
        assert session.ok("PRINT(POW(-2.0, 3.0))") == "-8.0"

    def test_runaway_recursion(self, session):
        session.ok("FUNC forever(): INT { RETURN(forever()) }")
        assert session.fail("PRINT(forever())") == "Maximum call depth exceeded at <test>:1:1"
        assert session.interpreter.call_stack == ["<template>"]
        assert session.ok("PRINT(1)") == "1"

    def test_deeply_nested_statement(self, session):
        depth = 5000
        message = session.fail("PRINT(" + "(" * depth + "1" + ")" * depth + ")")
        assert message == "Statement nests too deeply at offset 0"
