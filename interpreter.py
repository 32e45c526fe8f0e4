from __future__ import annotations
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from lexer import Lexer, ScriptError, ScriptParseError
from parser import (
    Assignment,
    Block,
    BreakStatement,
    CallExpression,
    ContinueStatement,
    Expression,
    ExpressionStatement,
    ForStatement,
    FuncDef,
    Identifier,
    IfStatement,
    IndexAssignment,
    IndexExpression,
    Literal,
    Param,
    Parser,
    ReturnStatement,
    SourceLocation,
    Statement,
    TensorLiteral,
    WhileStatement,
)


TYPE_INT = "INT"
TYPE_FLT = "FLT"
TYPE_STR = "STR"
TYPE_TNS = "TNS"
NUMERIC_TYPES = (TYPE_INT, TYPE_FLT)

TOP_LEVEL = "<template>"


@dataclass(frozen=True)
class Tensor:
    """Row-major n-dimensional array of :class:`Value` cells, 1-indexed."""

    shape: List[int]
    data: NDArray[Any]
    strides: Tuple[int, ...] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        strides: List[int] = []
        step = 1
        for dim in reversed(self.shape):
            strides.append(step)
            step *= int(dim)
        object.__setattr__(self, "strides", tuple(reversed(strides)))

    @classmethod
    def from_cells(cls, shape: List[int], cells: Iterable["Value"]) -> "Tensor":
        cells = list(cells)
        data = np.empty(len(cells), dtype=object)
        for i, cell in enumerate(cells):
            data[i] = cell
        return cls(shape=list(shape), data=data)

    def cells(self) -> Iterable["Value"]:
        return self.data.flat


@dataclass
class Value:
    type: str
    value: Any


class ScriptRuntimeError(ScriptError):
    """Raised for runtime faults; rendered as ``<message> at <location>``."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule

    def __str__(self) -> str:
        if self.location is None:
            return self.message
        return f"{self.message} at {self.location}"


class ReturnSignal(Exception):
    def __init__(self, value: Value) -> None:
        super().__init__(value)
        self.value = value


class BreakSignal(Exception):
    def __init__(self, count: int) -> None:
        super().__init__(count)
        self.count = count


class ContinueSignal(Exception):
    pass


@dataclass
class Environment:
    parent: Optional["Environment"] = None
    values: Dict[str, Value] = field(default_factory=dict)

    def scope_of(self, name: str) -> Optional["Environment"]:
        scope: Optional[Environment] = self
        while scope is not None and name not in scope.values:
            scope = scope.parent
        return scope

    def set(self, name: str, value: Value, declared_type: Optional[str] = None) -> None:
        """Bind ``name``; a first binding needs ``declared_type``, later ones keep it."""
        scope = self.scope_of(name)
        if scope is None:
            if declared_type is None:
                raise ScriptRuntimeError(
                    f"Identifier '{name}' must be declared with a type before assignment", rule="ASSIGN"
                )
            if value.type != declared_type:
                raise ScriptRuntimeError(
                    f"Assigned value type {value.type} does not match declaration {declared_type}", rule="ASSIGN"
                )
            self.values[name] = value
            return
        current = scope.values[name].type
        if declared_type is not None and declared_type != current:
            raise ScriptRuntimeError(f"Type mismatch for '{name}': previously declared as {current}", rule="ASSIGN")
        if value.type != current:
            raise ScriptRuntimeError(
                f"Type mismatch for '{name}': expected {current} but got {value.type}", rule="ASSIGN"
            )
        scope.values[name] = value

    def get(self, name: str) -> Optional[Value]:
        scope = self.scope_of(name)
        return None if scope is None else scope.values[name]

    def delete(self, name: str) -> None:
        scope = self.scope_of(name)
        if scope is None:
            raise ScriptRuntimeError(f"Cannot delete undefined identifier '{name}'", rule="DEL")
        del scope.values[name]

    def has(self, name: str) -> bool:
        return self.scope_of(name) is not None


@dataclass
class Function:
    name: str
    params: List[Param]
    return_type: str
    body: Block
    closure: Environment


@dataclass
class Call:
    """Everything a builtin sees about one invocation."""

    name: str
    interpreter: "Interpreter"
    args: List[Value]
    nodes: List[Expression]
    env: Environment
    location: SourceLocation

    def error(self, message: str) -> ScriptRuntimeError:
        return ScriptRuntimeError(message, location=self.location, rule=self.name)

    def int_arg(self, index: int) -> int:
        return self._typed(index, TYPE_INT, "integer")

    def str_arg(self, index: int) -> str:
        return self._typed(index, TYPE_STR, "string")

    def tensor_arg(self, index: int) -> Tensor:
        return self._typed(index, TYPE_TNS, "tensor")

    def numbers(self) -> Tuple[str, List[Any]]:
        """Numeric operands of one shared type, for fixed-arity arithmetic."""
        kinds = {arg.type for arg in self.args}
        if len(kinds) > 1:
            first, second = self.args[0].type, next(a.type for a in self.args if a.type != self.args[0].type)
            raise self.error(f"{self.name} cannot mix {first} and {second}")
        kind = kinds.pop()
        if kind not in NUMERIC_TYPES:
            raise self.error(f"{self.name} expects INT or FLT arguments")
        return kind, [arg.value for arg in self.args]

    def _typed(self, index: int, type_name: str, noun: str) -> Any:
        arg = self.args[index]
        if arg.type != type_name:
            raise self.error(f"{self.name} expects {noun} arguments")
        return arg.value


BuiltinImpl = Callable[[Call], Value]


@dataclass
class BuiltinFunction:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: BuiltinImpl
    # Receives argument expressions unevaluated (DEL, EXIST).
    raw: bool = False


def _int(flag: bool) -> Value:
    return Value(TYPE_INT, 1 if flag else 0)


def _str_tensor(parts: List[str]) -> Value:
    return Value(TYPE_TNS, Tensor.from_cells([len(parts)], (Value(TYPE_STR, p) for p in parts)))


class Builtins:
    """Registry of the built-in operators, keyed by upper-case name."""

    def __init__(self) -> None:
        self.table: Dict[str, BuiltinFunction] = {}
        for name, low, high, impl in (
            ("ADD", 2, 2, self._add),
            ("SUB", 2, 2, self._sub),
            ("MUL", 2, 2, self._mul),
            ("DIV", 2, 2, self._div),
            ("MOD", 2, 2, self._mod),
            ("POW", 2, 2, self._pow),
            ("NEG", 1, 1, self._neg),
            ("ABS", 1, 1, self._abs),
            ("EQ", 2, 2, self._eq),
            ("GT", 2, 2, self._ordering(lambda a, b: a > b)),
            ("LT", 2, 2, self._ordering(lambda a, b: a < b)),
            ("GTE", 2, 2, self._ordering(lambda a, b: a >= b)),
            ("LTE", 2, 2, self._ordering(lambda a, b: a <= b)),
            ("AND", 2, 2, lambda call: _int(all(self._truth(call)))),
            ("OR", 2, 2, lambda call: _int(any(self._truth(call)))),
            ("NOT", 1, 1, lambda call: _int(not any(self._truth(call)))),
            ("BOOL", 1, 1, lambda call: _int(any(self._truth(call)))),
            ("SUM", 1, None, self._aggregate(lambda items, zero: sum(items, zero))),
            ("MAX", 1, None, self._aggregate(lambda items, _: max(items))),
            ("MIN", 1, None, self._aggregate(lambda items, _: min(items))),
            ("INT", 1, 1, self._convert(TYPE_INT, int)),
            ("FLT", 1, 1, self._convert(TYPE_FLT, float)),
            ("STR", 1, 1, lambda call: Value(TYPE_STR, call.interpreter.to_str(call.args[0]))),
            ("TYPE", 1, 1, lambda call: Value(TYPE_STR, call.args[0].type)),
            ("SLEN", 1, 1, lambda call: Value(TYPE_INT, len(call.str_arg(0)))),
            ("UPPER", 1, 1, lambda call: Value(TYPE_STR, call.str_arg(0).upper())),
            ("LOWER", 1, 1, lambda call: Value(TYPE_STR, call.str_arg(0).lower())),
            ("REPLACE", 3, 3, lambda call: Value(TYPE_STR, call.str_arg(0).replace(call.str_arg(1), call.str_arg(2)))),
            ("JOIN", 1, None, self._join),
            ("SPLIT", 1, 2, self._split),
            ("TNS", 2, 2, self._tns),
            ("SHAPE", 1, 1, self._shape),
            ("TLEN", 1, 2, self._tlen),
            ("PRINT", 0, None, self._print),
            ("PRINTLN", 0, None, self._print),
            ("ASSERT", 1, 1, self._assert),
        ):
            self.register(name, low, high, impl)
        self.register("DEL", 1, 1, self._delete, raw=True)
        self.register("EXIST", 1, 1, self._exist, raw=True)

    def register(self, name: str, min_args: int, max_args: Optional[int], impl: BuiltinImpl, raw: bool = False) -> None:
        self.table[name] = BuiltinFunction(name=name, min_args=min_args, max_args=max_args, impl=impl, raw=raw)

    def __contains__(self, name: str) -> bool:
        return name in self.table

    def invoke(self, builtin: BuiltinFunction, call: Call) -> Value:
        supplied = len(call.nodes)
        if supplied < builtin.min_args:
            raise call.error(f"{builtin.name} expects at least {builtin.min_args} arguments")
        if builtin.max_args is not None and supplied > builtin.max_args:
            raise call.error(f"{builtin.name} expects at most {builtin.max_args} arguments")
        return builtin.impl(call)

    # Arithmetic

    def _add(self, call: Call) -> Value:
        kind, (a, b) = call.numbers()
        return Value(kind, a + b)

    def _sub(self, call: Call) -> Value:
        kind, (a, b) = call.numbers()
        return Value(kind, a - b)

    def _mul(self, call: Call) -> Value:
        kind, (a, b) = call.numbers()
        return Value(kind, a * b)

    def _div(self, call: Call) -> Value:
        kind, (a, b) = call.numbers()
        if b == 0:
            raise call.error("Division by zero")
        if kind == TYPE_FLT:
            return Value(TYPE_FLT, a / b)
        # Truncates toward zero.
        quotient = abs(a) // abs(b)
        return Value(TYPE_INT, quotient if (a < 0) == (b < 0) else -quotient)

    def _mod(self, call: Call) -> Value:
        kind, (a, b) = call.numbers()
        if b == 0:
            raise call.error("Division by zero")
        if kind == TYPE_INT:
            return Value(kind, a % b)
        if not math.isfinite(a):
            raise call.error("MOD of a non-finite FLT")
        return Value(kind, math.fmod(a, b))

    def _pow(self, call: Call) -> Value:
        kind, (a, b) = call.numbers()
        if b < 0 and kind == TYPE_INT:
            raise call.error("Negative exponent not supported for INT")
        if b < 0 and a == 0:
            raise call.error("Division by zero")
        if kind == TYPE_FLT and a < 0 and not float(b).is_integer():
            raise call.error("POW of a negative FLT needs an integral exponent")
        try:
            return Value(kind, a ** b)
        except OverflowError:
            raise call.error("POW result out of range")

    def _neg(self, call: Call) -> Value:
        kind, (a,) = call.numbers()
        return Value(kind, -a)

    def _abs(self, call: Call) -> Value:
        kind, (a,) = call.numbers()
        return Value(kind, abs(a))

    # Comparison and logic

    def _eq(self, call: Call) -> Value:
        return _int(values_equal(call.args[0], call.args[1]))

    @staticmethod
    def _ordering(op: Callable[[Any, Any], bool]) -> BuiltinImpl:
        def compare(call: Call) -> Value:
            left, right = call.args
            if left.type != right.type or left.type == TYPE_TNS:
                raise call.error(f"{call.name} expects two INT, FLT or STR arguments of the same type")
            return _int(op(left.value, right.value))

        return compare

    @staticmethod
    def _truth(call: Call) -> List[bool]:
        return [truthy(arg) for arg in call.args]

    @staticmethod
    def _aggregate(fold: Callable[[List[Any], Any], Any]) -> BuiltinImpl:
        def aggregate(call: Call) -> Value:
            values = call.args
            if len(values) == 1 and values[0].type == TYPE_TNS:
                values = list(values[0].value.cells())
            kinds = {v.type for v in values}
            if len(kinds) != 1 or not kinds <= set(NUMERIC_TYPES):
                raise call.error(f"{call.name} expects INT or FLT arguments of one type")
            kind = kinds.pop()
            return Value(kind, fold([v.value for v in values], 0 if kind == TYPE_INT else 0.0))

        return aggregate

    # Conversion and strings

    @staticmethod
    def _convert(target: str, cast: Callable[[Any], Any]) -> BuiltinImpl:
        def convert(call: Call) -> Value:
            value = call.args[0]
            if value.type == target:
                return value
            if value.type == TYPE_STR:
                raw = value.value.strip()
            elif value.type in NUMERIC_TYPES:
                raw = value.value
            else:
                raise call.error(f"{target} expects INT, FLT or STR")
            # int() rejects inf and nan; float() accepts them, so check after.
            try:
                result = cast(raw)
            except (ValueError, OverflowError):
                raise call.error(f"{target} cannot convert '{call.interpreter.to_str(value)}'")
            if isinstance(result, float) and not math.isfinite(result):
                raise call.error(f"{target} cannot convert '{call.interpreter.to_str(value)}'")
            return Value(target, result)

        return convert

    def _join(self, call: Call) -> Value:
        if call.args[0].type == TYPE_TNS:
            # JOIN(tensor[, separator]) joins the string forms of the cells.
            if len(call.args) > 2:
                raise call.error("JOIN expects a tensor and an optional separator")
            separator = call.str_arg(1) if len(call.args) == 2 else ""
            to_str = call.interpreter.to_str
            return Value(TYPE_STR, separator.join(to_str(cell) for cell in call.tensor_arg(0).cells()))
        return Value(TYPE_STR, "".join(call.str_arg(i) for i in range(len(call.args))))

    def _split(self, call: Call) -> Value:
        text = call.str_arg(0)
        separator = call.str_arg(1) if len(call.args) == 2 else None
        if separator == "":
            raise call.error("SPLIT separator must be non-empty")
        return _str_tensor(text.split(separator))

    # Tensors

    def _tns(self, call: Call) -> Value:
        shape = []
        for dim in call.tensor_arg(0).cells():
            if dim.type != TYPE_INT:
                raise call.error("TNS expects integer arguments")
            shape.append(dim.value)
        if not shape:
            raise call.error("Tensor shape must have at least one dimension")
        if any(dim <= 0 for dim in shape):
            raise call.error("Tensor dimensions must be positive")
        fill = call.args[1]
        # Fresh cells so element assignment never aliases.
        cells = (Value(fill.type, fill.value) for _ in range(math.prod(shape)))
        return Value(TYPE_TNS, Tensor.from_cells(shape, cells))

    def _shape(self, call: Call) -> Value:
        shape = call.tensor_arg(0).shape
        return Value(TYPE_TNS, Tensor.from_cells([len(shape)], (Value(TYPE_INT, int(d)) for d in shape)))

    def _tlen(self, call: Call) -> Value:
        shape = call.tensor_arg(0).shape
        axis = call.int_arg(1) if len(call.args) == 2 else 1
        if not 1 <= axis <= len(shape):
            raise call.error("TLEN dimension out of range")
        return Value(TYPE_INT, int(shape[axis - 1]))

    # Effects

    def _print(self, call: Call) -> Value:
        text = "".join(call.interpreter.to_str(arg) for arg in call.args)
        if call.name == "PRINTLN":
            text += "\n"
        call.interpreter.output_sink(text)
        return Value(TYPE_INT, 0)

    def _assert(self, call: Call) -> Value:
        if not truthy(call.args[0]):
            raise call.error("Assertion failed")
        return Value(TYPE_INT, 1)

    def _delete(self, call: Call) -> Value:
        name = self._identifier(call)
        try:
            call.env.delete(name)
        except ScriptRuntimeError as err:
            err.location = call.location
            raise
        return Value(TYPE_INT, 0)

    def _exist(self, call: Call) -> Value:
        return _int(call.env.has(self._identifier(call)))

    @staticmethod
    def _identifier(call: Call) -> str:
        node = call.nodes[0]
        if not isinstance(node, Identifier):
            raise call.error(f"{call.name} expects an identifier argument")
        return node.name


def truthy(value: Value) -> bool:
    if value.type == TYPE_TNS:
        return any(truthy(cell) for cell in value.value.cells())
    if value.type in (TYPE_INT, TYPE_FLT, TYPE_STR):
        return bool(value.value)
    raise ScriptRuntimeError(f"Unsupported type {value.type} in condition")


def values_equal(left: Value, right: Value) -> bool:
    if left.type != right.type:
        return False
    if left.type != TYPE_TNS:
        return left.value == right.value
    a, b = left.value, right.value
    return a.shape == b.shape and all(values_equal(x, y) for x, y in zip(a.cells(), b.cells()))


class Interpreter:
    """Execution environment for one render.

    Holds the global scope, the user function table and the output sink.
    Statements are executed one at a time through :func:`execute_statement`;
    state persists between calls until :meth:`close`.
    """

    def __init__(
        self,
        *,
        filename: str,
        output_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.filename = filename
        self.output_sink = output_sink or (lambda text: print(text, end=""))
        self.builtins = Builtins()
        self.globals = Environment()
        self.functions: Dict[str, Function] = {}
        self.call_stack: List[str] = [TOP_LEVEL]
        self.statements_executed = 0
        self.closed = False
        self._handlers: Dict[type, Callable[[Any, Environment], None]] = {
            Assignment: self._exec_assignment,
            IndexAssignment: self._exec_index_assignment,
            ExpressionStatement: lambda stmt, env: self._evaluate(stmt.expression, env),
            IfStatement: self._exec_if,
            WhileStatement: self._exec_while,
            ForStatement: self._exec_for,
            FuncDef: self._exec_funcdef,
            ReturnStatement: self._exec_return,
            BreakStatement: self._exec_break,
            ContinueStatement: self._exec_continue,
        }

    def close(self) -> None:
        self.globals = Environment()
        self.functions.clear()
        self.call_stack = [TOP_LEVEL]
        self.closed = True

    def __enter__(self) -> "Interpreter":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def parse_statement(self, source, offset: int) -> Tuple[Statement, int]:
        """Parse one statement at ``offset``; returns it with its end offset."""
        location = getattr(source, "location", None)
        if location is not None:
            line, column = location(offset)
        else:
            head = bytes(source[:offset])
            line, column = head.count(b"\n") + 1, offset - head.rfind(b"\n")
        lexer = Lexer(source, self.filename, start=offset, end=len(source), line=line, column=column)
        parser = Parser(lexer)
        statement = parser.parse_statement()
        return statement, parser.end_offset

    def execute(self, statement: Statement) -> None:
        if self.closed:
            raise ScriptRuntimeError("Environment is closed", location=statement.location)
        self.statements_executed += 1
        try:
            self._run(statement, self.globals)
        except BreakSignal as signal:
            raise ScriptRuntimeError(
                f"BREAK({signal.count}) escaped enclosing loops", location=statement.location, rule="BREAK"
            )
        except ContinueSignal:
            raise ScriptRuntimeError("CONTINUE used outside loop", location=statement.location, rule="CONTINUE")
        except RecursionError:
            raise ScriptRuntimeError("Maximum call depth exceeded", location=statement.location, rule="CALL")
        except (ArithmeticError, ValueError) as error:
            # Numeric faults the builtins do not check for themselves.
            raise ScriptRuntimeError(
                f"{error.__class__.__name__}: {error}", location=statement.location, rule=error.__class__.__name__
            )

    def to_str(self, value: Value) -> str:
        if value.type == TYPE_TNS:
            return "[" + ", ".join(self.to_str(cell) for cell in value.value.cells()) + "]"
        if value.type == TYPE_FLT:
            return repr(float(value.value))
        return str(value.value)

    # Statements

    def _run(self, statement: Statement, env: Environment) -> None:
        handler = self._handlers.get(type(statement))
        if handler is None:
            raise ScriptRuntimeError("Unsupported statement", location=statement.location)
        handler(statement, env)

    def _run_block(self, block: Block, env: Environment) -> None:
        for statement in block.statements:
            self._run(statement, env)

    def _exec_assignment(self, statement: Assignment, env: Environment) -> None:
        if statement.target in self.functions:
            raise ScriptRuntimeError(
                f"Identifier '{statement.target}' already bound as function", location=statement.location, rule="ASSIGN"
            )
        value = self._evaluate(statement.expression, env)
        try:
            env.set(statement.target, value, declared_type=statement.declared_type)
        except ScriptRuntimeError as err:
            err.location = statement.location
            raise

    def _exec_index_assignment(self, statement: IndexAssignment, env: Environment) -> None:
        base, index_nodes = self._flatten_index(statement.target)
        if not isinstance(base, Identifier):
            raise ScriptRuntimeError("Indexed assignment requires identifier base", location=statement.location, rule="ASSIGN")
        tensor = self._evaluate(base, env)
        if tensor.type != TYPE_TNS:
            raise ScriptRuntimeError("Indexed assignment requires a tensor base", location=statement.location, rule="ASSIGN")
        offset = self._cell_offset(tensor.value, index_nodes, env, statement.location, "ASSIGN")
        value = self._evaluate(statement.value, env)
        if tensor.value.data[offset].type != value.type:
            raise ScriptRuntimeError("Tensor element type mismatch", location=statement.location, rule="ASSIGN")
        tensor.value.data[offset] = value

    def _exec_if(self, statement: IfStatement, env: Environment) -> None:
        for branch in statement.branches:
            if self._test(branch.condition, env):
                self._run_block(branch.block, env)
                return
        if statement.otherwise is not None:
            self._run_block(statement.otherwise, env)

    def _exec_while(self, statement: WhileStatement, env: Environment) -> None:
        while self._test(statement.condition, env):
            if not self._loop_body(statement.block, env):
                return

    def _exec_for(self, statement: ForStatement, env: Environment) -> None:
        limit = self._expect_int(self._evaluate(statement.limit, env), "FOR", statement.location)
        # Counters run 1..limit so they index tensors directly.
        try:
            env.set(statement.counter, Value(TYPE_INT, 1), declared_type=TYPE_INT)
        except ScriptRuntimeError as err:
            err.location = statement.location
            raise
        counter = 1
        while counter <= limit:
            if not self._loop_body(statement.block, env):
                return
            current = env.get(statement.counter)
            if current is None:
                raise ScriptRuntimeError(
                    f"Undefined identifier '{statement.counter}'", location=statement.location, rule="FOR"
                )
            counter = self._expect_int(current, "FOR", statement.location) + 1
            if counter <= limit:
                env.set(statement.counter, Value(TYPE_INT, counter))

    def _loop_body(self, block: Block, env: Environment) -> bool:
        """Run one iteration; False when the loop must stop."""
        try:
            self._run_block(block, env)
        except BreakSignal as signal:
            if signal.count > 1:
                signal.count -= 1
                raise
            return False
        except ContinueSignal:
            pass
        return True

    def _exec_funcdef(self, statement: FuncDef, env: Environment) -> None:
        if statement.name in self.builtins:
            raise ScriptRuntimeError(f"Function name '{statement.name}' conflicts with built-in", location=statement.location)
        self.functions[statement.name] = Function(
            name=statement.name,
            params=statement.params,
            return_type=statement.return_type,
            body=statement.body,
            closure=env,
        )

    def _exec_return(self, statement: ReturnStatement, env: Environment) -> None:
        current = self.call_stack[-1]
        if current == TOP_LEVEL:
            raise ScriptRuntimeError("RETURN outside of function", location=statement.location, rule="RETURN")
        if statement.expression is None:
            raise ReturnSignal(self._zero_value(self.functions[current], statement.location))
        raise ReturnSignal(self._evaluate(statement.expression, env))

    def _exec_break(self, statement: BreakStatement, env: Environment) -> None:
        count = self._expect_int(self._evaluate(statement.count, env), "BREAK", statement.location)
        if count <= 0:
            raise ScriptRuntimeError("BREAK count must be > 0", location=statement.location, rule="BREAK")
        raise BreakSignal(count)

    def _exec_continue(self, statement: ContinueStatement, env: Environment) -> None:
        raise ContinueSignal()

    # Expressions

    def _evaluate(self, expression: Expression, env: Environment) -> Value:
        if isinstance(expression, Literal):
            return Value(expression.type, expression.value)
        if isinstance(expression, Identifier):
            found = env.get(expression.name)
            if found is None:
                raise ScriptRuntimeError(
                    f"Undefined identifier '{expression.name}'", location=expression.location, rule="IDENT"
                )
            return found
        if isinstance(expression, CallExpression):
            return self._call(expression, env)
        if isinstance(expression, IndexExpression):
            base, index_nodes = self._flatten_index(expression)
            tensor = self._evaluate(base, env)
            if tensor.type != TYPE_TNS:
                raise ScriptRuntimeError("Indexed access requires a tensor", location=expression.location, rule="INDEX")
            return tensor.value.data[self._cell_offset(tensor.value, index_nodes, env, expression.location, "INDEX")]
        if isinstance(expression, TensorLiteral):
            shape, cells = self._literal_cells(expression, env)
            return Value(TYPE_TNS, Tensor.from_cells(shape, cells))
        raise ScriptRuntimeError("Unsupported expression", location=expression.location)

    def _test(self, condition: Expression, env: Environment) -> bool:
        value = self._evaluate(condition, env)
        try:
            return truthy(value)
        except ScriptRuntimeError as err:
            err.location = condition.location
            raise

    def _literal_cells(self, literal: TensorLiteral, env: Environment) -> Tuple[List[int], List[Value]]:
        if not literal.items:
            raise ScriptRuntimeError("Tensor literal cannot be empty", location=literal.location, rule="TNS")
        cells: List[Value] = []
        inner: Optional[List[int]] = None
        for item in literal.items:
            if isinstance(item, TensorLiteral):
                shape, nested = self._literal_cells(item, env)
            else:
                shape, nested = [], [self._evaluate(item, env)]
            if inner is None:
                inner = shape
            elif inner != shape:
                raise ScriptRuntimeError("Inconsistent tensor shape", location=item.location, rule="TNS")
            cells.extend(nested)
        return [len(literal.items)] + (inner or []), cells

    def _flatten_index(self, expression: IndexExpression) -> Tuple[Expression, List[Expression]]:
        # t[1][2] and t[1, 2] address the same cell.
        chunks: List[List[Expression]] = []
        node: Expression = expression
        while isinstance(node, IndexExpression):
            chunks.append(node.indices)
            node = node.base
        return node, [index for chunk in reversed(chunks) for index in chunk]

    def _cell_offset(
        self,
        tensor: Tensor,
        index_nodes: List[Expression],
        env: Environment,
        location: SourceLocation,
        rule: str,
    ) -> int:
        indices = [self._expect_int(self._evaluate(node, env), rule, location) for node in index_nodes]
        if len(indices) != len(tensor.shape):
            raise ScriptRuntimeError("Incorrect number of tensor indices", location=location, rule=rule)
        offset = 0
        for index, dim, stride in zip(indices, tensor.shape, tensor.strides):
            if index == 0:
                raise ScriptRuntimeError("Tensor indices are 1-indexed", location=location, rule=rule)
            if index < 0:
                index += dim + 1
            if not 1 <= index <= dim:
                raise ScriptRuntimeError("Tensor index out of range", location=location, rule=rule)
            offset += (index - 1) * stride
        return offset

    def _expect_int(self, value: Value, rule: str, location: Optional[SourceLocation]) -> int:
        if value.type != TYPE_INT:
            raise ScriptRuntimeError(f"{rule} expects integer value", location=location, rule=rule)
        return value.value

    def _zero_value(self, function: Function, location: SourceLocation) -> Value:
        zeros = {TYPE_INT: 0, TYPE_FLT: 0.0, TYPE_STR: ""}
        if function.return_type not in zeros:
            raise ScriptRuntimeError(
                f"Function {function.name} must return a tensor value", location=location, rule=function.name
            )
        return Value(function.return_type, zeros[function.return_type])

    # Calls

    def _call(self, expression: CallExpression, env: Environment) -> Value:
        name, location = expression.name, expression.location
        nodes = [arg.expression for arg in expression.args]
        builtin = self.builtins.table.get(name)
        if builtin is not None and builtin.raw:
            if any(arg.name for arg in expression.args):
                raise ScriptRuntimeError(f"{name} does not accept keyword arguments", location=location, rule=name)
            return self.builtins.invoke(builtin, Call(name, self, [], nodes, env, location))

        positional: List[Value] = []
        keywords: Dict[str, Value] = {}
        for arg in expression.args:
            value = self._evaluate(arg.expression, env)
            if arg.name is None:
                positional.append(value)
            elif arg.name in keywords:
                raise ScriptRuntimeError(f"Duplicate keyword argument '{arg.name}'", location=location, rule=name)
            else:
                keywords[arg.name] = value

        function = self.functions.get(name)
        if function is not None:
            return self._call_function(function, positional, keywords, location)
        if builtin is None:
            raise ScriptRuntimeError(f"Unknown function '{name}'", location=location)
        if keywords:
            raise ScriptRuntimeError(f"{name} does not accept keyword arguments", location=location, rule=name)
        return self.builtins.invoke(builtin, Call(name, self, positional, nodes, env, location))

    def _bind_arguments(
        self,
        function: Function,
        positional: List[Value],
        keywords: Dict[str, Value],
        location: SourceLocation,
    ) -> Environment:
        params = function.params
        if len(positional) > len(params):
            raise ScriptRuntimeError(
                f"Function {function.name} expects at most {len(params)} positional arguments "
                f"but received {len(positional)}",
                location=location,
                rule=function.name,
            )
        scope = Environment(parent=function.closure)
        remaining = dict(keywords)
        for position, param in enumerate(params):
            if position < len(positional):
                value = positional[position]
            elif param.name in remaining:
                value = remaining.pop(param.name)
            elif param.default is not None:
                value = self._evaluate(param.default, scope)
            else:
                raise ScriptRuntimeError(
                    f"Missing required argument '{param.name}' for function {function.name}",
                    location=location,
                    rule=function.name,
                )
            if value.type != param.type:
                raise ScriptRuntimeError(
                    f"Argument for '{param.name}' expected {param.type} but got {value.type}",
                    location=location,
                    rule=function.name,
                )
            scope.values[param.name] = value
        if remaining:
            raise ScriptRuntimeError(
                f"Unexpected keyword arguments: {', '.join(sorted(remaining))}", location=location, rule=function.name
            )
        return scope

    def _call_function(
        self,
        function: Function,
        positional: List[Value],
        keywords: Dict[str, Value],
        location: SourceLocation,
    ) -> Value:
        scope = self._bind_arguments(function, positional, keywords, location)
        self.call_stack.append(function.name)
        try:
            self._run_block(function.body, scope)
        except ReturnSignal as signal:
            if signal.value.type != function.return_type:
                raise ScriptRuntimeError(
                    f"Function {function.name} must return {function.return_type} but got {signal.value.type}",
                    location=location,
                    rule=function.name,
                )
            return signal.value
        except BreakSignal as signal:
            raise ScriptRuntimeError(f"BREAK({signal.count}) escaped enclosing loops", location=location, rule="BREAK")
        except ContinueSignal:
            raise ScriptRuntimeError("CONTINUE used outside loop", location=location, rule="CONTINUE")
        finally:
            self.call_stack.pop()
        return self._zero_value(function, location)


@dataclass(frozen=True)
class StatementEnd:
    offset: int


@dataclass(frozen=True)
class StatementFailure:
    message: str
    offset: int


StatementResult = Union[StatementEnd, StatementFailure]


def execute_statement(source, offset: int, environment: Interpreter) -> StatementResult:
    """Parse and run exactly one statement starting at ``offset``.

    Returns the offset just past the statement's last token, or a failure
    carrying the diagnostic. Script errors never escape this call.
    """
    try:
        statement, end = environment.parse_statement(source, offset)
    except ScriptParseError as error:
        return StatementFailure(message=str(error), offset=offset)
    except RecursionError:
        return StatementFailure(message=f"Statement nests too deeply at offset {offset}", offset=offset)
    try:
        environment.execute(statement)
    except ScriptError as error:
        return StatementFailure(message=str(error), offset=offset)
    return StatementEnd(offset=end)
