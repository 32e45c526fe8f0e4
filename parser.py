from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, TypeVar, Union

from lexer import Lexer, ScriptParseError, Token

T = TypeVar("T")

DEFAULT_TYPE_NAMES = frozenset({"INT", "FLT", "STR", "TNS"})


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"


@dataclass
class Node:
    location: SourceLocation


class Statement(Node):
    pass


class Expression(Node):
    pass


@dataclass
class Block(Node):
    statements: List[Statement]


@dataclass
class Assignment(Statement):
    target: str
    expression: Expression
    declared_type: Optional[str]


@dataclass
class IndexAssignment(Statement):
    target: "IndexExpression"
    value: Expression


@dataclass
class ExpressionStatement(Statement):
    expression: Expression


@dataclass
class IfBranch:
    condition: Expression
    block: Block


@dataclass
class IfStatement(Statement):
    # IF followed by any ELSEIFs, in source order.
    branches: List[IfBranch]
    otherwise: Optional[Block]


@dataclass
class WhileStatement(Statement):
    condition: Expression
    block: Block


@dataclass
class ForStatement(Statement):
    counter: str
    limit: Expression
    block: Block


@dataclass
class Param:
    type: str
    name: str
    default: Optional[Expression]


@dataclass
class FuncDef(Statement):
    name: str
    params: List[Param]
    return_type: str
    body: Block


@dataclass
class ReturnStatement(Statement):
    expression: Optional[Expression]


@dataclass
class BreakStatement(Statement):
    count: Expression


@dataclass
class ContinueStatement(Statement):
    pass


@dataclass
class Literal(Expression):
    value: Union[int, float, str]
    type: str


@dataclass
class TensorLiteral(Expression):
    items: List[Expression]


@dataclass
class IndexExpression(Expression):
    base: Expression
    indices: List[Expression]


@dataclass
class Identifier(Expression):
    name: str


@dataclass
class CallArgument:
    name: Optional[str]
    expression: Expression


@dataclass
class CallExpression(Expression):
    name: str
    args: List[CallArgument]


class Parser:
    """Recursive-descent parser pulling tokens lazily from a :class:`Lexer`.

    ``parse_statement`` consumes exactly one statement; ``end_offset`` then
    points just past its last token. Tokens beyond what the grammar needs are
    never requested, so text after the statement is left untouched.
    """

    _KEYWORD_PARSERS = {
        "FUNC": "_parse_func",
        "IF": "_parse_if",
        "WHILE": "_parse_while",
        "FOR": "_parse_for",
        "RETURN": "_parse_return",
        "BREAK": "_parse_break",
        "CONTINUE": "_parse_continue",
    }

    def __init__(self, lexer: Lexer, *, type_names: Optional[Iterable[str]] = None):
        self.lexer = lexer
        self.filename = lexer.filename
        self.type_names = frozenset(type_names) if type_names is not None else DEFAULT_TYPE_NAMES
        self.tokens: List[Token] = []
        self.index = 0

    @property
    def end_offset(self) -> int:
        if self.index == 0:
            return self.lexer.index
        return self.tokens[self.index - 1].end

    def parse_statement(self) -> Statement:
        self._skip_newlines()
        if self._at("EOF"):
            raise self._error("Expected a statement", self._peek())
        return self._statement()

    # Statements

    def _statement(self) -> Statement:
        token = self._peek()
        method = self._KEYWORD_PARSERS.get(token.type)
        if method is not None:
            return getattr(self, method)()
        if token.type == "IDENT":
            following = self._lookahead(1).type
            if following == "COLON" and token.value in self.type_names:
                return self._parse_declaration()
            if following == "EQUALS":
                return self._parse_assignment(None)
            if following == "LBRACKET" and self._index_target_then_equals():
                return self._parse_index_assignment()
        expression = self._parse_expression()
        return ExpressionStatement(location=expression.location, expression=expression)

    def _parse_declaration(self) -> Assignment:
        type_name = self._expect_type()
        self._expect("COLON")
        return self._parse_assignment(type_name)

    def _parse_assignment(self, declared_type: Optional[str]) -> Assignment:
        name = self._expect("IDENT")
        self._expect("EQUALS")
        return Assignment(
            location=self._location(name),
            target=name.value,
            expression=self._parse_expression(),
            declared_type=declared_type,
        )

    def _parse_index_assignment(self) -> IndexAssignment:
        target = self._parse_expression()
        if not isinstance(target, IndexExpression):
            raise self._error("Expected '[' in indexed assignment", self._peek())
        equals = self._expect("EQUALS")
        return IndexAssignment(location=self._location(equals), target=target, value=self._parse_expression())

    def _parse_func(self) -> FuncDef:
        keyword = self._expect("FUNC")
        name = self._expect("IDENT")
        self._expect("LPAREN")
        params = self._parse_delimited("RPAREN", self._parse_param)
        seen_default = False
        for param in params:
            if param.default is not None:
                seen_default = True
            elif seen_default:
                raise ScriptParseError(
                    f"Positional parameter '{param.name}' cannot follow parameter with default at {self._location(name)}"
                )
        self._expect("COLON")
        return_type = self._expect_type()
        return FuncDef(
            location=self._location(keyword),
            name=name.value,
            params=params,
            return_type=return_type,
            body=self._parse_block(),
        )

    def _parse_param(self) -> Param:
        type_name = self._expect_type()
        self._expect("COLON")
        name = self._expect("IDENT")
        default = self._parse_expression() if self._accept("EQUALS") else None
        return Param(type=type_name, name=name.value, default=default)

    def _parse_if(self) -> IfStatement:
        keyword = self._expect("IF")
        branches = [IfBranch(condition=self._parse_condition(), block=self._parse_block())]
        while self._accept("ELSEIF"):
            branches.append(IfBranch(condition=self._parse_condition(), block=self._parse_block()))
        otherwise = self._parse_block() if self._accept("ELSE") else None
        return IfStatement(location=self._location(keyword), branches=branches, otherwise=otherwise)

    def _parse_while(self) -> WhileStatement:
        keyword = self._expect("WHILE")
        condition = self._parse_condition()
        return WhileStatement(location=self._location(keyword), condition=condition, block=self._parse_block())

    def _parse_for(self) -> ForStatement:
        keyword = self._expect("FOR")
        self._expect("LPAREN")
        counter = self._expect("IDENT")
        self._expect("COMMA")
        limit = self._parse_expression()
        self._expect("RPAREN")
        return ForStatement(
            location=self._location(keyword), counter=counter.value, limit=limit, block=self._parse_block()
        )

    def _parse_return(self) -> ReturnStatement:
        keyword = self._expect("RETURN")
        self._expect("LPAREN")
        expression = None if self._at("RPAREN") else self._parse_expression()
        self._expect("RPAREN")
        return ReturnStatement(location=self._location(keyword), expression=expression)

    def _parse_break(self) -> BreakStatement:
        keyword = self._expect("BREAK")
        return BreakStatement(location=self._location(keyword), count=self._parse_condition())

    def _parse_continue(self) -> ContinueStatement:
        keyword = self._expect("CONTINUE")
        self._expect("LPAREN")
        self._expect("RPAREN")
        return ContinueStatement(location=self._location(keyword))

    def _parse_block(self) -> Block:
        if not self._at("LBRACE"):
            token = self._peek()
            raise self._error(f"Expected '{{' to start block but found {token.type}", token)
        brace = self._expect("LBRACE")
        statements: List[Statement] = []
        while True:
            self._skip_newlines()
            if self._accept("RBRACE"):
                return Block(location=self._location(brace), statements=statements)
            if self._at("EOF"):
                raise self._error("Unexpected end of input in block", self._peek())
            statements.append(self._statement())

    # Expressions

    def _parse_condition(self) -> Expression:
        self._expect("LPAREN")
        expression = self._parse_expression()
        self._expect("RPAREN")
        return expression

    def _parse_expression(self) -> Expression:
        expression = self._parse_primary()
        while self._at("LBRACKET"):
            bracket = self._expect("LBRACKET")
            indices = self._parse_delimited("RBRACKET", self._parse_expression)
            expression = IndexExpression(location=self._location(bracket), base=expression, indices=indices)
        return expression

    def _parse_primary(self) -> Expression:
        token = self._peek()
        if token.type == "NUMBER":
            self.index += 1
            return Literal(location=self._location(token), value=int(token.value), type="INT")
        if token.type == "FLOAT":
            self.index += 1
            return Literal(location=self._location(token), value=float(token.value), type="FLT")
        if token.type == "STRING":
            self.index += 1
            return Literal(location=self._location(token), value=token.value, type="STR")
        if token.type == "LBRACKET":
            self.index += 1
            items = self._parse_delimited("RBRACKET", self._parse_expression)
            return TensorLiteral(location=self._location(token), items=items)
        if token.type == "LPAREN":
            return self._parse_condition()
        if token.type == "IDENT":
            self.index += 1
            if not self._accept("LPAREN"):
                return Identifier(location=self._location(token), name=token.value)
            args = self._parse_delimited("RPAREN", self._parse_argument)
            seen_keyword = False
            for arg in args:
                if arg.name is not None:
                    seen_keyword = True
                elif seen_keyword:
                    raise ScriptParseError(
                        f"Positional argument cannot follow keyword argument at {arg.expression.location}"
                    )
            return CallExpression(location=self._location(token), name=token.value, args=args)
        raise self._error(f"Unexpected token {token.type} in expression", token)

    def _parse_argument(self) -> CallArgument:
        if self._at("IDENT") and self._lookahead(1).type == "EQUALS":
            name = self._expect("IDENT").value
            self._expect("EQUALS")
            return CallArgument(name=name, expression=self._parse_expression())
        return CallArgument(name=None, expression=self._parse_expression())

    def _parse_delimited(self, closer: str, parse_item: Callable[[], T]) -> List[T]:
        """Parse ``item (, item)*`` up to and including ``closer``."""
        items: List[T] = []
        if not self._accept(closer):
            items.append(parse_item())
            while self._accept("COMMA"):
                items.append(parse_item())
            self._expect(closer)
        return items

    def _index_target_then_equals(self) -> bool:
        # Scan past balanced brackets after the name: a[1][2] = ...
        position = 1
        while self._lookahead(position).type == "LBRACKET":
            depth = 0
            while True:
                token_type = self._lookahead(position).type
                position += 1
                if token_type == "EOF":
                    return False
                if token_type == "LBRACKET":
                    depth += 1
                elif token_type == "RBRACKET":
                    depth -= 1
                    if depth == 0:
                        break
        return self._lookahead(position).type == "EQUALS"

    # Token access

    def _lookahead(self, distance: int) -> Token:
        position = self.index + distance
        tokens = self.tokens
        while len(tokens) <= position:
            if tokens and tokens[-1].type == "EOF":
                return tokens[-1]
            tokens.append(self.lexer.next_token())
        return tokens[position]

    def _peek(self) -> Token:
        return self._lookahead(0)

    def _at(self, token_type: str) -> bool:
        return self._peek().type == token_type

    def _accept(self, token_type: str) -> bool:
        if self._at(token_type):
            self.index += 1
            return True
        return False

    def _expect(self, token_type: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise self._error(f"Expected token {token_type} but found {token.type}", token)
        self.index += 1
        return token

    def _expect_type(self) -> str:
        token = self._expect("IDENT")
        if token.value not in self.type_names:
            raise self._error(f"Unknown type '{token.value}'", token)
        return token.value

    def _skip_newlines(self) -> None:
        while self._accept("NEWLINE"):
            pass

    def _location(self, token: Token) -> SourceLocation:
        return SourceLocation(file=self.filename, line=token.line, column=token.column)

    def _error(self, message: str, token: Token) -> ScriptParseError:
        return ScriptParseError(f"{message} at {self._location(token)}")
