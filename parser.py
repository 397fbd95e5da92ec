from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from errors import ParseError
from lexer import Token
from memory import TYPE_CHR, TYPE_FLT, TYPE_INT, TYPE_PTR, CType


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass(frozen=True)
class Node:
    location: SourceLocation


class Statement(Node):
    pass


class Expression(Node):
    pass


@dataclass(frozen=True)
class Block(Statement):
    statements: Tuple[Statement, ...]


@dataclass(frozen=True)
class Program(Node):
    body: Block
    return_type: str
    strings: Tuple[str, ...]


@dataclass(frozen=True)
class InitializerList(Node):
    items: Tuple[Expression, ...]


@dataclass(frozen=True)
class Declarator(Node):
    name: str
    ctype: CType
    is_array: bool
    array_size: Optional[Expression]
    initializer: Optional[Union[Expression, InitializerList]]


@dataclass(frozen=True)
class Declaration(Statement):
    declarators: Tuple[Declarator, ...]


@dataclass(frozen=True)
class ExpressionStatement(Statement):
    expression: Expression


@dataclass(frozen=True)
class EmptyStatement(Statement):
    pass


@dataclass(frozen=True)
class IfBranch:
    condition: Expression
    body: Statement


@dataclass(frozen=True)
class IfStatement(Statement):
    condition: Expression
    then_branch: Statement
    elifs: Tuple[IfBranch, ...]
    else_branch: Optional[Statement]


@dataclass(frozen=True)
class WhileStatement(Statement):
    condition: Expression
    body: Statement


@dataclass(frozen=True)
class DoWhileStatement(Statement):
    body: Statement
    condition: Expression


@dataclass(frozen=True)
class ForStatement(Statement):
    init: Optional[Statement]
    condition: Optional[Expression]
    step: Optional[Expression]
    body: Statement


@dataclass(frozen=True)
class SwitchClause(Node):
    value: Optional[Expression]  # None for default
    statements: Tuple[Statement, ...]


@dataclass(frozen=True)
class SwitchStatement(Statement):
    subject: Expression
    clauses: Tuple[SwitchClause, ...]


@dataclass(frozen=True)
class BreakStatement(Statement):
    pass


@dataclass(frozen=True)
class ContinueStatement(Statement):
    pass


@dataclass(frozen=True)
class ReturnStatement(Statement):
    expression: Optional[Expression]


@dataclass(frozen=True)
class Literal(Expression):
    value: Union[int, float, None]
    literal_type: str


@dataclass(frozen=True)
class StringLiteral(Expression):
    value: str


@dataclass(frozen=True)
class Identifier(Expression):
    name: str


@dataclass(frozen=True)
class UnaryExpression(Expression):
    op: str
    operand: Expression


@dataclass(frozen=True)
class PostfixExpression(Expression):
    op: str
    operand: Expression


@dataclass(frozen=True)
class BinaryExpression(Expression):
    op: str
    left: Expression
    right: Expression


@dataclass(frozen=True)
class ConditionalExpression(Expression):
    condition: Expression
    then_expr: Expression
    else_expr: Expression


@dataclass(frozen=True)
class AssignmentExpression(Expression):
    op: str
    target: Expression
    value: Expression


@dataclass(frozen=True)
class CommaExpression(Expression):
    left: Expression
    right: Expression


@dataclass(frozen=True)
class IndexExpression(Expression):
    base: Expression
    index: Expression


@dataclass(frozen=True)
class CallExpression(Expression):
    name: str
    args: Tuple[Expression, ...]


@dataclass(frozen=True)
class CastExpression(Expression):
    ctype: CType
    operand: Expression


@dataclass(frozen=True)
class SizeofExpression(Expression):
    ctype: Optional[CType]
    operand: Optional[Expression]


TYPE_KEYWORDS = {"int", "float", "double", "char", "void", "short", "long", "signed", "unsigned", "const"}
UNSUPPORTED_KEYWORDS = {
    "struct": "structs are not supported",
    "union": "unions are not supported",
    "enum": "enums are not supported",
    "typedef": "typedef is not supported",
    "goto": "goto is not supported",
    "static": "storage-class specifiers are not supported",
    "extern": "storage-class specifiers are not supported",
}
ASSIGNMENT_OPS = {"=", "+=", "-=", "*=", "/=", "%=", "&=", "|=", "^=", "<<=", ">>="}
BINARY_LEVELS: Tuple[Tuple[str, ...], ...] = (
    ("||",),
    ("&&",),
    ("|",),
    ("^",),
    ("&",),
    ("==", "!="),
    ("<", ">", "<=", ">="),
    ("<<", ">>"),
    ("+", "-"),
    ("*", "/", "%"),
)
PREDEFINED_CONSTANTS: Dict[str, Tuple[Optional[int], str]] = {
    "NULL": (None, TYPE_PTR),
    "RAND_MAX": (32767, TYPE_INT),
}
# Nesting limit counted over statements, conditionals and unary operands.
MAX_NESTING_DEPTH = 64


def _describe(token: Token) -> str:
    if token.type == "EOF":
        return "end of input"
    if token.type == "STRING":
        return f'"{token.value}"'
    if token.type == "CHAR":
        return "character literal"
    return f"'{token.value}'"


class Parser:
    def __init__(self, tokens: List[Token], filename: str, source_lines: List[str]):
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines
        self.index = 0
        self.depth = 0
        self._strings: Dict[str, None] = {}

    def parse(self) -> Program:
        start = self._peek()
        if start.type == "EOF":
            raise self._error("expected function 'main'", start)
        return_type = self._parse_type_specifiers()
        if return_type not in ("int", "void") or self._peek().type == "*":
            raise ParseError(
                f"'main' must return int at line {start.line}, column {start.column}",
                location=self._location_from_token(start),
                rule="PARSE",
            )
        name = self._peek()
        if name.type != "IDENT" or name.value != "main":
            raise self._error("expected 'main'", name)
        self.index += 1
        self._consume("(")
        if self._peek().type == "void" and self._peek_next().type == ")":
            self.index += 1
        self._consume(")")
        body = self._parse_block()
        trailing = self._peek()
        if trailing.type != "EOF":
            raise self._error("expected end of input (only a single 'main' function is supported)", trailing)
        return Program(
            location=self._location_from_token(start),
            body=body,
            return_type=return_type,
            strings=tuple(self._strings),
        )

    # ---- statements ----

    def _parse_block(self) -> Block:
        start = self._consume("{")
        statements: List[Statement] = []
        while self._peek().type != "}":
            if self._peek().type == "EOF":
                raise self._error("expected '}'", self._peek())
            statements.append(self._parse_statement())
        self._consume("}")
        return Block(location=self._location_from_token(start), statements=tuple(statements))

    def _parse_statement(self) -> Statement:
        self._descend(self._peek())
        try:
            return self._parse_statement_kind()
        finally:
            self.depth -= 1

    def _parse_statement_kind(self) -> Statement:
        token = self._peek()
        kind = token.type
        if kind == "{":
            return self._parse_block()
        if kind in TYPE_KEYWORDS:
            return self._parse_declaration()
        if kind == "if":
            return self._parse_if()
        if kind == "while":
            return self._parse_while()
        if kind == "do":
            return self._parse_do_while()
        if kind == "for":
            return self._parse_for()
        if kind == "switch":
            return self._parse_switch()
        if kind == "break":
            self.index += 1
            self._consume(";")
            return BreakStatement(location=self._location_from_token(token))
        if kind == "continue":
            self.index += 1
            self._consume(";")
            return ContinueStatement(location=self._location_from_token(token))
        if kind == "return":
            self.index += 1
            expression: Optional[Expression] = None
            if self._peek().type != ";":
                expression = self._parse_expression()
            self._consume(";")
            return ReturnStatement(location=self._location_from_token(token), expression=expression)
        if kind == ";":
            self.index += 1
            return EmptyStatement(location=self._location_from_token(token))
        if kind in ("case", "default"):
            raise self._error(f"'{kind}' label not within a switch statement", token, found=False)
        if kind in UNSUPPORTED_KEYWORDS:
            raise self._error(UNSUPPORTED_KEYWORDS[kind], token, found=False)
        expr = self._parse_expression()
        self._consume(";")
        return ExpressionStatement(location=self._location_from_token(token), expression=expr)

    def _parse_type_specifiers(self) -> str:
        seen: List[str] = []
        first = self._peek()
        while self._peek().type in TYPE_KEYWORDS:
            seen.append(self._peek().type)
            self.index += 1
        if self._peek().type in UNSUPPORTED_KEYWORDS:
            raise self._error(UNSUPPORTED_KEYWORDS[self._peek().type], self._peek(), found=False)
        specifiers = [s for s in seen if s != "const"]
        if not specifiers:
            raise self._error("expected a type name", first if not seen else self._peek())
        if "double" in specifiers:
            return "double"
        for base in ("float", "char", "void"):
            if base in specifiers:
                if len(set(specifiers) - {"signed", "unsigned"}) > 1 or (base != "char" and len(specifiers) > 1):
                    raise self._error("invalid combination of type specifiers", first, found=False)
                return base
        # short/long/signed/unsigned collapse to int.
        return "int"

    def _parse_type_name(self) -> CType:
        base = self._parse_type_specifiers()
        depth = 0
        while self._match("*"):
            depth += 1
        if base == "void" and depth == 0:
            raise self._error("'void' is not a valid type here", self._peek(), found=False)
        return CType(base, depth)

    def _parse_declaration(self) -> Declaration:
        start = self._peek()
        base = self._parse_type_specifiers()
        declarators: List[Declarator] = []
        while True:
            depth = 0
            while self._match("*"):
                while self._match("const"):
                    pass
                depth += 1
            name = self._consume("IDENT")
            if base == "void" and depth == 0:
                raise self._error(f"variable '{name.value}' declared void", name, found=False)
            if base == "void":
                raise self._error("void pointers are not supported", name, found=False)
            is_array = False
            size: Optional[Expression] = None
            if self._match("["):
                is_array = True
                if self._peek().type != "]":
                    size = self._parse_conditional()
                self._consume("]")
                if self._peek().type == "[":
                    raise self._error("multi-dimensional arrays are not supported", self._peek(), found=False)
            initializer: Optional[Union[Expression, InitializerList]] = None
            if self._match("="):
                if self._peek().type == "{":
                    initializer = self._parse_initializer_list()
                else:
                    initializer = self._parse_assignment()
            if is_array and size is None and initializer is None:
                raise self._error(f"array size missing in declaration of '{name.value}'", name, found=False)
            declarators.append(
                Declarator(
                    location=self._location_from_token(name),
                    name=name.value,
                    ctype=CType(base, depth),
                    is_array=is_array,
                    array_size=size,
                    initializer=initializer,
                )
            )
            if not self._match(","):
                break
        self._consume(";")
        return Declaration(location=self._location_from_token(start), declarators=tuple(declarators))

    def _parse_initializer_list(self) -> InitializerList:
        start = self._consume("{")
        items: List[Expression] = []
        while self._peek().type != "}":
            items.append(self._parse_assignment())
            if not self._match(","):
                break
        self._consume("}")
        return InitializerList(location=self._location_from_token(start), items=tuple(items))

    def _parse_if(self) -> IfStatement:
        keyword = self._consume("if")
        condition = self._parse_parenthesized_expression()
        then_branch = self._parse_statement()
        elifs: List[IfBranch] = []
        else_branch: Optional[Statement] = None
        while self._peek().type == "else":
            self.index += 1
            if self._match("if"):
                cond = self._parse_parenthesized_expression()
                elifs.append(IfBranch(condition=cond, body=self._parse_statement()))
                continue
            else_branch = self._parse_statement()
            break
        return IfStatement(
            location=self._location_from_token(keyword),
            condition=condition,
            then_branch=then_branch,
            elifs=tuple(elifs),
            else_branch=else_branch,
        )

    def _parse_while(self) -> WhileStatement:
        keyword = self._consume("while")
        condition = self._parse_parenthesized_expression()
        body = self._parse_statement()
        return WhileStatement(location=self._location_from_token(keyword), condition=condition, body=body)

    def _parse_do_while(self) -> DoWhileStatement:
        keyword = self._consume("do")
        body = self._parse_statement()
        self._consume("while")
        condition = self._parse_parenthesized_expression()
        self._consume(";")
        return DoWhileStatement(location=self._location_from_token(keyword), body=body, condition=condition)

    def _parse_for(self) -> ForStatement:
        keyword = self._consume("for")
        self._consume("(")
        init: Optional[Statement] = None
        init_token = self._peek()
        if init_token.type in TYPE_KEYWORDS:
            init = self._parse_declaration()
        elif init_token.type != ";":
            init = ExpressionStatement(location=self._location_from_token(init_token), expression=self._parse_expression())
            self._consume(";")
        else:
            self._consume(";")
        condition: Optional[Expression] = None
        if self._peek().type != ";":
            condition = self._parse_expression()
        self._consume(";")
        step: Optional[Expression] = None
        if self._peek().type != ")":
            step = self._parse_expression()
        self._consume(")")
        body = self._parse_statement()
        return ForStatement(
            location=self._location_from_token(keyword),
            init=init,
            condition=condition,
            step=step,
            body=body,
        )

    def _parse_switch(self) -> SwitchStatement:
        keyword = self._consume("switch")
        subject = self._parse_parenthesized_expression()
        self._consume("{")
        clauses: List[Tuple[Token, Optional[Expression], List[Statement]]] = []
        has_default = False
        while self._peek().type != "}":
            token = self._peek()
            if token.type == "case":
                self.index += 1
                value = self._parse_conditional()
                self._consume(":")
                clauses.append((token, value, []))
                continue
            if token.type == "default":
                if has_default:
                    raise self._error("multiple default labels in one switch", token, found=False)
                has_default = True
                self.index += 1
                self._consume(":")
                clauses.append((token, None, []))
                continue
            if not clauses:
                raise self._error("expected 'case' or 'default'", token)
            clauses[-1][2].append(self._parse_statement())
        self._consume("}")
        return SwitchStatement(
            location=self._location_from_token(keyword),
            subject=subject,
            clauses=tuple(
                SwitchClause(location=self._location_from_token(tok), value=value, statements=tuple(body))
                for tok, value, body in clauses
            ),
        )

    # ---- expressions ----

    def _parse_parenthesized_expression(self) -> Expression:
        self._consume("(")
        expr = self._parse_expression()
        self._consume(")")
        return expr

    def _parse_expression(self) -> Expression:
        expr = self._parse_assignment()
        while self._peek().type == ",":
            token = self._consume(",")
            right = self._parse_assignment()
            expr = CommaExpression(location=self._location_from_token(token), left=expr, right=right)
        return expr

    def _parse_assignment(self) -> Expression:
        target = self._parse_conditional()
        token = self._peek()
        if token.type in ASSIGNMENT_OPS:
            if not self._is_lvalue(target):
                raise self._error("expression is not assignable", token, found=False)
            self.index += 1
            value = self._parse_assignment()
            return AssignmentExpression(location=self._location_from_token(token), op=token.type, target=target, value=value)
        return target

    def _parse_conditional(self) -> Expression:
        self._descend(self._peek())
        try:
            return self._parse_conditional_chain()
        finally:
            self.depth -= 1

    def _parse_conditional_chain(self) -> Expression:
        condition = self._parse_binary(0)
        if self._peek().type == "?":
            token = self._consume("?")
            then_expr = self._parse_expression()
            self._consume(":")
            else_expr = self._parse_conditional()
            return ConditionalExpression(
                location=self._location_from_token(token),
                condition=condition,
                then_expr=then_expr,
                else_expr=else_expr,
            )
        return condition

    def _parse_binary(self, level: int) -> Expression:
        if level == len(BINARY_LEVELS):
            return self._parse_unary()
        operators = BINARY_LEVELS[level]
        left = self._parse_binary(level + 1)
        while self._peek().type in operators:
            token = self._peek()
            self.index += 1
            right = self._parse_binary(level + 1)
            left = BinaryExpression(location=self._location_from_token(token), op=token.type, left=left, right=right)
        return left

    def _parse_unary(self) -> Expression:
        self._descend(self._peek())
        try:
            return self._parse_unary_operand()
        finally:
            self.depth -= 1

    def _parse_unary_operand(self) -> Expression:
        token = self._peek()
        kind = token.type
        if kind in ("++", "--"):
            self.index += 1
            operand = self._parse_unary()
            if not self._is_lvalue(operand):
                raise self._error(f"operand of '{kind}' is not assignable", token, found=False)
            return UnaryExpression(location=self._location_from_token(token), op=kind, operand=operand)
        if kind in ("-", "+", "!", "~", "&", "*"):
            self.index += 1
            operand = self._parse_unary()
            return UnaryExpression(location=self._location_from_token(token), op=kind, operand=operand)
        if kind == "sizeof":
            self.index += 1
            if self._peek().type == "(" and self._peek_next().type in TYPE_KEYWORDS:
                self._consume("(")
                ctype = self._parse_type_name()
                self._consume(")")
                return SizeofExpression(location=self._location_from_token(token), ctype=ctype, operand=None)
            operand = self._parse_unary()
            return SizeofExpression(location=self._location_from_token(token), ctype=None, operand=operand)
        if kind == "(" and self._peek_next().type in TYPE_KEYWORDS:
            self._consume("(")
            ctype = self._parse_type_name()
            self._consume(")")
            operand = self._parse_unary()
            return CastExpression(location=self._location_from_token(token), ctype=ctype, operand=operand)
        return self._parse_postfix()

    def _parse_postfix(self) -> Expression:
        expr = self._parse_primary()
        while True:
            token = self._peek()
            if token.type == "[":
                self.index += 1
                index = self._parse_expression()
                self._consume("]")
                expr = IndexExpression(location=self._location_from_token(token), base=expr, index=index)
                continue
            if token.type == "(":
                if not isinstance(expr, Identifier):
                    raise self._error("called object is not a function", token, found=False)
                self.index += 1
                args: List[Expression] = []
                if self._peek().type != ")":
                    while True:
                        args.append(self._parse_assignment())
                        if not self._match(","):
                            break
                self._consume(")")
                expr = CallExpression(location=expr.location, name=expr.name, args=tuple(args))
                continue
            if token.type in ("++", "--"):
                if not self._is_lvalue(expr):
                    raise self._error(f"operand of '{token.type}' is not assignable", token, found=False)
                self.index += 1
                expr = PostfixExpression(location=self._location_from_token(token), op=token.type, operand=expr)
                continue
            if token.type in (".", "->"):
                raise self._error("member access is not supported (structs are not supported)", token, found=False)
            return expr

    def _parse_primary(self) -> Expression:
        token = self._peek()
        location = self._location_from_token(token)
        if token.type == "INT":
            self.index += 1
            return Literal(location=location, value=token.value, literal_type=TYPE_INT)
        if token.type == "FLOAT":
            self.index += 1
            return Literal(location=location, value=token.value, literal_type=TYPE_FLT)
        if token.type == "CHAR":
            self.index += 1
            return Literal(location=location, value=token.value, literal_type=TYPE_CHR)
        if token.type == "STRING":
            parts: List[str] = []
            while self._peek().type == "STRING":
                parts.append(self._peek().value)
                self.index += 1
            text = "".join(parts)
            self._strings.setdefault(text, None)
            return StringLiteral(location=location, value=text)
        if token.type == "IDENT":
            self.index += 1
            if token.value in PREDEFINED_CONSTANTS:
                value, literal_type = PREDEFINED_CONSTANTS[token.value]
                return Literal(location=location, value=value, literal_type=literal_type)
            return Identifier(location=location, name=token.value)
        if token.type == "(":
            return self._parse_parenthesized_expression()
        raise self._error("expected an expression", token)

    # ---- helpers ----

    def _is_lvalue(self, expr: Expression) -> bool:
        if isinstance(expr, (Identifier, IndexExpression)):
            return True
        return isinstance(expr, UnaryExpression) and expr.op == "*"

    def _error(self, expected: str, token: Token, *, found: bool = True) -> ParseError:
        where = f"at line {token.line}, column {token.column}"
        if found:
            message = f"{expected} but found {_describe(token)} {where}"
        else:
            message = f"{expected} {where}"
        return ParseError(message, location=self._location_from_token(token), rule="PARSE")

    def _descend(self, token: Token) -> None:
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            raise self._error("expression or block nested too deeply", token, found=False)

    def _consume(self, token_type: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            expected = "an identifier" if token_type == "IDENT" else f"'{token_type}'"
            raise self._error(f"expected {expected}", token)
        self.index += 1
        return token

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self.index += 1
            return True
        return False

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _peek_next(self) -> Token:
        if self.index + 1 < len(self.tokens):
            return self.tokens[self.index + 1]
        return self.tokens[-1]

    def _location_from_token(self, token: Token) -> SourceLocation:
        line_index = token.line - 1
        statement = ""
        if 0 <= line_index < len(self.source_lines):
            statement = self.source_lines[line_index].strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)
