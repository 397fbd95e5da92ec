import pytest

from errors import ParseError
from lexer import Lexer
from memory import CType
from parser import (
    AssignmentExpression,
    BinaryExpression,
    CallExpression,
    CastExpression,
    ConditionalExpression,
    Declaration,
    ExpressionStatement,
    ForStatement,
    IfStatement,
    Literal,
    Parser,
    ReturnStatement,
    SizeofExpression,
    StringLiteral,
    SwitchStatement,
)


def parse(source: str):
    return Parser(Lexer(source).tokenize(), "<test>", source.splitlines()).parse()


def parse_body(body: str):
    return parse("int main() {\n" + body + "\n}").body.statements


def parse_expression(text: str):
    (statement,) = parse_body(text + ";")
    assert isinstance(statement, ExpressionStatement)
    return statement.expression


def test_minimal_program():
    program = parse("#include <stdio.h>\nint main(void) { return 0; }")
    assert program.return_type == "int"
    (statement,) = program.body.statements
    assert isinstance(statement, ReturnStatement)
    assert statement.expression == Literal(location=statement.expression.location, value=0, literal_type="INT")


def test_void_main_is_accepted():
    assert parse("void main() { }").return_type == "void"


def test_precedence_and_associativity():
    expr = parse_expression("1 + 2 * 3 - 4")
    assert isinstance(expr, BinaryExpression) and expr.op == "-"
    assert expr.left.op == "+"
    assert expr.left.right.op == "*"

    expr = parse_expression("a = b = 3")
    assert isinstance(expr, AssignmentExpression)
    assert isinstance(expr.value, AssignmentExpression)


def test_declarations_with_pointers_and_arrays():
    (decl,) = parse_body("int x = 1, *p, arr[3] = {1, 2, 3};")
    assert isinstance(decl, Declaration)
    x, p, arr = decl.declarators
    assert x.ctype == CType("int") and not x.is_array
    assert p.ctype == CType("int", 1)
    assert arr.is_array and len(arr.initializer.items) == 3


def test_type_specifier_collapse():
    (decl,) = parse_body("unsigned long n;")
    assert decl.declarators[0].ctype == CType("int")
    (decl,) = parse_body("const char *s = \"hi\";")
    assert decl.declarators[0].ctype == CType("char", 1)


def test_adjacent_strings_are_concatenated_and_collected():
    program = parse('int main() { printf("ab" "cd"); printf("x"); printf("abcd"); }')
    call = program.body.statements[0].expression
    assert isinstance(call, CallExpression)
    assert call.args[0] == StringLiteral(location=call.args[0].location, value="abcd")
    assert program.strings == ("abcd", "x")


def test_else_if_chain_is_flattened():
    (statement,) = parse_body("if (a) x = 1; else if (b) x = 2; else if (c) x = 3; else x = 4;")
    assert isinstance(statement, IfStatement)
    assert len(statement.elifs) == 2
    assert statement.else_branch is not None


def test_for_with_declaration_and_empty_parts():
    (loop,) = parse_body("for (int i = 0; i < 3; i++) ;")
    assert isinstance(loop, ForStatement)
    assert isinstance(loop.init, Declaration)
    (loop,) = parse_body("for (;;) break;")
    assert loop.init is None and loop.condition is None and loop.step is None


def test_switch_clauses():
    (statement,) = parse_body("switch (x) { case 1: case 2: y = 1; break; default: y = 0; }")
    assert isinstance(statement, SwitchStatement)
    assert [len(clause.statements) for clause in statement.clauses] == [0, 2, 1]
    assert statement.clauses[-1].value is None


def test_cast_and_sizeof():
    expr = parse_expression("(double) n")
    assert isinstance(expr, CastExpression) and expr.ctype == CType("double")
    expr = parse_expression("sizeof(int)")
    assert isinstance(expr, SizeofExpression) and expr.ctype == CType("int")
    expr = parse_expression("sizeof arr")
    assert isinstance(expr, SizeofExpression) and expr.operand is not None


def test_predefined_constants():
    assert parse_expression("NULL").literal_type == "PTR"
    assert parse_expression("RAND_MAX").value == 32767


def test_locations_carry_source_text():
    (statement,) = parse_body("    x = 5;")
    location = statement.location
    assert (location.line, location.column, location.statement) == (2, 5, "x = 5;")


@pytest.mark.parametrize(
    "source, message",
    [
        ("int main() { int x = 1 }", "expected ';' but found '}' at line 1, column 24"),
        ("int main() { x = ; }", "expected an expression but found ';'"),
        ("int main() { return 0;", "expected '}' but found end of input"),
        ("int foo() { return 0; }", "expected 'main' but found 'foo'"),
        ("int main() { } int other;", "only a single 'main' function is supported"),
        ("int main() { struct point p; }", "structs are not supported"),
        ("int main() { goto end; }", "goto is not supported"),
        ("int main() { int m[2][2]; }", "multi-dimensional arrays are not supported"),
        ("int main() { 3 = x; }", "expression is not assignable"),
        ("int main() { case 1: ; }", "'case' label not within a switch statement"),
        ("int main() { int a[]; }", "array size missing in declaration of 'a'"),
        ("int main() { void v; }", "variable 'v' declared void"),
        ("char *main() { }", "'main' must return int"),
        ("", "expected function 'main'"),
    ],
)
def test_parse_errors(source, message):
    with pytest.raises(ParseError) as excinfo:
        parse(source)
    assert message in excinfo.value.message
    assert excinfo.value.location is not None


def test_conditional_is_right_associative():
    expr = parse_expression("a ? b : c ? d : e")
    assert isinstance(expr, ConditionalExpression)
    assert expr.condition.name == "a" and expr.then_expr.name == "b"
    nested = expr.else_expr
    assert isinstance(nested, ConditionalExpression)
    assert (nested.condition.name, nested.then_expr.name, nested.else_expr.name) == ("c", "d", "e")


def test_moderate_nesting_is_accepted():
    expr = parse_expression("x = " + "(" * 20 + "1" + ")" * 20)
    assert expr.value == Literal(location=expr.value.location, value=1, literal_type="INT")
    (block,) = parse_body("{" * 20 + "}" * 20)
    assert block.statements[0].statements[0].statements


@pytest.mark.parametrize(
    "body",
    [
        "x = " + "(" * 70 + "1" + ")" * 70 + ";",
        "x = " + "- " * 70 + "1;",
        "{" * 70 + "}" * 70,
        "if (1) " * 70 + ";",
    ],
)
def test_excessive_nesting_is_a_parse_error(body):
    with pytest.raises(ParseError, match="expression or block nested too deeply at line 2, column"):
        parse_body(body)
