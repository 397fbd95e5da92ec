import pytest

from errors import LexError
from lexer import Lexer


def kinds(text):
    return [token.type for token in Lexer(text).tokenize()]


def values(text):
    return [token.value for token in Lexer(text).tokenize()[:-1]]


def test_keywords_identifiers_and_operators():
    assert kinds("int x = y <<= 2;") == ["int", "IDENT", "=", "IDENT", "<<=", "INT", ";", "EOF"]
    assert kinds("a->b") == ["IDENT", "->", "IDENT", "EOF"]
    assert kinds("i++ + ++j") == ["IDENT", "++", "+", "++", "IDENT", "EOF"]


def test_numeric_literals():
    assert values("42 0x1F 017 10u 7L") == [42, 31, 15, 10, 7]
    tokens = Lexer("3.5 .25 1e3 2.0f").tokenize()
    assert [t.type for t in tokens[:-1]] == ["FLOAT"] * 4
    assert [t.value for t in tokens[:-1]] == [3.5, 0.25, 1000.0, 2.0]


def test_char_and_string_escapes():
    assert values(r"'a' '\n' '\0' '\x41' '\101'") == [97, 10, 0, 65, 65]
    assert values(r'"tab\there\"quoted\""') == ['tab\there"quoted"']


def test_comments_and_include_are_skipped():
    source = "#include <stdio.h>\n// line comment\nint /* block\ncomment */ x;\n"
    tokens = Lexer(source).tokenize()
    assert [t.type for t in tokens] == ["int", "IDENT", ";", "EOF"]
    assert tokens[1].line == 4


def test_line_and_column_tracking():
    tokens = Lexer("int x;\n  return 1;").tokenize()
    ret = tokens[3]
    assert (ret.type, ret.line, ret.column) == ("return", 2, 3)


def test_unsupported_directive():
    with pytest.raises(LexError, match="Unsupported preprocessor directive '#define'"):
        Lexer("#define N 10\nint main() {}").tokenize()


def test_unexpected_character_reports_position():
    with pytest.raises(LexError, match=r"Unexpected character '@' at line 1, column 9"):
        Lexer("int x = @;").tokenize()


@pytest.mark.parametrize(
    "text, message",
    [
        ('"never closed', "Unterminated string literal"),
        ("'a", "Unterminated character literal"),
        ("/* open", "Unterminated comment"),
        ("''", "Empty character literal"),
        ("09", "Invalid digit in octal literal"),
        ("12abc", "Invalid suffix"),
    ],
)
def test_malformed_input(text, message):
    with pytest.raises(LexError, match=message):
        Lexer(text).tokenize()
