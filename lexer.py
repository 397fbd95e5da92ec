from __future__ import annotations
from dataclasses import dataclass
from typing import List

from errors import LexError


@dataclass
class Token:
    type: str
    value: object
    line: int
    column: int
    offset: int


KEYWORDS = {
    "int",
    "float",
    "double",
    "char",
    "void",
    "short",
    "long",
    "signed",
    "unsigned",
    "const",
    "if",
    "else",
    "for",
    "while",
    "do",
    "switch",
    "case",
    "default",
    "break",
    "continue",
    "return",
    "sizeof",
    # Recognized so the parser can reject them by name.
    "struct",
    "union",
    "enum",
    "typedef",
    "goto",
    "static",
    "extern",
}

# Longest operators first so that maximal munch works with a simple scan.
OPERATORS = (
    "<<=", ">>=",
    "++", "--", "->", "&&", "||", "==", "!=", "<=", ">=", "<<", ">>",
    "+=", "-=", "*=", "/=", "%=", "&=", "|=", "^=",
    "+", "-", "*", "/", "%", "<", ">", "=", "!", "~", "&", "|", "^",
    "?", ":", ";", ",", ".", "(", ")", "{", "}", "[", "]",
)

DIGITS = frozenset("0123456789")
IDENT_START = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ_")
IDENT_PART = IDENT_START | DIGITS

SIMPLE_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "0": "\0",
    "\\": "\\",
    "'": "'",
    '"': '"',
    "a": "\a",
    "b": "\b",
    "f": "\f",
    "v": "\v",
    "?": "?",
}


class Lexer:
    def __init__(self, text: str, filename: str = "<string>") -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1
        self._at_line_start = True

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch == "\n":
                _advance()
                self._at_line_start = True
                continue
            if ch in " \t\r\f\v":
                _advance()
                continue
            if ch == "/" and self._peek_at(1) == "/":
                self._consume_line_comment()
                continue
            if ch == "/" and self._peek_at(1) == "*":
                self._consume_block_comment()
                continue
            if ch == "#":
                if not self._at_line_start:
                    self._fail(f"Unexpected character '{ch}'")
                self._consume_directive()
                continue
            self._at_line_start = False
            if ch in DIGITS or (ch == "." and self._peek_at(1) in DIGITS):
                tokens_append(self._consume_number())
                continue
            if ch == "'":
                tokens_append(self._consume_char())
                continue
            if ch == '"':
                tokens_append(self._consume_string())
                continue
            if ch in IDENT_START:
                tokens_append(self._consume_identifier())
                continue
            for op in OPERATORS:
                if text.startswith(op, self.index):
                    tokens_append(Token(op, op, self.line, self.column, self.index))
                    for _ in op:
                        _advance()
                    break
            else:
                self._fail(f"Unexpected character '{ch}'")
        tokens_append(Token("EOF", "", self.line, self.column, self.index))
        return tokens

    def _fail(self, message: str) -> None:
        raise LexError(
            f"{message} at line {self.line}, column {self.column} (offset {self.index})",
            rule="LEX",
        )

    def _consume_line_comment(self) -> None:
        text = self.text
        n = len(text)
        while self.index < n and text[self.index] != "\n":
            self._advance()

    def _consume_block_comment(self) -> None:
        line, col, start = self.line, self.column, self.index
        self._advance()
        self._advance()
        text = self.text
        while self.index < len(text):
            if text.startswith("*/", self.index):
                self._advance()
                self._advance()
                return
            self._advance()
        raise LexError(
            f"Unterminated comment at line {line}, column {col} (offset {start})",
            rule="LEX",
        )

    def _consume_directive(self) -> None:
        # Directive lines are skipped without producing tokens; only #include is accepted.
        line, col, start = self.line, self.column, self.index
        self._advance()
        text = self.text
        while not self._eof and text[self.index] in " \t":
            self._advance()
        name_start = self.index
        while not self._eof and text[self.index] in IDENT_START:
            self._advance()
        directive = text[name_start:self.index]
        if directive != "include":
            raise LexError(
                f"Unsupported preprocessor directive '#{directive}' at line {line}, column {col} (offset {start})",
                rule="LEX",
            )
        self._consume_line_comment()

    def _consume_number(self) -> Token:
        line, col, start = self.line, self.column, self.index
        text = self.text
        if text.startswith(("0x", "0X"), self.index):
            self._advance()
            self._advance()
            digits_start = self.index
            while not self._eof and text[self.index] in "0123456789abcdefABCDEF":
                self._advance()
            digits = text[digits_start:self.index]
            if not digits:
                self._fail("Malformed hexadecimal literal")
            self._consume_int_suffix()
            return Token("INT", int(digits, 16), line, col, start)

        is_float = False
        while not self._eof and text[self.index] in DIGITS:
            self._advance()
        if not self._eof and text[self.index] == ".":
            is_float = True
            self._advance()
            while not self._eof and text[self.index] in DIGITS:
                self._advance()
        if not self._eof and text[self.index] in "eE":
            saved = (self.index, self.line, self.column)
            self._advance()
            if not self._eof and text[self.index] in "+-":
                self._advance()
            if not self._eof and text[self.index] in DIGITS:
                is_float = True
                while not self._eof and text[self.index] in DIGITS:
                    self._advance()
            else:
                self.index, self.line, self.column = saved
        literal = text[start:self.index]
        if is_float:
            if not self._eof and text[self.index] in "fFlL":
                self._advance()
            return Token("FLOAT", float(literal), line, col, start)
        self._consume_int_suffix()
        if len(literal) > 1 and literal.startswith("0"):
            if any(d in "89" for d in literal):
                raise LexError(
                    f"Invalid digit in octal literal '{literal}' at line {line}, column {col} (offset {start})",
                    rule="LEX",
                )
            return Token("INT", int(literal, 8), line, col, start)
        return Token("INT", int(literal), line, col, start)

    def _consume_int_suffix(self) -> None:
        while not self._eof and self.text[self.index] in "uUlL":
            self._advance()
        if not self._eof and self.text[self.index] in IDENT_PART:
            self._fail(f"Invalid suffix '{self.text[self.index]}' on numeric literal")

    def _consume_escape(self) -> str:
        # Positioned on the backslash.
        self._advance()
        if self._eof:
            self._fail("Unterminated escape sequence")
        ch = self._peek()
        text = self.text
        if ch == "x":
            self._advance()
            digits_start = self.index
            while not self._eof and text[self.index] in "0123456789abcdefABCDEF":
                self._advance()
            digits = text[digits_start:self.index]
            if not digits:
                self._fail("Malformed \\x escape")
            return chr(int(digits, 16) & 0xFF)
        if ch in "01234567":
            digits_start = self.index
            while not self._eof and self.index - digits_start < 3 and text[self.index] in "01234567":
                self._advance()
            return chr(int(text[digits_start:self.index], 8) & 0xFF)
        if ch in SIMPLE_ESCAPES:
            self._advance()
            return SIMPLE_ESCAPES[ch]
        self._fail(f"Unknown escape sequence '\\{ch}'")
        return ""

    def _consume_char(self) -> Token:
        line, col, start = self.line, self.column, self.index
        self._advance()  # opening quote
        if self._eof or self._peek() in "'\n":
            raise LexError(f"Empty character literal at line {line}, column {col} (offset {start})", rule="LEX")
        if self._peek() == "\\":
            value = self._consume_escape()
        else:
            value = self._peek()
            self._advance()
        if self._eof or self._peek() != "'":
            raise LexError(
                f"Unterminated character literal at line {line}, column {col} (offset {start})",
                rule="LEX",
            )
        self._advance()
        return Token("CHAR", ord(value), line, col, start)

    def _consume_string(self) -> Token:
        line, col, start = self.line, self.column, self.index
        self._advance()  # opening quote
        chars: List[str] = []
        while not self._eof:
            ch = self._peek()
            if ch == '"':
                self._advance()
                return Token("STRING", "".join(chars), line, col, start)
            if ch == "\n":
                break
            if ch == "\\":
                chars.append(self._consume_escape())
                continue
            chars.append(ch)
            self._advance()
        raise LexError(
            f"Unterminated string literal at line {line}, column {col} (offset {start})",
            rule="LEX",
        )

    def _consume_identifier(self) -> Token:
        line, col, start = self.line, self.column, self.index
        text = self.text
        n = len(text)
        while self.index < n and text[self.index] in IDENT_PART:
            self._advance()
        value = text[start:self.index]
        token_type: str = value if value in KEYWORDS else "IDENT"
        return Token(token_type, value, line, col, start)

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _peek_at(self, distance: int) -> str:
        pos = self.index + distance
        return self.text[pos] if pos < len(self.text) else ""

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1
