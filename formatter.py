"""printf rendering and scanf input scanning."""

from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from errors import EvalError, InputFormatError
from memory import TYPE_CHR, TYPE_FLT, TYPE_INT, TYPE_PTR, Memory, Pointer, Value


PRINTF_SPEC = re.compile(
    r"%(?P<flags>[-+ #0]*)(?P<width>\*|\d+)?(?:\.(?P<precision>\*|\d*))?(?P<length>hh|h|ll|l|L|z|j|t)?(?P<conv>.?)",
    re.DOTALL,
)
SCANF_SPEC = re.compile(r"%(?P<suppress>\*)?(?P<width>\d+)?(?P<length>hh|h|ll|l|L)?(?P<conv>.?)", re.DOTALL)

PRINTF_CONVERSIONS = {
    "d": ("", "h", "hh", "l", "ll"),
    "i": ("", "h", "hh", "l", "ll"),
    "u": ("", "h", "hh", "l", "ll"),
    "x": ("", "h", "hh", "l", "ll"),
    "o": ("", "h", "hh", "l", "ll"),
    "c": ("",),
    "s": ("",),
    "f": ("", "l", "L"),
    "p": ("",),
}
SCANF_CONVERSIONS = {
    "d": ("", "h", "hh", "l", "ll"),
    "i": ("", "h", "hh", "l", "ll"),
    "u": ("", "h", "hh", "l", "ll"),
    "x": ("", "h", "hh", "l", "ll"),
    "o": ("", "h", "hh", "l", "ll"),
    "f": ("", "l", "L"),
    "c": ("",),
    "s": ("",),
}

INTEGER_CONVERSIONS = frozenset("diuxo")

_TYPE_NAMES = {TYPE_INT: "int", TYPE_CHR: "char", TYPE_FLT: "double", TYPE_PTR: "pointer"}


def _unsigned(value: int, length: str) -> int:
    if length in ("l", "ll"):
        return value & 0xFFFFFFFFFFFFFFFF
    if length == "h":
        return value & 0xFFFF
    if length == "hh":
        return value & 0xFF
    return value & 0xFFFFFFFF


def _signed(value: int, length: str) -> int:
    if length == "h":
        return ((value + (1 << 15)) % (1 << 16)) - (1 << 15)
    if length == "hh":
        return ((value + 128) % 256) - 128
    return value


def format_printf(
    memory: Memory,
    fmt: str,
    args: List[Value],
    *,
    name: str = "printf",
    location: Any = None,
) -> str:
    """Render ``fmt`` against ``args`` the way C's printf would."""
    out: List[str] = []
    arg_index = 0
    pos = 0
    n = len(fmt)

    def next_arg(spec: str) -> Value:
        nonlocal arg_index
        if arg_index >= len(args):
            # Count every remaining conversion so the message reports the full total.
            raise EvalError(
                f"{name}: format expects {count_conversions(fmt)} argument(s) but {len(args)} were given",
                location=location,
                rule=name,
            )
        value = args[arg_index]
        arg_index += 1
        return value

    while pos < n:
        percent = fmt.find("%", pos)
        if percent == -1:
            out.append(fmt[pos:])
            break
        out.append(fmt[pos:percent])
        match = PRINTF_SPEC.match(fmt, percent)
        assert match is not None
        pos = match.end()
        conv = match.group("conv")
        if conv == "%" and match.group(0) == "%%":
            out.append("%")
            continue
        if conv == "":
            raise EvalError(f"incomplete format specifier '{match.group(0)}'", location=location, rule=name)
        length = match.group("length") or ""
        if conv not in PRINTF_CONVERSIONS or length not in PRINTF_CONVERSIONS[conv]:
            raise EvalError(f"unsupported format specifier '{match.group(0)}'", location=location, rule=name)
        flags = match.group("flags") or ""
        width = match.group("width")
        precision = match.group("precision")
        spec = match.group(0)
        if width == "*":
            width_value = next_arg(spec)
            if width_value.type not in (TYPE_INT, TYPE_CHR):
                raise EvalError(f"format '{spec}' expects an int field width", location=location, rule=name)
            width = str(abs(int(width_value.value)))
            if int(width_value.value) < 0 and "-" not in flags:
                flags += "-"
        if precision == "*":
            precision_value = next_arg(spec)
            if precision_value.type not in (TYPE_INT, TYPE_CHR):
                raise EvalError(f"format '{spec}' expects an int precision", location=location, rule=name)
            precision = str(int(precision_value.value)) if int(precision_value.value) >= 0 else None
        value = next_arg(spec)
        out.append(_render(memory, conv, length, flags, width, precision, value, spec, name, location))

    if arg_index != len(args):
        raise EvalError(
            f"{name}: format expects {arg_index} argument(s) but {len(args)} were given",
            location=location,
            rule=name,
        )
    return "".join(out)


def count_conversions(fmt: str) -> int:
    total = 0
    for match in PRINTF_SPEC.finditer(fmt):
        if match.group(0) == "%%":
            continue
        total += 1
        total += (match.group("width") == "*") + (match.group("precision") == "*")
    return total


def _render(
    memory: Memory,
    conv: str,
    length: str,
    flags: str,
    width: Optional[str],
    precision: Optional[str],
    value: Value,
    spec: str,
    name: str,
    location: Any,
) -> str:
    width_part = width or ""
    precision_part = "" if precision is None else "." + (precision or "0")

    def mismatch(kind: str) -> EvalError:
        return EvalError(
            f"format '{spec}' expects {kind} argument, got {_TYPE_NAMES[value.type]}",
            location=location,
            rule=name,
        )

    if conv in INTEGER_CONVERSIONS:
        if value.type not in (TYPE_INT, TYPE_CHR):
            raise mismatch("an integer")
        number = int(value.value)
        if conv in ("d", "i"):
            return ("%" + flags + width_part + precision_part + "d") % _signed(number, length)
        number = _unsigned(number, length)
        if conv == "u":
            return ("%" + flags.replace("#", "") + width_part + precision_part + "d") % number
        if conv == "x":
            return ("%" + flags + width_part + precision_part + "x") % number
        # Python renders "#o" as "0o17"; C uses a single leading zero.
        digits = ("%" + precision_part + "o") % number
        if "#" in flags and not digits.startswith("0"):
            digits = "0" + digits
        field = int(width_part or 0)
        if "-" in flags:
            return digits.ljust(field)
        if "0" in flags and precision is None:
            return digits.rjust(field, "0")
        return digits.rjust(field)
    if conv == "f":
        if value.type != TYPE_FLT:
            raise mismatch("a floating-point")
        return ("%" + flags + width_part + precision_part + "f") % float(value.value)
    if conv == "c":
        if value.type not in (TYPE_INT, TYPE_CHR):
            raise mismatch("a char")
        char = bytes([int(value.value) & 0xFF]).decode("utf-8", errors="surrogateescape")
        return ("%" + ("-" if "-" in flags else "") + width_part + "s") % char
    if conv == "s":
        if value.type != TYPE_PTR:
            raise mismatch("a string (char *)")
        text = memory.read_string(value.value, location)
        return ("%" + ("-" if "-" in flags else "") + width_part + precision_part + "s") % text
    # conv == "p"
    if value.type != TYPE_PTR:
        raise mismatch("a pointer")
    pointer: Pointer = value.value
    return ("%" + ("-" if "-" in flags else "") + width_part + "s") % pointer.render()


# ---- scanf ----


@dataclass(frozen=True)
class ScanDirective:
    kind: str  # "ws" | "literal" | "conv"
    text: str = ""
    conv: str = ""
    width: Optional[int] = None
    length: str = ""
    suppress: bool = False

    @property
    def spec(self) -> str:
        return self.text


def parse_scan_format(fmt: str, *, location: Any = None) -> List[ScanDirective]:
    directives: List[ScanDirective] = []
    pos = 0
    n = len(fmt)
    while pos < n:
        ch = fmt[pos]
        if ch.isspace():
            while pos < n and fmt[pos].isspace():
                pos += 1
            directives.append(ScanDirective("ws"))
            continue
        if ch != "%":
            directives.append(ScanDirective("literal", text=ch))
            pos += 1
            continue
        if fmt.startswith("%%", pos):
            directives.append(ScanDirective("literal", text="%"))
            pos += 2
            continue
        match = SCANF_SPEC.match(fmt, pos)
        assert match is not None
        conv = match.group("conv")
        length = match.group("length") or ""
        if conv not in SCANF_CONVERSIONS or length not in SCANF_CONVERSIONS[conv]:
            raise EvalError(f"unsupported scanf format specifier '{match.group(0)}'", location=location, rule="scanf")
        width = int(match.group("width")) if match.group("width") else None
        if width == 0:
            raise EvalError(f"invalid field width in '{match.group(0)}'", location=location, rule="scanf")
        directives.append(
            ScanDirective(
                "conv",
                text=match.group(0),
                conv=conv,
                width=width,
                length=length,
                suppress=bool(match.group("suppress")),
            )
        )
        pos = match.end()
    return directives


_SCAN_PATTERNS = {
    "d": re.compile(r"[+-]?[0-9]+"),
    "u": re.compile(r"[+-]?[0-9]+"),
    "i": re.compile(r"[+-]?(?:0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)"),
    "x": re.compile(r"[+-]?(?:0[xX])?[0-9a-fA-F]+"),
    "o": re.compile(r"[+-]?[0-7]+"),
    "f": re.compile(
        r"[+-]?(?:(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?|inf(?:inity)?|nan)",
        re.IGNORECASE,
    ),
}
_SCAN_KINDS = {"d": "an integer", "u": "an integer", "i": "an integer", "x": "a hexadecimal integer",
               "o": "an octal integer", "f": "a number"}


def _parse_integer(conv: str, literal: str) -> int:
    if conv == "x":
        return int(literal, 16)
    if conv == "o":
        return int(literal, 8)
    if conv == "i":
        sign = -1 if literal.startswith("-") else 1
        body = literal.lstrip("+-")
        if body[:2] in ("0x", "0X"):
            return sign * int(body[2:], 16)
        if len(body) > 1 and body.startswith("0"):
            return sign * int(body, 8)
        return sign * int(body)
    return int(literal)


def _describe(text: str, pos: int) -> str:
    rest = text[pos:].split()
    if not rest:
        return "but input ended"
    return f"but found '{rest[0]}'"


def scan_input(directives: List[ScanDirective], text: str) -> Tuple[List[Tuple[ScanDirective, Any]], int]:
    """Match ``text`` against scanf directives.

    Returns the converted (directive, value) pairs for non-suppressed
    conversions and the number of characters consumed. Integer values are
    Python ints, ``%f`` values floats, ``%c``/``%s`` values bytes.
    """
    results: List[Tuple[ScanDirective, Any]] = []
    pos = 0
    n = len(text)
    for directive in directives:
        if directive.kind == "ws":
            while pos < n and text[pos].isspace():
                pos += 1
            continue
        if directive.kind == "literal":
            if pos >= n or text[pos] != directive.text:
                raise InputFormatError(f"expected '{directive.text}' in input {_describe(text, pos)}", rule="scanf")
            pos += 1
            continue
        conv = directive.conv
        if conv != "c":
            while pos < n and text[pos].isspace():
                pos += 1
        if conv == "c":
            count = directive.width or 1
            chunk = text[pos:pos + count]
            if len(chunk) < count:
                raise InputFormatError(
                    f"expected {count} character(s) for '{directive.spec}' but input ended", rule="scanf"
                )
            pos += count
            value: Any = chunk.encode("utf-8")
        elif conv == "s":
            start = pos
            limit = n if directive.width is None else min(n, pos + directive.width)
            while pos < limit and not text[pos].isspace():
                pos += 1
            if pos == start:
                raise InputFormatError(f"expected a word for '{directive.spec}' but input ended", rule="scanf")
            value = text[start:pos].encode("utf-8")
        else:
            window = text[pos:] if directive.width is None else text[pos:pos + directive.width]
            match = _SCAN_PATTERNS[conv].match(window)
            if match is None or match.group(0) in ("+", "-"):
                raise InputFormatError(
                    f"expected {_SCAN_KINDS[conv]} for '{directive.spec}' {_describe(text, pos)}", rule="scanf"
                )
            literal = match.group(0)
            pos += len(literal)
            value = float(literal) if conv == "f" else _parse_integer(conv, literal)
        if not directive.suppress:
            results.append((directive, value))
    return results, pos


def describe_scan_prompt(fmt: str) -> str:
    return f'scanf is waiting for input matching "{fmt}"'
