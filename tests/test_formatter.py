import pytest

from errors import EvalError, InputFormatError
from formatter import describe_scan_prompt, format_printf, parse_scan_format, scan_input
from memory import TYPE_CHR, TYPE_FLT, TYPE_INT, TYPE_PTR, Memory, Pointer, Value


def render(fmt, *args):
    memory = Memory()
    values = []
    for arg in args:
        if isinstance(arg, str):
            values.append(Value(TYPE_PTR, memory.intern_string(arg)))
        elif isinstance(arg, float):
            values.append(Value(TYPE_FLT, arg))
        else:
            values.append(arg if isinstance(arg, Value) else Value(TYPE_INT, arg))
    return format_printf(memory, fmt, values)


@pytest.mark.parametrize(
    "fmt, args, expected",
    [
        ("%d", (42,), "42"),
        ("%5d|%-5d|%05d", (1, 2, 3), "    1|2    |00003"),
        ("%+d % d", (5, 5), "+5  5"),
        ("%u", (-1,), "4294967295"),
        ("%x %#x", (255, 255), "ff 0xff"),
        ("%o %#o", (8, 8), "10 010"),
        ("%hhd", (300,), "44"),
        ("%f", (3.14159,), "3.141590"),
        ("%.2f|%8.3f", (2.5, 1.0), "2.50|   1.000"),
        ("%s and %.3s", ("hello", "world"), "hello and wor"),
        ("%c%c", (Value(TYPE_CHR, 104), 105), "hi"),
        ("100%%", (), "100%"),
        ("%*d", (4, 7), "   7"),
    ],
)
def test_printf_conversions(fmt, args, expected):
    assert render(fmt, *args) == expected


def test_printf_pointer_rendering():
    assert render("%p", Value(TYPE_PTR, Pointer.null())) == "(nil)"
    memory = Memory()
    pointer = memory.intern_string("x")
    assert format_printf(memory, "%p", [Value(TYPE_PTR, pointer)]) == "0x1000"


@pytest.mark.parametrize(
    "fmt, args, message",
    [
        ("%d %d", (1,), "format expects 2 argument(s) but 1 were given"),
        ("%d", (1, 2), "format expects 1 argument(s) but 2 were given"),
        ("%d", (1.5,), "format '%d' expects an integer argument, got double"),
        ("%f", (1,), "format '%f' expects a floating-point argument, got int"),
        ("%s", (1,), "format '%s' expects a string (char *) argument, got int"),
        ("%q", (1,), "unsupported format specifier '%q'"),
        ("%X", (1,), "unsupported format specifier '%X'"),
        ("%", (), "incomplete format specifier"),
    ],
)
def test_printf_errors(fmt, args, message):
    with pytest.raises(EvalError) as excinfo:
        render(fmt, *args)
    assert message in excinfo.value.message


def test_scan_integers_floats_and_words():
    directives = parse_scan_format("%d %f %s")
    results, consumed = scan_input(directives, "  -12 2.5e1 word rest")
    assert [value for _, value in results] == [-12, 25.0, b"word"]
    assert consumed == len("  -12 2.5e1 word")


def test_scan_literals_widths_and_suppression():
    directives = parse_scan_format("%2d:%*d:%c")
    results, _ = scan_input(directives, "12:99:z")
    assert [value for _, value in results] == [12, b"z"]


def test_scan_literal_separator():
    results, _ = scan_input(parse_scan_format("%d,%d"), "3,4")
    assert [value for _, value in results] == [3, 4]


def test_scan_integer_bases():
    results, _ = scan_input(parse_scan_format("%x %o %i %i"), "ff 17 0x10 010")
    assert [value for _, value in results] == [255, 15, 16, 8]


@pytest.mark.parametrize(
    "fmt, text, message",
    [
        ("%d", "abc", "expected an integer for '%d' but found 'abc'"),
        ("%d", "", "expected an integer for '%d' but input ended"),
        ("%d,%d", "3;4", "expected ',' in input but found ';4'"),
        ("%f", "-", "expected a number for '%f'"),
        ("%s", "   ", "expected a word for '%s' but input ended"),
    ],
)
def test_scan_mismatches(fmt, text, message):
    with pytest.raises(InputFormatError) as excinfo:
        scan_input(parse_scan_format(fmt), text)
    assert message in excinfo.value.message


def test_scan_format_rejects_unknown_conversions():
    with pytest.raises(EvalError, match="unsupported scanf format specifier '%p'"):
        parse_scan_format("%p")


def test_scan_prompt_names_the_format():
    assert describe_scan_prompt("%d %d") == 'scanf is waiting for input matching "%d %d"'
