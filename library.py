from __future__ import annotations
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

import numpy as np

from errors import EvalError
from formatter import describe_scan_prompt, format_printf, parse_scan_format, scan_input
from memory import TYPE_CHR, TYPE_FLT, TYPE_INT, TYPE_PTR, CType, Pointer, Value, truncate_float, wrap_int32
from parser import SourceLocation

if TYPE_CHECKING:
    from interpreter import Interpreter


RAND_MAX = 32767
RAND_MULTIPLIER = 1103515245
RAND_INCREMENT = 12345
DEFAULT_SEED = 1

GETS_PROMPT = "gets is waiting for a line of input"

INT_TYPE = CType("int")
DOUBLE_TYPE = CType("double")
STRING_TYPE = CType("char", 1)

BuiltinImpl = Callable[["Interpreter", List[Value], SourceLocation], Value]


@dataclass
class BuiltinFunction:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: BuiltinImpl
    returns: CType = INT_TYPE

    def validate(self, supplied: int, location: Optional[SourceLocation] = None) -> None:
        if supplied < self.min_args:
            raise EvalError(
                f"{self.name} expects at least {self.min_args} argument(s) but {supplied} were given",
                location=location,
                rule=self.name,
            )
        if self.max_args is not None and supplied > self.max_args:
            raise EvalError(
                f"{self.name} expects at most {self.max_args} argument(s) but {supplied} were given",
                location=location,
                rule=self.name,
            )


def next_random(seed: int) -> int:
    return (seed * RAND_MULTIPLIER + RAND_INCREMENT) & 0xFFFFFFFF


class Builtins:
    """Allow-listed C library functions."""

    def __init__(self) -> None:
        self.table: Dict[str, BuiltinFunction] = {}
        # I/O
        self._register_custom("printf", 1, None, self._printf)
        self._register_custom("puts", 1, 1, self._puts)
        self._register_custom("scanf", 1, None, self._scanf)
        self._register_custom("gets", 1, 1, self._gets, returns=STRING_TYPE)
        # <string.h>
        self._register_custom("strlen", 1, 1, self._strlen)
        self._register_custom("strcpy", 2, 2, self._strcpy, returns=STRING_TYPE)
        self._register_custom("strcat", 2, 2, self._strcat, returns=STRING_TYPE)
        self._register_custom("strcmp", 2, 2, self._strcmp)
        # <math.h>
        self._register_float_unary("sqrt", np.sqrt)
        self._register_float_unary("fabs", np.fabs)
        self._register_float_unary("sin", np.sin)
        self._register_float_unary("cos", np.cos)
        self._register_float_unary("tan", np.tan)
        self._register_float_unary("ceil", np.ceil)
        self._register_float_unary("floor", np.floor)
        self._register_float_unary("exp", np.exp)
        self._register_float_unary("log", np.log)
        self._register_custom("pow", 2, 2, self._pow, returns=DOUBLE_TYPE)
        # <stdlib.h>
        self._register_custom("abs", 1, 1, self._abs)
        self._register_custom("rand", 0, 0, self._rand)
        self._register_custom("srand", 1, 1, self._srand)

    def _register_custom(
        self,
        name: str,
        min_args: int,
        max_args: Optional[int],
        impl: BuiltinImpl,
        *,
        returns: CType = INT_TYPE,
    ) -> None:
        self.table[name] = BuiltinFunction(name=name, min_args=min_args, max_args=max_args, impl=impl, returns=returns)

    def _register_float_unary(self, name: str, func: Callable[[np.float64], np.float64]) -> None:
        def impl(_: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
            operand = np.float64(self._expect_number(args[0], name, location))
            with np.errstate(all="ignore"):
                return Value(TYPE_FLT, float(func(operand)))

        self.table[name] = BuiltinFunction(name=name, min_args=1, max_args=1, impl=impl, returns=DOUBLE_TYPE)

    def has(self, name: str) -> bool:
        return name in self.table

    def invoke(
        self,
        interpreter: "Interpreter",
        name: str,
        args: List[Value],
        location: SourceLocation,
    ) -> Value:
        builtin = self.table.get(name)
        if builtin is None:
            raise EvalError(f"call to unsupported function '{name}'", location=location, rule="CALL")
        builtin.validate(len(args), location)
        return builtin.impl(interpreter, args, location)

    # Helpers
    def _expect_number(self, value: Value, rule: str, location: SourceLocation) -> float:
        if value.type == TYPE_PTR:
            raise EvalError(f"{rule} expects a numeric argument, got a pointer", location=location, rule=rule)
        return float(value.value)

    def _expect_int(self, value: Value, rule: str, location: SourceLocation) -> int:
        if value.type == TYPE_PTR:
            raise EvalError(f"{rule} expects an integer argument, got a pointer", location=location, rule=rule)
        if value.type == TYPE_FLT:
            return truncate_float(value.value)
        return int(value.value)

    def _expect_pointer(self, value: Value, rule: str, position: int, location: SourceLocation) -> Pointer:
        if value.type != TYPE_PTR:
            raise EvalError(
                f"{rule}: argument {position} must be a pointer, got {value.type.lower()}",
                location=location,
                rule=rule,
            )
        return value.value

    def _expect_string(self, interpreter: "Interpreter", value: Value, rule: str, position: int, location: SourceLocation) -> bytes:
        pointer = self._expect_pointer(value, rule, position, location)
        return interpreter.memory.read_bytes(pointer, location)

    # I/O
    def _printf(self, interpreter: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        fmt = self._expect_string(interpreter, args[0], "printf", 1, location).decode("utf-8", errors="replace")
        text = format_printf(interpreter.memory, fmt, args[1:], name="printf", location=location)
        interpreter.write(text)
        return Value(TYPE_INT, len(text.encode("utf-8")))

    def _puts(self, interpreter: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        data = self._expect_string(interpreter, args[0], "puts", 1, location)
        interpreter.write(data.decode("utf-8", errors="replace") + "\n")
        return Value(TYPE_INT, len(data) + 1)

    def _scanf(self, interpreter: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        memory = interpreter.memory
        fmt = self._expect_string(interpreter, args[0], "scanf", 1, location).decode("utf-8", errors="replace")
        directives = parse_scan_format(fmt, location=location)
        conversions = [d for d in directives if d.kind == "conv" and not d.suppress]
        targets = args[1:]
        if len(conversions) != len(targets):
            raise EvalError(
                f"scanf: format expects {len(conversions)} argument(s) but {len(targets)} were given",
                location=location,
                rule="scanf",
            )
        pointers: List[Pointer] = []
        for position, (directive, target) in enumerate(zip(conversions, targets), start=2):
            if target.type != TYPE_PTR:
                raise EvalError(
                    f"scanf: argument {position} for '{directive.spec}' must be a pointer (missing '&'?)",
                    location=location,
                    rule="scanf",
                )
            pointer: Pointer = target.value
            expected = TYPE_FLT if directive.conv == "f" else TYPE_CHR if directive.conv in "cs" else TYPE_INT
            actual = pointer.ctype.value_type
            if actual != expected and not (expected == TYPE_INT and actual == TYPE_CHR and directive.length == "hh"):
                raise EvalError(
                    f"scanf: format '{directive.spec}' expects a pointer to {_POINTEE_NAMES[expected]}, "
                    f"got '{pointer.ctype} *'",
                    location=location,
                    rule="scanf",
                )
            pointers.append(pointer)

        text = interpreter.read_input({"call": "scanf", "format": fmt, "prompt": describe_scan_prompt(fmt)})
        results, _ = scan_input(directives, text)
        for (directive, value), pointer in zip(results, pointers):
            if directive.conv == "s":
                memory.write_bytes(pointer, value, location)
            elif directive.conv == "c":
                current = pointer
                for index, byte in enumerate(value):
                    if index:
                        current = memory.offset(current, 1, location)
                    memory.store(current, Value(TYPE_CHR, byte), location)
            elif directive.conv == "f":
                memory.store(pointer, Value(TYPE_FLT, value), location)
            else:
                memory.store(pointer, Value(TYPE_INT, wrap_int32(value)), location)
        return Value(TYPE_INT, len(results))

    def _gets(self, interpreter: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        buffer = self._expect_pointer(args[0], "gets", 1, location)
        text = interpreter.read_input({"call": "gets", "format": None, "prompt": GETS_PROMPT})
        interpreter.memory.write_bytes(buffer, text.encode("utf-8"), location)
        return Value(TYPE_PTR, buffer)

    # <string.h>
    def _strlen(self, interpreter: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        return Value(TYPE_INT, len(self._expect_string(interpreter, args[0], "strlen", 1, location)))

    def _strcpy(self, interpreter: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        dest = self._expect_pointer(args[0], "strcpy", 1, location)
        data = self._expect_string(interpreter, args[1], "strcpy", 2, location)
        interpreter.memory.write_bytes(dest, data, location)
        return Value(TYPE_PTR, dest)

    def _strcat(self, interpreter: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        memory = interpreter.memory
        dest = self._expect_pointer(args[0], "strcat", 1, location)
        existing = memory.read_bytes(dest, location)
        data = self._expect_string(interpreter, args[1], "strcat", 2, location)
        memory.write_bytes(memory.offset(dest, len(existing), location), data, location)
        return Value(TYPE_PTR, dest)

    def _strcmp(self, interpreter: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        left = self._expect_string(interpreter, args[0], "strcmp", 1, location) + b"\0"
        right = self._expect_string(interpreter, args[1], "strcmp", 2, location) + b"\0"
        for a, b in zip(left, right):
            if a != b:
                return Value(TYPE_INT, a - b)
        return Value(TYPE_INT, 0)

    # <math.h> / <stdlib.h>
    def _pow(self, _: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        base = np.float64(self._expect_number(args[0], "pow", location))
        exponent = np.float64(self._expect_number(args[1], "pow", location))
        with np.errstate(all="ignore"):
            return Value(TYPE_FLT, float(np.power(base, exponent)))

    def _abs(self, _: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        return Value(TYPE_INT, wrap_int32(abs(self._expect_int(args[0], "abs", location))))

    def _rand(self, interpreter: "Interpreter", _: List[Value], __: SourceLocation) -> Value:
        interpreter.seed = next_random(interpreter.seed)
        return Value(TYPE_INT, (interpreter.seed // 65536) % (RAND_MAX + 1))

    def _srand(self, interpreter: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        interpreter.seed = self._expect_int(args[0], "srand", location) & 0xFFFFFFFF
        return Value(TYPE_INT, 0)


_POINTEE_NAMES = {TYPE_INT: "int", TYPE_FLT: "float or double", TYPE_CHR: "char"}
