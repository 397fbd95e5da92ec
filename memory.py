"""Simulated address space backing C variables, arrays and pointers.

Storage is a stack of slots kept in parallel numpy arrays. Every slot holds
one element; an array owns a contiguous run of slots. Releasing a scope pops
its slots and bumps their generation, so a Pointer created earlier no longer
matches and is reported as dangling instead of reading reused storage.
"""

from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from errors import EvalError


TYPE_INT = "INT"
TYPE_FLT = "FLT"
TYPE_CHR = "CHR"
TYPE_PTR = "PTR"

ELEMENT_SIZES = {"char": 1, "int": 4, "float": 4, "double": 8, "void": 1}
POINTER_SIZE = 8
BASE_ADDRESS = 0x1000

NULL_INDEX = -1
WILD_INDEX = -2

INT_MIN = -(1 << 31)


def wrap_int32(value: int) -> int:
    return ((int(value) + (1 << 31)) % (1 << 32)) - (1 << 31)


def wrap_char(value: int) -> int:
    return ((int(value) + 128) % 256) - 128


def truncate_float(value: float) -> int:
    # Out-of-range conversions produce INT_MIN like x86 cvttsd2si.
    if math.isnan(value) or math.isinf(value) or not (INT_MIN <= value < (1 << 31)):
        return INT_MIN
    return int(value)


@dataclass(frozen=True)
class CType:
    base: str
    pointer_depth: int = 0

    @property
    def is_pointer(self) -> bool:
        return self.pointer_depth > 0

    @property
    def size(self) -> int:
        return POINTER_SIZE if self.is_pointer else ELEMENT_SIZES[self.base]

    @property
    def value_type(self) -> str:
        if self.is_pointer:
            return TYPE_PTR
        if self.base == "char":
            return TYPE_CHR
        if self.base in ("float", "double"):
            return TYPE_FLT
        return TYPE_INT

    def pointer_to(self) -> "CType":
        return CType(self.base, self.pointer_depth + 1)

    def pointee(self) -> "CType":
        return CType(self.base, self.pointer_depth - 1)

    def __str__(self) -> str:
        return self.base + (" " + "*" * self.pointer_depth if self.pointer_depth else "")


VOID = CType("void")


@dataclass(frozen=True)
class Pointer:
    index: int
    generation: int
    origin: int
    address: int
    ctype: CType  # pointee type

    @property
    def is_null(self) -> bool:
        return self.index == NULL_INDEX

    @property
    def is_wild(self) -> bool:
        return self.index == WILD_INDEX

    @classmethod
    def null(cls, ctype: CType = VOID) -> "Pointer":
        return cls(NULL_INDEX, 0, NULL_INDEX, 0, ctype)

    @classmethod
    def wild(cls, ctype: CType = VOID) -> "Pointer":
        return cls(WILD_INDEX, 0, WILD_INDEX, 0, ctype)

    def render(self) -> str:
        if self.is_null or self.is_wild:
            return "(nil)"
        return f"0x{self.address:x}"


@dataclass
class Value:
    type: str
    value: Any


@dataclass
class Binding:
    name: str
    ctype: CType
    index: int
    length: Optional[int] = None  # None for scalars

    @property
    def is_array(self) -> bool:
        return self.length is not None


def zero_value(ctype: CType) -> Any:
    if ctype.is_pointer:
        return Pointer.wild(ctype.pointee())
    if ctype.value_type == TYPE_FLT:
        return 0.0
    return 0


def coerce(ctype: CType, value: Value, *, location: Any = None) -> Any:
    """Convert a runtime value into the payload stored in a slot of ``ctype``."""
    if ctype.is_pointer:
        if value.type == TYPE_PTR:
            pointer: Pointer = value.value
            if pointer.is_null or pointer.is_wild:
                return Pointer(pointer.index, 0, pointer.origin, 0, ctype.pointee())
            if pointer.ctype != ctype.pointee() and pointer.ctype != VOID:
                raise EvalError(
                    f"incompatible pointer types: cannot assign '{pointer.ctype} *' to '{ctype}'",
                    location=location,
                    rule="ASSIGN",
                )
            return pointer
        if value.type in (TYPE_INT, TYPE_CHR) and value.value == 0:
            return Pointer.null(ctype.pointee())
        raise EvalError(f"cannot convert {value.type.lower()} to pointer type '{ctype}'", location=location, rule="ASSIGN")
    if value.type == TYPE_PTR:
        raise EvalError(f"cannot convert pointer to '{ctype}'", location=location, rule="ASSIGN")
    base = ctype.base
    if base == "int":
        if value.type == TYPE_FLT:
            return truncate_float(value.value)
        return wrap_int32(value.value)
    if base == "char":
        if value.type == TYPE_FLT:
            return wrap_char(truncate_float(value.value))
        return wrap_char(value.value)
    if base == "float":
        with np.errstate(all="ignore"):
            return float(np.float32(value.value))
    return float(value.value)


class Memory:
    def __init__(self, capacity: int = 64) -> None:
        self.values = np.empty(capacity, dtype=object)
        self.ctypes = np.empty(capacity, dtype=object)
        self.generations = np.zeros(capacity, dtype=np.int64)
        self.addresses = np.zeros(capacity, dtype=np.int64)
        self.origins = np.zeros(capacity, dtype=np.int64)
        self.lengths = np.zeros(capacity, dtype=np.int64)
        self.live = np.zeros(capacity, dtype=bool)
        self.readonly = np.zeros(capacity, dtype=bool)
        self.top = 0
        self.next_address = BASE_ADDRESS
        self._journal: Optional[List[Tuple[int, Any]]] = None

    # ---- allocation ----

    def _grow(self, needed: int) -> None:
        capacity = len(self.values)
        if needed <= capacity:
            return
        while capacity < needed:
            capacity *= 2
        for name in ("values", "ctypes", "generations", "addresses", "origins", "lengths", "live", "readonly"):
            old = getattr(self, name)
            new = np.zeros(capacity, dtype=old.dtype) if old.dtype != object else np.empty(capacity, dtype=object)
            new[: len(old)] = old
            setattr(self, name, new)

    def allocate(self, ctype: CType, length: int = 1, *, readonly: bool = False) -> int:
        if length <= 0:
            raise EvalError(f"array size must be positive, got {length}", rule="DECL")
        base = self.top
        self._grow(base + length)
        size = ctype.size
        align = min(size, POINTER_SIZE)
        address = -(-self.next_address // align) * align
        end = base + length
        self.addresses[base:end] = address + np.arange(length, dtype=np.int64) * size
        self.origins[base:end] = base
        self.lengths[base:end] = length
        self.live[base:end] = True
        self.readonly[base:end] = readonly
        zero = zero_value(ctype)
        for i in range(base, end):
            self.values[i] = zero
            self.ctypes[i] = ctype
        self.top = end
        self.next_address = address + length * size
        return base

    def mark(self) -> Tuple[int, int]:
        return self.top, self.next_address

    def release(self, mark: Tuple[int, int]) -> None:
        top, next_address = mark
        if top > self.top:
            return
        self.generations[top:self.top] += 1
        self.live[top:self.top] = False
        self.values[top:self.top] = None
        self.ctypes[top:self.top] = None
        self.top = top
        self.next_address = next_address

    # ---- pointers ----

    def pointer_to(self, index: int) -> Pointer:
        origin = int(self.origins[index])
        return Pointer(
            index=index,
            generation=int(self.generations[origin]),
            origin=origin,
            address=int(self.addresses[index]),
            ctype=self.ctypes[index],
        )

    def address_of(self, binding: Binding, offset: int = 0) -> Pointer:
        return self.pointer_to(binding.index + offset)

    def _validate(self, pointer: Pointer, location: Any) -> int:
        if pointer.is_null:
            raise EvalError("segmentation fault: NULL pointer dereference", location=location, rule="DEREF")
        if pointer.is_wild:
            raise EvalError(
                "segmentation fault: dereference of uninitialized pointer", location=location, rule="DEREF"
            )
        origin = pointer.origin
        if (
            origin >= self.top
            or not self.live[origin]
            or int(self.generations[origin]) != pointer.generation
        ):
            raise EvalError(
                f"segmentation fault: dangling pointer to {pointer.render()} (its scope has ended)",
                location=location,
                rule="DEREF",
            )
        if not (origin <= pointer.index < origin + int(self.lengths[origin])):
            raise EvalError(
                f"segmentation fault: out-of-bounds access at {pointer.render()}", location=location, rule="DEREF"
            )
        return pointer.index

    def offset(self, pointer: Pointer, delta: int, location: Any = None) -> Pointer:
        if pointer.is_null or pointer.is_wild:
            raise EvalError(
                "invalid pointer arithmetic on " + ("NULL" if pointer.is_null else "uninitialized") + " pointer",
                location=location,
                rule="PTR",
            )
        origin = pointer.origin
        if origin >= self.top or not self.live[origin] or int(self.generations[origin]) != pointer.generation:
            raise EvalError(
                f"segmentation fault: dangling pointer to {pointer.render()} (its scope has ended)",
                location=location,
                rule="PTR",
            )
        index = pointer.index + delta
        # One past the end is a valid position for comparisons.
        if not (origin <= index <= origin + int(self.lengths[origin])):
            raise EvalError(
                f"pointer arithmetic out of bounds: offset {index - origin} outside object of length {int(self.lengths[origin])}",
                location=location,
                rule="PTR",
            )
        return Pointer(
            index=index,
            generation=pointer.generation,
            origin=origin,
            address=pointer.address + delta * pointer.ctype.size,
            ctype=pointer.ctype,
        )

    def load(self, pointer: Pointer, location: Any = None) -> Value:
        return self.load_slot(self._validate(pointer, location))

    def store(self, pointer: Pointer, value: Value, location: Any = None) -> Value:
        return self.store_slot(self._validate(pointer, location), value, location)

    def load_slot(self, index: int) -> Value:
        ctype: CType = self.ctypes[index]
        return Value(ctype.value_type, self.values[index])

    def store_slot(self, index: int, value: Value, location: Any = None) -> Value:
        if self.readonly[index]:
            raise EvalError("segmentation fault: write to read-only string literal", location=location, rule="STORE")
        ctype: CType = self.ctypes[index]
        payload = coerce(ctype, value, location=location)
        if self._journal is not None:
            self._journal.append((index, self.values[index]))
        self.values[index] = payload
        return Value(ctype.value_type, payload)

    # ---- strings ----

    def read_bytes(self, pointer: Pointer, location: Any = None) -> bytes:
        out = bytearray()
        current = pointer
        while True:
            value = self.load(current, location)
            if value.type == TYPE_PTR or value.type == TYPE_FLT:
                raise EvalError("expected a pointer to char", location=location, rule="STR")
            code = int(value.value) & 0xFF
            if code == 0:
                return bytes(out)
            out.append(code)
            current = self.offset(current, 1, location)

    def read_string(self, pointer: Pointer, location: Any = None) -> str:
        return self.read_bytes(pointer, location).decode("utf-8", errors="replace")

    def write_bytes(self, pointer: Pointer, data: bytes, location: Any = None) -> None:
        current = pointer
        for byte in bytes(data) + b"\0":
            self.store(current, Value(TYPE_CHR, byte), location)
            if byte != 0:
                current = self.offset(current, 1, location)

    def intern_string(self, text: str) -> Pointer:
        data = text.encode("utf-8") + b"\0"
        base = self.allocate(CType("char"), len(data), readonly=True)
        for i, byte in enumerate(data):
            self.values[base + i] = wrap_char(byte)
        return self.pointer_to(base)

    # ---- checkpoints ----

    def begin_checkpoint(self) -> None:
        self._journal = []

    def end_checkpoint(self) -> None:
        self._journal = None

    def rollback(self) -> None:
        journal = self._journal
        if journal is None:
            return
        for index, previous in reversed(journal):
            self.values[index] = previous
        self._journal = None

    # ---- serialization ----

    def snapshot(self) -> Dict[str, Any]:
        top = self.top
        return {
            "top": top,
            "next_address": self.next_address,
            "values": [encode_payload(v) for v in self.values[:top]],
            "ctypes": [encode_ctype(c) for c in self.ctypes[:top]],
            # Generations above the top still guard released slots.
            "generations": self.generations[: max(top, int(np.flatnonzero(self.generations).max(initial=-1)) + 1)].tolist(),
            "addresses": self.addresses[:top].tolist(),
            "origins": self.origins[:top].tolist(),
            "lengths": self.lengths[:top].tolist(),
            "readonly": self.readonly[:top].tolist(),
        }

    @classmethod
    def restore(cls, data: Dict[str, Any]) -> "Memory":
        top = int(data["top"])
        generations = data["generations"]
        memory = cls(capacity=max(64, top, len(generations)))
        memory.top = top
        memory.next_address = int(data["next_address"])
        memory.generations[: len(generations)] = generations
        memory.addresses[:top] = data["addresses"]
        memory.origins[:top] = data["origins"]
        memory.lengths[:top] = data["lengths"]
        memory.readonly[:top] = data["readonly"]
        memory.live[:top] = True
        for i in range(top):
            memory.values[i] = decode_payload(data["values"][i])
            memory.ctypes[i] = decode_ctype(data["ctypes"][i])
        return memory


def encode_ctype(ctype: CType) -> List[Any]:
    return [ctype.base, ctype.pointer_depth]


def decode_ctype(data: List[Any]) -> CType:
    return CType(str(data[0]), int(data[1]))


def encode_payload(payload: Any) -> Any:
    if isinstance(payload, Pointer):
        return {
            "ptr": [payload.index, payload.generation, payload.origin, payload.address],
            "ctype": encode_ctype(payload.ctype),
        }
    return payload


def decode_payload(data: Any) -> Any:
    if isinstance(data, dict):
        index, generation, origin, address = data["ptr"]
        return Pointer(int(index), int(generation), int(origin), int(address), decode_ctype(data["ctype"]))
    return data


def encode_value(value: Value) -> List[Any]:
    return [value.type, encode_payload(value.value)]


def decode_value(data: List[Any]) -> Value:
    return Value(str(data[0]), decode_payload(data[1]))
