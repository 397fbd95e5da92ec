from __future__ import annotations
import json
import operator
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

import numpy as np

from errors import CPlayError, EvalError, StateError
from lexer import Lexer
from library import DEFAULT_SEED, Builtins
from memory import (
    TYPE_CHR,
    TYPE_FLT,
    TYPE_INT,
    TYPE_PTR,
    VOID,
    Binding,
    CType,
    Memory,
    Pointer,
    Value,
    coerce,
    decode_ctype,
    encode_ctype,
    wrap_int32,
)
from parser import (
    AssignmentExpression,
    BinaryExpression,
    Block,
    BreakStatement,
    CallExpression,
    CastExpression,
    CommaExpression,
    ConditionalExpression,
    ContinueStatement,
    Declaration,
    Declarator,
    DoWhileStatement,
    EmptyStatement,
    Expression,
    ExpressionStatement,
    ForStatement,
    Identifier,
    IfStatement,
    IndexExpression,
    InitializerList,
    Literal,
    Parser,
    PostfixExpression,
    Program,
    ReturnStatement,
    SizeofExpression,
    SourceLocation,
    Statement,
    StringLiteral,
    SwitchStatement,
    UnaryExpression,
    WhileStatement,
)


DEFAULT_MAX_STEPS = 1_000_000
DEFAULT_TIME_LIMIT: Optional[float] = None

STATE_VERSION = 1
HISTORY_LIMIT = 256
# The wall clock is consulted once per this many steps.
TIME_CHECK_INTERVAL = 1024

INT_CTYPE = CType("int")
CHAR_CTYPE = CType("char")
DOUBLE_CTYPE = CType("double")

COMPARISONS: Dict[str, Callable[[Any, Any], bool]] = {
    "<": operator.lt,
    ">": operator.gt,
    "<=": operator.le,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}
INT_OPS: Dict[str, Callable[[int, int], int]] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "&": operator.and_,
    "|": operator.or_,
    "^": operator.xor,
}
FLOAT_OPS: Dict[str, Callable[[Any, Any], Any]] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
}
INTEGRAL = (TYPE_INT, TYPE_CHR)


class ReturnSignal(Exception):
    def __init__(self, value: Optional[Value]) -> None:
        super().__init__(value)
        self.value = value


class BreakSignal(Exception):
    def __init__(self) -> None:
        super().__init__()


class ContinueSignal(Exception):
    def __init__(self) -> None:
        super().__init__()


class InputRequired(Exception):
    """Raised by a blocking library call when no input line is queued.

    While the signal unwinds, every enclosing statement appends the position it
    was executing to ``cursor`` (innermost first). ``state`` is filled in at the
    checkpoint that rolled back the interrupted expression.
    """

    def __init__(self, pending: Dict[str, Any]) -> None:
        super().__init__(pending["prompt"])
        self.pending = pending
        self.cursor: List[List[Any]] = []
        self.state: Optional[Dict[str, Any]] = None


@dataclass
class Scope:
    mark: Tuple[int, int]
    bindings: Dict[str, Binding] = field(default_factory=dict)


class Environment:
    """Stack of block scopes layered over the memory arena."""

    def __init__(self, memory: Memory) -> None:
        self.memory = memory
        self.scopes: List[Scope] = []

    def push(self) -> None:
        self.scopes.append(Scope(mark=self.memory.mark()))

    def pop(self) -> None:
        scope = self.scopes.pop()
        self.memory.release(scope.mark)

    def declared_here(self, name: str) -> bool:
        return bool(self.scopes) and name in self.scopes[-1].bindings

    def declare(self, name: str, ctype: CType, length: Optional[int], location: Optional[SourceLocation]) -> Binding:
        if self.declared_here(name):
            raise EvalError(f"redeclaration of '{name}'", location=location, rule="DECL")
        index = self.memory.allocate(ctype, 1 if length is None else length)
        binding = Binding(name=name, ctype=ctype, index=index, length=length)
        self.scopes[-1].bindings[name] = binding
        return binding

    def lookup(self, name: str, location: Optional[SourceLocation]) -> Binding:
        for scope in reversed(self.scopes):
            binding = scope.bindings.get(name)
            if binding is not None:
                return binding
        raise EvalError(f"'{name}' undeclared", location=location, rule="IDENT")

    def snapshot(self) -> Dict[str, str]:
        memory = self.memory
        visible: Dict[str, str] = {}
        for scope in self.scopes:
            for name, binding in scope.bindings.items():
                if binding.is_array:
                    visible[name] = f"{binding.ctype}[{binding.length}]"
                    continue
                payload = memory.values[binding.index]
                visible[name] = payload.render() if isinstance(payload, Pointer) else repr(payload)
        return visible

    def encode(self) -> List[Dict[str, Any]]:
        return [
            {
                "mark": list(scope.mark),
                "bindings": [
                    [binding.name, encode_ctype(binding.ctype), binding.index, binding.length]
                    for binding in scope.bindings.values()
                ],
            }
            for scope in self.scopes
        ]

    @classmethod
    def decode(cls, memory: Memory, data: List[Dict[str, Any]]) -> "Environment":
        env = cls(memory)
        for entry in data:
            top, next_address = entry["mark"]
            scope = Scope(mark=(int(top), int(next_address)))
            for name, ctype, index, length in entry["bindings"]:
                scope.bindings[name] = Binding(
                    name=str(name),
                    ctype=decode_ctype(ctype),
                    index=int(index),
                    length=None if length is None else int(length),
                )
            env.scopes.append(scope)
        return env


@dataclass
class StateEntry:
    step_index: int
    rule: str
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    env_snapshot: Optional[Dict[str, str]]


class StateLogger:
    def __init__(self, verbose: bool, history: int = HISTORY_LIMIT) -> None:
        self.verbose = verbose
        # Only the most recent entry is needed unless a verbose history was requested.
        self.entries: Deque[StateEntry] = deque(maxlen=history if verbose else 1)
        self.next_step_index = 0

    def record(
        self,
        *,
        rule: str,
        location: Optional[SourceLocation],
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        entry = StateEntry(
            step_index=self.next_step_index,
            rule=rule,
            source_location=location,
            statement=location.statement if location else None,
            env_snapshot=env_snapshot,
        )
        self.entries.append(entry)
        self.next_step_index += 1
        return entry

    @property
    def last_entry(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None


@dataclass
class Completed:
    output: str
    exit_status: int


@dataclass
class Suspended:
    output: str
    prompt: str
    state: Dict[str, Any]


class Interpreter:
    def __init__(
        self,
        *,
        source: str,
        filename: str = "<string>",
        verbose: bool = False,
        max_steps: int = DEFAULT_MAX_STEPS,
        time_limit: Optional[float] = DEFAULT_TIME_LIMIT,
        stdin: Optional[List[str]] = None,
    ) -> None:
        self.source = source
        self._source_lines = source.splitlines()
        self.filename = filename
        self.verbose = verbose
        self.max_steps = max_steps
        self.time_limit = time_limit
        self.builtins = Builtins()
        self.logger = StateLogger(verbose=verbose)
        self.memory = Memory()
        self.env = Environment(self.memory)
        self.output: List[str] = []
        self.seed = DEFAULT_SEED
        self.stdin: List[str] = list(stdin or [])
        self.stdin_pos = 0
        self.strings: Dict[str, Pointer] = {}
        self.program: Optional[Program] = None
        self._resume_path: Optional[List[List[Any]]] = None
        self._resume_at = 0
        self._deadline: Optional[float] = None

    @property
    def output_text(self) -> str:
        # %c writes raw bytes as surrogate escapes; runs of them decode as UTF-8 here.
        raw = "".join(self.output).encode("utf-8", errors="surrogateescape")
        return raw.decode("utf-8", errors="replace")

    def parse(self) -> Program:
        lexer = Lexer(self.source, self.filename)
        tokens = lexer.tokenize()
        parser = Parser(tokens, self.filename, self._source_lines)
        return parser.parse()

    def run(self) -> Union[Completed, Suspended]:
        program = self.parse()
        self.program = program
        for text in program.strings:
            self.strings[text] = self.memory.intern_string(text)
        return self._execute_program(program)

    def resume(self, state: Dict[str, Any], text: str) -> Union[Completed, Suspended]:
        """Continue a suspended run.

        The first line of ``text`` answers the pending input call; any further
        lines are queued for later reads, as with pre-supplied stdin.
        """
        program = self.parse()
        self.program = program
        try:
            self._restore(state, program)
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise StateError(f"continuation state is corrupt: {exc}", rule="STATE") from exc
        self.stdin.extend(text.splitlines() or [""])
        return self._execute_program(program)

    # ---- host services used by the library ----

    def write(self, text: str) -> None:
        self.output.append(text)

    def read_input(self, pending: Dict[str, Any]) -> str:
        if self.stdin_pos < len(self.stdin):
            line = self.stdin[self.stdin_pos]
            self.stdin_pos += 1
            return line
        raise InputRequired(pending)

    # ---- program driver ----

    def _execute_program(self, program: Program) -> Union[Completed, Suspended]:
        if self.time_limit is not None:
            self._deadline = time.monotonic() + self.time_limit
        try:
            try:
                self._execute_block(program.body)
            except ReturnSignal as signal:
                return Completed(self.output_text, self._exit_status(program, signal.value))
            except BreakSignal:
                raise EvalError("break statement not within loop or switch", rule="BREAK")
            except ContinueSignal:
                raise EvalError("continue statement not within a loop", rule="CONTINUE")
        except InputRequired as signal:
            if signal.state is None:
                raise EvalError(f"{signal.pending['call']} cannot be used here", rule="INPUT")
            state = signal.state
            state["cursor"] = list(reversed(signal.cursor))
            return Suspended(output=state["output"], prompt=signal.pending["prompt"], state=state)
        except CPlayError as error:
            self._annotate(error)
            raise
        except Exception as exc:
            # Python-level failures are reported like any other runtime fault.
            last = self.logger.last_entry
            wrapped = EvalError(
                f"internal interpreter error: {exc}",
                location=last.source_location if last else None,
                rule="internal",
            )
            self._annotate(wrapped)
            raise wrapped from exc
        return Completed(self.output_text, 0)

    def _annotate(self, error: CPlayError) -> None:
        last = self.logger.last_entry
        if last is None:
            return
        error.step_index = last.step_index
        if error.location is None:
            error.location = last.source_location

    def _exit_status(self, program: Program, value: Optional[Value]) -> int:
        if value is None or program.return_type == "void":
            return 0
        return int(coerce(INT_CTYPE, value))

    # ---- suspension ----

    def _capture_state(self, pending: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "source": self.source,
            "filename": self.filename,
            "memory": self.memory.snapshot(),
            "scopes": self.env.encode(),
            "strings": [pointer.index for pointer in self.strings.values()],
            "output": self.output_text,
            "seed": self.seed,
            "steps": self.logger.next_step_index,
            "stdin": self.stdin[self.stdin_pos:],
            "pending": dict(pending),
            "cursor": [],
        }

    def _restore(self, state: Dict[str, Any], program: Program) -> None:
        if state.get("version") != STATE_VERSION:
            raise StateError("unsupported continuation state version", rule="STATE")
        self.memory = Memory.restore(state["memory"])
        self.env = Environment.decode(self.memory, state["scopes"])
        indices = state["strings"]
        if len(indices) != len(program.strings):
            raise StateError("continuation state does not match the program", rule="STATE")
        self.strings = {text: self.memory.pointer_to(int(index)) for text, index in zip(program.strings, indices)}
        self.output = [str(state["output"])]
        self.seed = int(state["seed"])
        self.logger.next_step_index = int(state["steps"])
        self.stdin = [str(line) for line in state["stdin"]]
        self.stdin_pos = 0
        cursor = [list(element) for element in state["cursor"]]
        if not cursor:
            raise StateError("continuation state has no resume point", rule="STATE")
        self._resume_path = cursor
        self._resume_at = 0

    def _take(self, kind: str) -> Optional[List[Any]]:
        path = self._resume_path
        if path is None:
            return None
        if self._resume_at >= len(path) or path[self._resume_at][0] != kind:
            raise StateError("continuation cursor does not match the program", rule="STATE")
        element = path[self._resume_at]
        self._resume_at += 1
        return element

    def _finish_resume(self) -> None:
        assert self._resume_path is not None
        if self._resume_at != len(self._resume_path):
            raise StateError("continuation cursor does not match the program", rule="STATE")
        self._resume_path = None

    def _run_checkpointed(self, action: Callable[[], Any]) -> Any:
        if self._resume_path is not None:
            self._finish_resume()
        output_mark = len(self.output)
        seed, stdin_pos = self.seed, self.stdin_pos
        self.memory.begin_checkpoint()
        try:
            return action()
        except InputRequired as signal:
            self.memory.rollback()
            del self.output[output_mark:]
            self.seed, self.stdin_pos = seed, stdin_pos
            signal.state = self._capture_state(signal.pending)
            raise
        finally:
            self.memory.end_checkpoint()

    def _evaluate_checkpointed(self, expression: Expression) -> Value:
        return self._run_checkpointed(lambda: self._evaluate(expression))

    # ---- statements ----

    def _log_step(self, *, rule: str, location: Optional[SourceLocation]) -> None:
        env_snapshot = self.env.snapshot() if self.verbose else None
        entry = self.logger.record(rule=rule, location=location, env_snapshot=env_snapshot)
        if entry.step_index >= self.max_steps:
            raise EvalError(
                f"step limit exceeded ({self.max_steps} steps); possible infinite loop",
                location=location,
                rule="BUDGET",
            )
        if (
            self._deadline is not None
            and entry.step_index % TIME_CHECK_INTERVAL == 0
            and time.monotonic() > self._deadline
        ):
            raise EvalError("time limit exceeded", location=location, rule="BUDGET")

    def _execute_block(self, block: Block) -> None:
        element = self._take("block")
        start = 0
        if element is None:
            self.env.push()
        else:
            start = int(element[1])
        try:
            statements = block.statements
            execute = self._execute_statement
            for index in range(start, len(statements)):
                try:
                    execute(statements[index])
                except InputRequired as signal:
                    signal.cursor.append(["block", index])
                    raise
        finally:
            self.env.pop()

    def _execute_statement(self, statement: Statement) -> None:
        if self._resume_path is None:
            self._log_step(rule=statement.__class__.__name__, location=statement.location)
        if isinstance(statement, ExpressionStatement):
            self._take("expr")
            try:
                self._evaluate_checkpointed(statement.expression)
            except InputRequired as signal:
                signal.cursor.append(["expr"])
                raise
            return
        if isinstance(statement, Declaration):
            element = self._take("decl")
            start = int(element[1]) if element else 0
            for position in range(start, len(statement.declarators)):
                try:
                    self._declare(statement.declarators[position])
                except InputRequired as signal:
                    signal.cursor.append(["decl", position])
                    raise
            return
        if isinstance(statement, Block):
            self._execute_block(statement)
            return
        if isinstance(statement, IfStatement):
            self._execute_if(statement)
            return
        if isinstance(statement, WhileStatement):
            self._execute_while(statement)
            return
        if isinstance(statement, DoWhileStatement):
            self._execute_do_while(statement)
            return
        if isinstance(statement, ForStatement):
            self._execute_for(statement)
            return
        if isinstance(statement, SwitchStatement):
            self._execute_switch(statement)
            return
        if isinstance(statement, ReturnStatement):
            self._take("return")
            value: Optional[Value] = None
            if statement.expression is not None:
                try:
                    value = self._evaluate_checkpointed(statement.expression)
                except InputRequired as signal:
                    signal.cursor.append(["return"])
                    raise
            raise ReturnSignal(value)
        if isinstance(statement, BreakStatement):
            raise BreakSignal()
        if isinstance(statement, ContinueStatement):
            raise ContinueSignal()
        if isinstance(statement, EmptyStatement):
            return
        raise EvalError(f"Unsupported statement {statement.__class__.__name__}", location=statement.location)

    def _declare(self, declarator: Declarator) -> None:
        location = declarator.location
        if self.env.declared_here(declarator.name):
            raise EvalError(f"redeclaration of '{declarator.name}'", location=location, rule="DECL")
        # Sizes and initial values are computed before any storage is allocated.
        length, initial = self._run_checkpointed(lambda: self._evaluate_declarator(declarator))
        binding = self.env.declare(declarator.name, declarator.ctype, length, location)
        store_slot = self.memory.store_slot
        for offset, value in enumerate(initial):
            store_slot(binding.index + offset, value, location)

    def _evaluate_declarator(self, declarator: Declarator) -> Tuple[Optional[int], List[Value]]:
        name = declarator.name
        location = declarator.location
        initializer = declarator.initializer
        if not declarator.is_array:
            if initializer is None:
                return None, []
            if isinstance(initializer, InitializerList):
                if len(initializer.items) != 1:
                    raise EvalError(f"invalid initializer list for scalar '{name}'", location=location, rule="DECL")
                initializer = initializer.items[0]
            return None, [self._evaluate(initializer)]

        length: Optional[int] = None
        if declarator.array_size is not None:
            size = self._evaluate(declarator.array_size)
            if size.type not in INTEGRAL:
                raise EvalError(f"size of array '{name}' has non-integer type", location=location, rule="DECL")
            length = int(size.value)
            if length <= 0:
                raise EvalError(f"size of array '{name}' must be positive, got {length}", location=location, rule="DECL")
        values: List[Value] = []
        if isinstance(initializer, StringLiteral):
            if declarator.ctype != CHAR_CTYPE:
                raise EvalError(
                    f"array '{name}' of type '{declarator.ctype}' cannot be initialized from a string literal",
                    location=location,
                    rule="DECL",
                )
            data = initializer.value.encode("utf-8")
            if length is None:
                length = len(data) + 1
            elif len(data) > length:
                raise EvalError(f"initializer string for array '{name}' is too long", location=location, rule="DECL")
            values = [Value(TYPE_CHR, byte) for byte in data]
        elif isinstance(initializer, InitializerList):
            values = [self._evaluate(item) for item in initializer.items]
            if length is None:
                length = len(values)
            elif len(values) > length:
                raise EvalError(f"excess elements in initializer for array '{name}'", location=location, rule="DECL")
        elif initializer is not None:
            raise EvalError(f"invalid initializer for array '{name}'", location=location, rule="DECL")
        if length is None or length <= 0:
            raise EvalError(f"array '{name}' must have a positive size", location=location, rule="DECL")
        return length, values

    def _test(self, condition: Expression) -> bool:
        return self._truthy(self._evaluate_checkpointed(condition))

    def _execute_if(self, statement: IfStatement) -> None:
        branches: List[Tuple[Expression, Statement]] = [(statement.condition, statement.then_branch)]
        branches.extend((branch.condition, branch.body) for branch in statement.elifs)
        element = self._take("if")
        start = 0
        if element is not None:
            part, index = element[1], int(element[2])
            if part == "body":
                body = branches[index][1] if index < len(branches) else statement.else_branch
                assert body is not None
                self._execute_if_body(body, index)
                return
            start = index
        for index in range(start, len(branches)):
            condition, body = branches[index]
            try:
                taken = self._test(condition)
            except InputRequired as signal:
                signal.cursor.append(["if", "cond", index])
                raise
            if taken:
                self._execute_if_body(body, index)
                return
        if statement.else_branch is not None:
            self._execute_if_body(statement.else_branch, len(branches))

    def _execute_if_body(self, body: Statement, index: int) -> None:
        try:
            self._execute_statement(body)
        except InputRequired as signal:
            signal.cursor.append(["if", "body", index])
            raise

    def _execute_while(self, statement: WhileStatement) -> None:
        element = self._take("while")
        skip_condition = element is not None and element[1] == "body"
        while True:
            if not skip_condition:
                try:
                    proceed = self._test(statement.condition)
                except InputRequired as signal:
                    signal.cursor.append(["while", "cond"])
                    raise
                if not proceed:
                    return
                self._log_step(rule="WhileIteration", location=statement.location)
            skip_condition = False
            try:
                self._execute_statement(statement.body)
            except BreakSignal:
                return
            except ContinueSignal:
                continue
            except InputRequired as signal:
                signal.cursor.append(["while", "body"])
                raise

    def _execute_do_while(self, statement: DoWhileStatement) -> None:
        element = self._take("do")
        part = element[1] if element else None
        while True:
            if part != "cond":
                if part is None:
                    self._log_step(rule="DoWhileIteration", location=statement.location)
                try:
                    self._execute_statement(statement.body)
                except BreakSignal:
                    return
                except ContinueSignal:
                    pass
                except InputRequired as signal:
                    signal.cursor.append(["do", "body"])
                    raise
            part = None
            try:
                proceed = self._test(statement.condition)
            except InputRequired as signal:
                signal.cursor.append(["do", "cond"])
                raise
            if not proceed:
                return

    def _execute_for(self, statement: ForStatement) -> None:
        element = self._take("for")
        part = element[1] if element else None
        if element is None:
            self.env.push()
        try:
            if part in (None, "init"):
                if statement.init is not None:
                    try:
                        self._execute_statement(statement.init)
                    except InputRequired as signal:
                        signal.cursor.append(["for", "init"])
                        raise
                part = "cond"
            while True:
                if part == "cond":
                    if statement.condition is not None:
                        try:
                            proceed = self._test(statement.condition)
                        except InputRequired as signal:
                            signal.cursor.append(["for", "cond"])
                            raise
                        if not proceed:
                            return
                    self._log_step(rule="ForIteration", location=statement.location)
                    part = "body"
                if part == "body":
                    try:
                        self._execute_statement(statement.body)
                    except BreakSignal:
                        return
                    except ContinueSignal:
                        pass
                    except InputRequired as signal:
                        signal.cursor.append(["for", "body"])
                        raise
                if statement.step is not None:
                    try:
                        self._evaluate_checkpointed(statement.step)
                    except InputRequired as signal:
                        signal.cursor.append(["for", "step"])
                        raise
                part = "cond"
        finally:
            self.env.pop()

    def _execute_switch(self, statement: SwitchStatement) -> None:
        element = self._take("switch")
        if element is None:
            self.env.push()
        try:
            if element is None or element[1] == "subject":
                try:
                    subject = self._evaluate_checkpointed(statement.subject)
                except InputRequired as signal:
                    signal.cursor.append(["switch", "subject"])
                    raise
                if subject.type not in INTEGRAL:
                    raise EvalError("switch quantity is not an integer", location=statement.location, rule="SWITCH")
                selected = self._select_clause(statement, int(subject.value))
                if selected is None:
                    return
                start, position = selected, 0
            else:
                start, position = int(element[2]), int(element[3])
            clauses = statement.clauses
            for clause_index in range(start, len(clauses)):
                body = clauses[clause_index].statements
                for index in range(position, len(body)):
                    try:
                        self._execute_statement(body[index])
                    except InputRequired as signal:
                        signal.cursor.append(["switch", "clause", clause_index, index])
                        raise
                position = 0
        except BreakSignal:
            return
        finally:
            self.env.pop()

    def _select_clause(self, statement: SwitchStatement, subject: int) -> Optional[int]:
        # Cases are tried in source order; default only applies when none matches.
        default: Optional[int] = None
        for index, clause in enumerate(statement.clauses):
            if clause.value is None:
                default = index
                continue
            label = self._evaluate(clause.value)
            if label.type not in INTEGRAL:
                raise EvalError("case label does not reduce to an integer", location=clause.location, rule="SWITCH")
            if int(label.value) == subject:
                return index
        return default

    # ---- expressions ----

    def _evaluate(self, expression: Expression) -> Value:
        if isinstance(expression, Literal):
            if expression.literal_type == TYPE_PTR:
                return Value(TYPE_PTR, Pointer.null())
            return Value(expression.literal_type, expression.value)
        if isinstance(expression, Identifier):
            binding = self.env.lookup(expression.name, expression.location)
            if binding.is_array:
                return Value(TYPE_PTR, self.memory.address_of(binding))
            return self.memory.load_slot(binding.index)
        if isinstance(expression, StringLiteral):
            return Value(TYPE_PTR, self.strings[expression.value])
        if isinstance(expression, AssignmentExpression):
            return self._evaluate_assignment(expression)
        if isinstance(expression, BinaryExpression):
            return self._evaluate_binary(expression)
        if isinstance(expression, UnaryExpression):
            return self._evaluate_unary(expression)
        if isinstance(expression, PostfixExpression):
            pointer = self._lvalue(expression.operand)
            old = self.memory.load(pointer, expression.location)
            delta = 1 if expression.op == "++" else -1
            self.memory.store(pointer, self._step_value(old, delta, expression.location), expression.location)
            return old
        if isinstance(expression, IndexExpression):
            return self.memory.load(self._index_address(expression), expression.location)
        if isinstance(expression, CallExpression):
            return self._evaluate_call(expression)
        if isinstance(expression, ConditionalExpression):
            taken = self._truthy(self._evaluate(expression.condition))
            return self._evaluate(expression.then_expr if taken else expression.else_expr)
        if isinstance(expression, CommaExpression):
            self._evaluate(expression.left)
            return self._evaluate(expression.right)
        if isinstance(expression, CastExpression):
            return self._evaluate_cast(expression)
        if isinstance(expression, SizeofExpression):
            return Value(TYPE_INT, self._sizeof(expression))
        raise EvalError(f"Unsupported expression {expression.__class__.__name__}", location=expression.location)

    def _truthy(self, value: Value) -> bool:
        if value.type == TYPE_PTR:
            return not value.value.is_null
        return value.value != 0

    def _expect_pointer(self, value: Value, context: str, location: SourceLocation) -> Pointer:
        if value.type != TYPE_PTR:
            raise EvalError(
                f"invalid type argument of {context} (have '{_type_name(value)}')", location=location, rule="DEREF"
            )
        return value.value

    def _lvalue(self, expression: Expression) -> Pointer:
        if isinstance(expression, Identifier):
            binding = self.env.lookup(expression.name, expression.location)
            if binding.is_array:
                raise EvalError(
                    f"assignment to array '{binding.name}' is not allowed", location=expression.location, rule="ASSIGN"
                )
            return self.memory.address_of(binding)
        if isinstance(expression, IndexExpression):
            return self._index_address(expression)
        if isinstance(expression, UnaryExpression) and expression.op == "*":
            return self._expect_pointer(self._evaluate(expression.operand), "unary '*'", expression.location)
        raise EvalError("expression is not assignable", location=expression.location, rule="ASSIGN")

    def _index_address(self, expression: IndexExpression) -> Pointer:
        location = expression.location
        subscript = self._evaluate(expression.index)
        if subscript.type not in INTEGRAL:
            raise EvalError("array subscript is not an integer", location=location, rule="INDEX")
        index = int(subscript.value)
        base = expression.base
        if isinstance(base, Identifier):
            binding = self.env.lookup(base.name, base.location)
            if binding.is_array:
                assert binding.length is not None
                if not 0 <= index < binding.length:
                    raise EvalError(
                        f"array index {index} out of bounds for '{binding.name}' with length {binding.length}",
                        location=location,
                        rule="INDEX",
                    )
                return self.memory.address_of(binding, index)
        target = self._evaluate(base)
        if target.type != TYPE_PTR:
            raise EvalError("subscripted value is neither array nor pointer", location=location, rule="INDEX")
        return self.memory.offset(target.value, index, location)

    def _step_value(self, value: Value, delta: int, location: SourceLocation) -> Value:
        if value.type == TYPE_PTR:
            return Value(TYPE_PTR, self.memory.offset(value.value, delta, location))
        if value.type == TYPE_FLT:
            return Value(TYPE_FLT, value.value + delta)
        return Value(TYPE_INT, int(value.value) + delta)

    def _evaluate_assignment(self, expression: AssignmentExpression) -> Value:
        location = expression.location
        pointer = self._lvalue(expression.target)
        value = self._evaluate(expression.value)
        if expression.op != "=":
            current = self.memory.load(pointer, location)
            value = self._apply_binary(expression.op[:-1], current, value, location)
        return self.memory.store(pointer, value, location)

    def _evaluate_unary(self, expression: UnaryExpression) -> Value:
        op = expression.op
        location = expression.location
        if op == "&":
            return Value(TYPE_PTR, self._address_of(expression.operand))
        if op in ("++", "--"):
            pointer = self._lvalue(expression.operand)
            old = self.memory.load(pointer, location)
            return self.memory.store(pointer, self._step_value(old, 1 if op == "++" else -1, location), location)
        value = self._evaluate(expression.operand)
        if op == "*":
            return self.memory.load(self._expect_pointer(value, "unary '*'", location), location)
        if op == "!":
            return Value(TYPE_INT, 0 if self._truthy(value) else 1)
        if value.type == TYPE_PTR:
            raise EvalError(f"invalid operand to unary '{op}' (have '{_type_name(value)}')", location=location, rule="UNARY")
        if op == "-":
            if value.type == TYPE_FLT:
                return Value(TYPE_FLT, -value.value)
            return Value(TYPE_INT, wrap_int32(-int(value.value)))
        if op == "+":
            if value.type == TYPE_FLT:
                return value
            return Value(TYPE_INT, int(value.value))
        if op == "~":
            if value.type == TYPE_FLT:
                raise EvalError("invalid operand to unary '~' (have 'double')", location=location, rule="UNARY")
            return Value(TYPE_INT, wrap_int32(~int(value.value)))
        raise EvalError(f"Unsupported unary operator '{op}'", location=location, rule="UNARY")

    def _address_of(self, operand: Expression) -> Pointer:
        if isinstance(operand, Identifier):
            return self.memory.address_of(self.env.lookup(operand.name, operand.location))
        if isinstance(operand, IndexExpression):
            return self._index_address(operand)
        if isinstance(operand, UnaryExpression) and operand.op == "*":
            return self._expect_pointer(self._evaluate(operand.operand), "unary '*'", operand.location)
        raise EvalError("cannot take the address of a temporary value", location=operand.location, rule="ADDR")

    def _evaluate_binary(self, expression: BinaryExpression) -> Value:
        op = expression.op
        if op == "&&":
            if not self._truthy(self._evaluate(expression.left)):
                return Value(TYPE_INT, 0)
            return Value(TYPE_INT, 1 if self._truthy(self._evaluate(expression.right)) else 0)
        if op == "||":
            if self._truthy(self._evaluate(expression.left)):
                return Value(TYPE_INT, 1)
            return Value(TYPE_INT, 1 if self._truthy(self._evaluate(expression.right)) else 0)
        left = self._evaluate(expression.left)
        right = self._evaluate(expression.right)
        return self._apply_binary(op, left, right, expression.location)

    def _apply_binary(self, op: str, left: Value, right: Value, location: SourceLocation) -> Value:
        if left.type == TYPE_PTR or right.type == TYPE_PTR:
            return self._pointer_binary(op, left, right, location)
        if op in COMPARISONS:
            if left.type == TYPE_FLT or right.type == TYPE_FLT:
                result = COMPARISONS[op](float(left.value), float(right.value))
            else:
                result = COMPARISONS[op](int(left.value), int(right.value))
            return Value(TYPE_INT, 1 if result else 0)
        if left.type == TYPE_FLT or right.type == TYPE_FLT:
            func = FLOAT_OPS.get(op)
            if func is None:
                raise EvalError(
                    f"invalid operands to binary '{op}' (have '{_type_name(left)}' and '{_type_name(right)}')",
                    location=location,
                    rule="BINARY",
                )
            with np.errstate(all="ignore"):
                return Value(TYPE_FLT, float(func(np.float64(left.value), np.float64(right.value))))
        return Value(TYPE_INT, self._int_binary(op, int(left.value), int(right.value), location))

    def _int_binary(self, op: str, a: int, b: int, location: SourceLocation) -> int:
        if op in ("/", "%"):
            if b == 0:
                raise EvalError("division by zero" if op == "/" else "modulo by zero", location=location, rule="DIV")
            quotient = abs(a) // abs(b)
            if (a < 0) != (b < 0):
                quotient = -quotient
            return wrap_int32(quotient if op == "/" else a - b * quotient)
        if op == "<<":
            return wrap_int32(a << (b & 31))
        if op == ">>":
            return wrap_int32(a >> (b & 31))
        func = INT_OPS.get(op)
        if func is None:
            raise EvalError(f"Unsupported binary operator '{op}'", location=location, rule="BINARY")
        return wrap_int32(func(a, b))

    def _pointer_binary(self, op: str, left: Value, right: Value, location: SourceLocation) -> Value:
        memory = self.memory
        if op == "+":
            if left.type == TYPE_PTR and right.type in INTEGRAL:
                return Value(TYPE_PTR, memory.offset(left.value, int(right.value), location))
            if right.type == TYPE_PTR and left.type in INTEGRAL:
                return Value(TYPE_PTR, memory.offset(right.value, int(left.value), location))
        elif op == "-":
            if left.type == TYPE_PTR and right.type in INTEGRAL:
                return Value(TYPE_PTR, memory.offset(left.value, -int(right.value), location))
            if left.type == TYPE_PTR and right.type == TYPE_PTR:
                a: Pointer = left.value
                b: Pointer = right.value
                if a.origin != b.origin or a.generation != b.generation or a.is_null or a.is_wild:
                    raise EvalError("subtraction of pointers into different objects", location=location, rule="PTR")
                return Value(TYPE_INT, a.index - b.index)
        elif op in COMPARISONS and TYPE_FLT not in (left.type, right.type):
            return Value(TYPE_INT, 1 if COMPARISONS[op](_pointer_key(left), _pointer_key(right)) else 0)
        raise EvalError(
            f"invalid operands to binary '{op}' (have '{_type_name(left)}' and '{_type_name(right)}')",
            location=location,
            rule="PTR",
        )

    def _evaluate_call(self, expression: CallExpression) -> Value:
        name = expression.name
        if name == "main":
            raise EvalError("recursive call to main is not supported", location=expression.location, rule="CALL")
        if not self.builtins.has(name):
            raise EvalError(f"call to unsupported function '{name}'", location=expression.location, rule="CALL")
        args = [self._evaluate(arg) for arg in expression.args]
        return self.builtins.invoke(self, name, args, expression.location)

    def _evaluate_cast(self, expression: CastExpression) -> Value:
        ctype = expression.ctype
        location = expression.location
        value = self._evaluate(expression.operand)
        if ctype.is_pointer:
            if value.type == TYPE_PTR:
                p: Pointer = value.value
                return Value(TYPE_PTR, Pointer(p.index, p.generation, p.origin, p.address, ctype.pointee()))
            return Value(TYPE_PTR, coerce(ctype, value, location=location))
        if value.type == TYPE_PTR:
            value = Value(TYPE_INT, value.value.address)
        return Value(ctype.value_type, coerce(ctype, value, location=location))

    def _sizeof(self, expression: SizeofExpression) -> int:
        if expression.ctype is not None:
            return expression.ctype.size
        operand = expression.operand
        assert operand is not None
        if isinstance(operand, Identifier):
            binding = self.env.lookup(operand.name, operand.location)
            return binding.ctype.size * (binding.length or 1)
        if isinstance(operand, StringLiteral):
            return len(operand.value.encode("utf-8")) + 1
        return self._static_ctype(operand).size

    def _static_ctype(self, expression: Expression) -> CType:
        """Type of an expression without evaluating it (arrays decay to pointers)."""
        if isinstance(expression, Literal):
            if expression.literal_type == TYPE_FLT:
                return DOUBLE_CTYPE
            if expression.literal_type == TYPE_PTR:
                return VOID.pointer_to()
            return INT_CTYPE
        if isinstance(expression, Identifier):
            binding = self.env.lookup(expression.name, expression.location)
            return binding.ctype.pointer_to() if binding.is_array else binding.ctype
        if isinstance(expression, StringLiteral):
            return CHAR_CTYPE.pointer_to()
        if isinstance(expression, CastExpression):
            return expression.ctype
        if isinstance(expression, IndexExpression):
            return self._pointee_ctype(self._static_ctype(expression.base), expression.location)
        if isinstance(expression, UnaryExpression):
            if expression.op == "*":
                return self._pointee_ctype(self._static_ctype(expression.operand), expression.location)
            if expression.op == "&":
                inner = expression.operand
                if isinstance(inner, Identifier):
                    return self.env.lookup(inner.name, inner.location).ctype.pointer_to()
                return self._static_ctype(inner).pointer_to()
            if expression.op == "!":
                return INT_CTYPE
            return _promote(self._static_ctype(expression.operand))
        if isinstance(expression, (PostfixExpression,)):
            return self._static_ctype(expression.operand)
        if isinstance(expression, AssignmentExpression):
            return self._static_ctype(expression.target)
        if isinstance(expression, CommaExpression):
            return self._static_ctype(expression.right)
        if isinstance(expression, ConditionalExpression):
            return _promote(self._static_ctype(expression.then_expr))
        if isinstance(expression, CallExpression):
            builtin = self.builtins.table.get(expression.name)
            return builtin.returns if builtin is not None else INT_CTYPE
        if isinstance(expression, BinaryExpression):
            if expression.op in COMPARISONS or expression.op in ("&&", "||"):
                return INT_CTYPE
            left = self._static_ctype(expression.left)
            right = self._static_ctype(expression.right)
            if left.is_pointer and right.is_pointer:
                return INT_CTYPE
            if left.is_pointer or right.is_pointer:
                return left if left.is_pointer else right
            if TYPE_FLT in (left.value_type, right.value_type):
                return DOUBLE_CTYPE
            return INT_CTYPE
        return INT_CTYPE

    def _pointee_ctype(self, ctype: CType, location: SourceLocation) -> CType:
        if not ctype.is_pointer:
            raise EvalError(f"invalid type argument of unary '*' (have '{ctype}')", location=location, rule="DEREF")
        return ctype.pointee()


def _promote(ctype: CType) -> CType:
    if not ctype.is_pointer and ctype.base == "char":
        return INT_CTYPE
    return ctype


def _pointer_key(value: Value) -> int:
    if value.type == TYPE_PTR:
        return value.value.address
    return int(value.value)


def _type_name(value: Value) -> str:
    if value.type == TYPE_PTR:
        return f"{value.value.ctype} *"
    return {TYPE_INT: "int", TYPE_CHR: "char", TYPE_FLT: "double"}[value.type]


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]
    statement: Optional[str]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self, error: CPlayError) -> List[TracebackFrame]:
        entry = self.interpreter.logger.last_entry
        location = error.location or (entry.source_location if entry else None)
        statement = location.statement if location else None
        return [TracebackFrame(name="main", location=location, statement=statement, state_entry=entry)]

    def format_text(self, error: CPlayError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames(error):
            if frame.location:
                lines.append(
                    f"  File \"{frame.location.file}\", line {frame.location.line}, column {frame.location.column}, in {frame.name}"
                )
                if frame.statement:
                    lines.append(f"    {frame.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if frame.state_entry:
                lines.append(f"    Step: {frame.state_entry.step_index}  Rule: {frame.state_entry.rule}")
                if verbose and frame.state_entry.env_snapshot is not None:
                    snapshot = ", ".join(f"{k}={v}" for k, v in frame.state_entry.env_snapshot.items())
                    lines.append(f"    Env snapshot: {snapshot}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: CPlayError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames(error)):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "column": frame.location.column,
                    "statement": frame.location.statement,
                }
            if frame.state_entry:
                entry["step_index"] = frame.state_entry.step_index
                entry["rule"] = frame.state_entry.rule
                if frame.state_entry.env_snapshot is not None:
                    entry["env_snapshot"] = frame.state_entry.env_snapshot
            frames_json.append(entry)
        history = [
            {"step_index": item.step_index, "rule": item.rule, "line": item.source_location.line if item.source_location else None}
            for item in self.interpreter.logger.entries
        ]
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rule,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
            "history": history,
        }
        return json.dumps(data, indent=2)
