"""cplay entry points: the embedding API, the session controller and the CLI."""

from __future__ import annotations
import argparse
import json
import logging
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from continuation import decode_state, encode_state
from errors import CPlayError, InputFormatError, LexError, ParseError, StateError
from formatter import parse_scan_format, scan_input
from interpreter import (
    DEFAULT_MAX_STEPS,
    DEFAULT_TIME_LIMIT,
    Completed,
    Interpreter,
    Suspended,
    TracebackFormatter,
)


logger = logging.getLogger("cplay")
logger.addHandler(logging.NullHandler())


@dataclass
class Result:
    success: bool
    output: str
    error: Optional[str] = None
    needs_input: Optional[str] = None
    state: Optional[str] = None
    exit_status: Optional[int] = field(default=None, compare=False)
    exception: Optional[CPlayError] = field(default=None, repr=False, compare=False)

    @classmethod
    def completed(cls, output: str, exit_status: int = 0) -> "Result":
        return cls(success=True, output=output, exit_status=exit_status)

    @classmethod
    def failed(cls, output: str, error: CPlayError) -> "Result":
        return cls(success=False, output=output, error=error.message, exception=error)

    @classmethod
    def suspended(cls, output: str, prompt: str, token: str) -> "Result":
        return cls(success=True, output=output, needs_input=prompt, state=token)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "needs_input": self.needs_input,
            "state": self.state,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def _split_stdin(stdin: Union[str, List[str], None]) -> List[str]:
    if stdin is None:
        return []
    if isinstance(stdin, str):
        return stdin.splitlines()
    return [line.rstrip("\r\n") for line in stdin]


class Session:
    """Runs programs and holds at most one suspended run awaiting input."""

    def __init__(
        self,
        *,
        max_steps: int = DEFAULT_MAX_STEPS,
        time_limit: Optional[float] = DEFAULT_TIME_LIMIT,
        verbose: bool = False,
        filename: str = "<string>",
    ) -> None:
        self.max_steps = max_steps
        self.time_limit = time_limit
        self.verbose = verbose
        self.filename = filename
        self._token: Optional[str] = None
        self.last_interpreter: Optional[Interpreter] = None

    @property
    def pending(self) -> bool:
        return self._token is not None

    def compile_and_run(self, source: str, stdin: Union[str, List[str], None] = None) -> Result:
        if self._token is not None:
            logger.info("discarding suspended program before starting a new run")
            self._token = None
        interpreter = Interpreter(
            source=source,
            filename=self.filename,
            verbose=self.verbose,
            max_steps=self.max_steps,
            time_limit=self.time_limit,
            stdin=_split_stdin(stdin),
        )
        return self._drive(interpreter, None, "")

    def provide_input(self, token: str, text: str) -> Result:
        try:
            if self._token is None:
                raise StateError("no suspended program to resume", rule="STATE")
            if token != self._token:
                raise StateError("stale or unknown continuation token", rule="STATE")
            state = decode_state(token)
        except StateError as error:
            logger.warning("rejected continuation token: %s", error.message)
            return Result.failed("", error)

        answer = (text.splitlines() or [""])[0]
        pending = state.get("pending") or {}
        fmt = pending.get("format")
        if fmt is not None:
            try:
                scan_input(parse_scan_format(fmt), answer)
            except InputFormatError as error:
                logger.debug("input %r rejected for %r: %s", answer, fmt, error.message)
                # The same token stays valid so the caller can resubmit.
                result = Result.failed(str(state.get("output", "")), error)
                result.needs_input = pending.get("prompt")
                result.state = token
                return result
            except CPlayError as error:
                self._token = None
                return Result.failed(str(state.get("output", "")), error)

        self._token = None
        logger.debug("resuming %s call with %r", pending.get("call"), text)
        interpreter = Interpreter(
            source=str(state.get("source", "")),
            filename=str(state.get("filename", self.filename)),
            verbose=self.verbose,
            max_steps=self.max_steps,
            time_limit=self.time_limit,
        )
        return self._drive(interpreter, state, text)

    def _drive(self, interpreter: Interpreter, state: Optional[Dict[str, Any]], text: str) -> Result:
        self.last_interpreter = interpreter
        try:
            if state is None:
                outcome = interpreter.run()
            else:
                outcome = interpreter.resume(state, text)
        except CPlayError as error:
            return Result.failed(interpreter.output_text, error)
        if isinstance(outcome, Suspended):
            token = encode_state(outcome.state)
            self._token = token
            logger.debug("program suspended: %s", outcome.prompt)
            return Result.suspended(outcome.output, outcome.prompt, token)
        assert isinstance(outcome, Completed)
        return Result.completed(outcome.output, outcome.exit_status)


_default_session = Session()


def compile_and_run(source: str, stdin: Union[str, List[str], None] = None) -> Result:
    return _default_session.compile_and_run(source, stdin)


def provide_input(token: str, text: str) -> Result:
    return _default_session.provide_input(token, text)


def _read_answer(prompt: str) -> Optional[str]:
    try:
        return input(f"[{prompt}] ")
    except EOFError:
        return None


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run a restricted C program without compiling it")
    parser.add_argument("program", nargs="?", help="Source file path, or literal source with --source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("--stdin", dest="stdin_file", help="Read program input lines from this file instead of prompting")
    parser.add_argument("--max-steps", type=int, default=DEFAULT_MAX_STEPS, help="Step budget before a run is aborted")
    parser.add_argument("--time-limit", type=float, default=DEFAULT_TIME_LIMIT, help="Wall-clock budget in seconds")
    parser.add_argument("--json", dest="json_mode", action="store_true", help="Print the result record as JSON")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Log session events and emit env snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="[%(levelname)s] %(message)s")

    if args.source_mode:
        if args.program is None:
            print("--source requires a program string", file=sys.stderr)
            return 1
        source_text = args.program
        filename = "<string>"
    elif args.program is None:
        source_text = sys.stdin.read()
        filename = "<stdin>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    stdin_lines: Optional[List[str]] = None
    if args.stdin_file is not None:
        try:
            with open(args.stdin_file, "r", encoding="utf-8") as handle:
                stdin_lines = handle.read().splitlines()
        except OSError as exc:
            print(f"Failed to read {args.stdin_file}: {exc}", file=sys.stderr)
            return 1

    session = Session(max_steps=args.max_steps, time_limit=args.time_limit, verbose=args.verbose, filename=filename)
    result = session.compile_and_run(source_text, stdin_lines)
    printed = 0
    # Prompt interactively while the program waits, unless input came from a file.
    while result.needs_input is not None and result.state is not None and stdin_lines is None and not args.json_mode:
        sys.stdout.write(result.output[printed:])
        sys.stdout.flush()
        printed = len(result.output)
        answer = _read_answer(result.needs_input)
        if answer is None:
            break
        retry = session.provide_input(result.state, answer)
        if retry.error is not None and retry.state is not None:
            print(retry.error, file=sys.stderr)
            continue
        result = retry

    if args.json_mode:
        print(result.to_json())
    else:
        sys.stdout.write(result.output[printed:])
        sys.stdout.flush()

    if result.needs_input is not None:
        print(f"program is still waiting for input: {result.needs_input}", file=sys.stderr)
        return 1
    if result.error is not None:
        error = result.exception
        if isinstance(error, (LexError, ParseError)) or error is None or session.last_interpreter is None:
            print(f"{type(error).__name__ if error else 'Error'}: {result.error}", file=sys.stderr)
        else:
            formatter = TracebackFormatter(session.last_interpreter)
            if not args.json_mode:
                print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
            if args.traceback_json:
                print(formatter.to_json(error), file=sys.stderr)
        return 1
    return result.exit_status or 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
