from __future__ import annotations
from typing import Any, Optional


class CPlayError(Exception):
    """Base class for interpreter errors."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[Any] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location  # SourceLocation | None
        self.rule = rule
        self.step_index: Optional[int] = None


class LexError(CPlayError):
    """Raised when the source text cannot be tokenized."""


class ParseError(CPlayError):
    """Raised when the token stream does not match the supported grammar."""


class EvalError(CPlayError):
    """Raised for runtime faults."""


class InputFormatError(CPlayError):
    """Raised when text supplied for scanf/gets does not match its format."""


class StateError(CPlayError):
    """Raised for invalid, tampered or stale continuation tokens."""
