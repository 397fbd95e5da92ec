"""Shared helpers for the cplay test suite."""

import pytest

from cplay import Result, Session


def program(body: str, *, includes: str = "#include <stdio.h>\n") -> str:
    """Wrap statements in an ``int main()`` that returns 0."""
    return f"{includes}\nint main() {{\n{body}\n    return 0;\n}}\n"


@pytest.fixture
def session() -> Session:
    return Session(max_steps=200_000)


@pytest.fixture
def run(session):
    def _run(body: str, stdin=None) -> Result:
        return session.compile_and_run(program(body), stdin)

    return _run


@pytest.fixture
def output_of(run):
    """Run a body that must complete and return its output."""

    def _output_of(body: str, stdin=None) -> str:
        result = run(body, stdin)
        assert result.error is None, result.error
        assert result.needs_input is None
        return result.output

    return _output_of


@pytest.fixture
def error_of(run):
    """Run a body that must fail and return the error message."""

    def _error_of(body: str, stdin=None) -> str:
        result = run(body, stdin)
        assert not result.success
        assert result.error is not None
        return result.error

    return _error_of
