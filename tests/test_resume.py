import re

import pytest

import cplay
from cplay import Session
from library import GETS_PROMPT
from tests.conftest import program


SCAN_PROMPT = 'scanf is waiting for input matching "%d"'

RUNNING_TOTAL = """
int total = 0;
for (int i = 0; i < 3; i++) {
    int v;
    scanf("%d", &v);
    total += v;
    printf("%d;", total);
}
printf("done %d", total);
"""


def feed(session, result, *answers):
    """Answer successive prompts and return every intermediate result."""
    results = [result]
    for answer in answers:
        assert result.needs_input is not None, result
        result = session.provide_input(result.state, answer)
        results.append(result)
    return results


def test_suspend_and_resume_scanf(run, session):
    first = run('int x; scanf("%d", &x); printf("%d", x);')
    assert first.success is True
    assert first.needs_input == SCAN_PROMPT
    assert first.output == ""
    assert re.fullmatch(r"[A-Za-z0-9_-]+", first.state)
    assert session.pending

    second = session.provide_input(first.state, "7")
    assert second.to_dict() == {
        "success": True,
        "output": "7",
        "error": None,
        "needs_input": None,
        "state": None,
    }
    assert not session.pending


def test_output_is_cumulative(run, session):
    first = run('printf("Enter: "); int x; scanf("%d", &x); printf("got %d", x);')
    assert first.output == "Enter: "
    second = session.provide_input(first.state, "5\n")
    assert second.output == "Enter: got 5"


def test_suspension_inside_loop(run, session):
    results = feed(session, run(RUNNING_TOTAL), "1", "2", "3")
    assert [r.output for r in results] == ["", "1;", "1;3;", "1;3;6;done 6"]
    assert [r.needs_input for r in results] == [SCAN_PROMPT, SCAN_PROMPT, SCAN_PROMPT, None]


def test_interactive_and_stdin_runs_agree(run, session):
    interactive = feed(session, run(RUNNING_TOTAL), "4", "5", "6")[-1]
    batch = run(RUNNING_TOTAL, stdin="4\n5\n6\n")
    assert interactive.output == batch.output == "4;9;15;done 15"


def test_partial_stdin_then_suspend(run, session):
    first = run(RUNNING_TOTAL, stdin=["10"])
    assert first.output == "10;"
    assert first.needs_input == SCAN_PROMPT
    last = feed(session, first, "1", "1")[-1]
    assert last.output == "10;11;12;done 12"


def test_rand_sequence_survives_suspension(run, session):
    body = 'printf("%d ", rand()); int x; scanf("%d", &x); printf("%d", rand());'
    interactive = feed(session, run(body), "0")[-1]
    assert interactive.output == run(body, stdin="0").output


@pytest.mark.parametrize(
    "body, answers, expected",
    [
        ('int x; int n = scanf("%d", &x); printf("%d %d", n, x);', ["4"], "1 4"),
        ('int x, sum = 0; while (scanf("%d", &x) == 1 && x != 0) { sum += x; } printf("%d", sum);', ["3", "4", "0"], "7"),
        ('int x; do { scanf("%d", &x); printf("<%d>", x); } while (x > 0);', ["2", "0"], "<2><0>"),
        ('int x; switch (scanf("%d", &x), x) { case 1: printf("one"); break; default: printf("other"); }', ["1"], "one"),
        ('int x; switch (1) { case 1: scanf("%d", &x); printf("%d", x * 2); }', ["21"], "42"),
        ('int x = 0; if (x) printf("no"); else if (scanf("%d", &x) && x > 5) printf("big"); else printf("small");', ["9"], "big"),
        ('int x = 0; if (1) { int y = 2; scanf("%d", &x); printf("%d", x + y); }', ["3"], "5"),
        ('int x; for (scanf("%d", &x); x > 0; x--) printf("%d", x);', ["3"], "321"),
        ('int i = 0, x = 0; for (; i < 10; x += scanf("%d", &i)) printf("."); printf("%d %d", i, x);', ["4", "12"], "..12 2"),
    ],
)
def test_resume_points(run, session, body, answers, expected):
    last = feed(session, run(body), *answers)[-1]
    assert last.error is None
    assert last.needs_input is None
    assert last.output == expected


def test_resume_from_return_statement(session):
    source = '#include <stdio.h>\nint main() { int x; return scanf("%d", &x) + x; }'
    first = session.compile_and_run(source)
    second = session.provide_input(first.state, "41")
    assert second.success and second.exit_status == 42


def test_interrupted_statement_is_replayed_once(run, session):
    first = run('int c = 0, x; printf("a"), c++, scanf("%d", &x); printf("%d %d", c, x);')
    # Side effects of the interrupted statement are rolled back until input arrives.
    assert first.output == ""
    second = session.provide_input(first.state, "9")
    assert second.output == "a1 9"


def test_gets_suspends_for_a_line(run, session):
    first = run('char line[64]; gets(line); printf("[%s]", line);')
    assert first.needs_input == GETS_PROMPT
    second = session.provide_input(first.state, "hello there")
    assert second.output == "[hello there]"


def test_pointers_survive_resume(run, session):
    body = """
    int a[2] = {1, 2};
    int *p = &a[1];
    int *stale;
    { int tmp = 3; stale = &tmp; }
    int x;
    scanf("%d", &x);
    *p = x;
    printf("%d ", a[1]);
    printf("%d", *stale);
    """
    second = feed(session, run(body), "8")[-1]
    assert second.output == "8 "
    assert "dangling pointer" in second.error


def test_bad_input_keeps_token_valid(run, session):
    first = run('int x; scanf("%d", &x); printf("%d", x);')
    rejected = session.provide_input(first.state, "abc")
    assert rejected.success is False
    assert rejected.error == "expected an integer for '%d' but found 'abc'"
    assert rejected.needs_input == SCAN_PROMPT
    assert rejected.state == first.state
    assert session.provide_input(first.state, "12").output == "12"


def test_tokens_are_single_use(run, session):
    first = run(RUNNING_TOTAL)
    second = session.provide_input(first.state, "1")
    stale = session.provide_input(first.state, "1")
    assert stale.success is False
    assert stale.error == "stale or unknown continuation token"
    # The current token is still usable after a stale one is rejected.
    third = session.provide_input(second.state, "2")
    assert third.output == "1;3;"


def test_resume_after_completion_is_rejected(run, session):
    first = run('int x; scanf("%d", &x);')
    session.provide_input(first.state, "1")
    again = session.provide_input(first.state, "1")
    assert again.error == "no suspended program to resume"


def test_new_run_discards_pending_program(run, session, caplog):
    first = run('int x; scanf("%d", &x);')
    with caplog.at_level("INFO", logger="cplay"):
        assert run('printf("other");').output == "other"
    assert "discarding suspended program" in caplog.text
    assert session.provide_input(first.state, "1").error == "no suspended program to resume"


def test_tampered_token_is_rejected(run, session):
    first = run('int x; scanf("%d", &x);')
    forged = first.state[:-2] + ("AA" if not first.state.endswith("AA") else "BB")
    result = session.provide_input(forged, "1")
    assert result.error == "stale or unknown continuation token"


def test_sessions_are_independent():
    one, two = Session(), Session()
    source = program('int x; scanf("%d", &x); printf("%d", x);')
    token = one.compile_and_run(source).state
    assert two.provide_input(token, "1").error == "no suspended program to resume"
    assert one.provide_input(token, "1").output == "1"


def test_module_level_api():
    source = program('int x; scanf("%d", &x); printf("%d", x + 1);')
    first = cplay.compile_and_run(source)
    assert first.needs_input == SCAN_PROMPT
    assert cplay.provide_input(first.state, "1").output == "2"


def test_multi_line_answer_is_queued_like_stdin(run, session):
    first = run(RUNNING_TOTAL)
    answered = session.provide_input(first.state, "4\n5\n6\n")
    assert answered.needs_input is None
    assert answered.output == run(RUNNING_TOTAL, stdin="4\n5\n6\n").output == "4;9;15;done 15"


def test_each_line_answers_one_read(run, session):
    body = 'int a, b; scanf("%d %d", &a, &b); printf("%d", a + b);'
    batch = run(body, stdin="7\n8")
    interactive = session.provide_input(run(body).state, "7\n8")
    assert batch.success is False and interactive.success is False
    assert interactive.error == batch.error
    assert session.provide_input(interactive.state, "7 8").output == "15"
