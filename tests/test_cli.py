import json

from cplay import run_cli
from tests.conftest import program


def test_runs_literal_source(capsys):
    code = run_cli(["--source", program('printf("hi\\n");')])
    captured = capsys.readouterr()
    assert code == 0
    assert captured.out == "hi\n"


def test_exit_status_is_returned(capsys):
    assert run_cli(["--source", "int main() { return 3; }"]) == 3


def test_runs_source_file(tmp_path, capsys):
    path = tmp_path / "hello.c"
    path.write_text(program('puts("from file");'), encoding="utf-8")
    assert run_cli([str(path)]) == 0
    assert capsys.readouterr().out == "from file\n"


def test_missing_file(tmp_path, capsys):
    assert run_cli([str(tmp_path / "missing.c")]) == 1
    assert "Failed to read" in capsys.readouterr().err


def test_stdin_file_feeds_scanf(tmp_path, capsys):
    stdin = tmp_path / "input.txt"
    stdin.write_text("3 4\n", encoding="utf-8")
    source = program('int a, b; scanf("%d %d", &a, &b); printf("%d", a * b);')
    assert run_cli(["--source", source, "--stdin", str(stdin)]) == 0
    assert capsys.readouterr().out == "12"


def test_exhausted_stdin_file_reports_waiting(tmp_path, capsys):
    stdin = tmp_path / "empty.txt"
    stdin.write_text("", encoding="utf-8")
    source = program('int a; scanf("%d", &a);')
    assert run_cli(["--source", source, "--stdin", str(stdin)]) == 1
    assert 'program is still waiting for input: scanf is waiting for input matching "%d"' in capsys.readouterr().err


def test_interactive_prompting(monkeypatch, capsys):
    answers = iter(["oops", "6"])
    prompts = []

    def fake_input(prompt):
        prompts.append(prompt)
        return next(answers)

    monkeypatch.setattr("builtins.input", fake_input)
    source = program('printf("n? "); int n; scanf("%d", &n); printf("%d", n * 7);')
    assert run_cli(["--source", source]) == 0
    captured = capsys.readouterr()
    assert captured.out == "n? 42"
    assert "expected an integer for '%d' but found 'oops'" in captured.err
    assert prompts == ['[scanf is waiting for input matching "%d"] '] * 2


def test_json_mode(capsys):
    assert run_cli(["--source", program('printf("ok");'), "--json"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data == {"success": True, "output": "ok", "error": None, "needs_input": None, "state": None}


def test_json_mode_reports_suspension(capsys):
    assert run_cli(["--source", program('int n; scanf("%d", &n);'), "--json"]) == 1
    data = json.loads(capsys.readouterr().out.splitlines()[0])
    assert data["success"] is True
    assert data["needs_input"].startswith("scanf is waiting")
    assert data["state"]


def test_runtime_error_prints_traceback(capsys):
    source = program('int a = 1;\nint b = a / 0;')
    assert run_cli(["--source", source]) == 1
    err = capsys.readouterr().err
    assert "Traceback (most recent call last):" in err
    assert "int b = a / 0;" in err
    assert "EvalError: division by zero (rule: DIV)" in err


def test_traceback_json(capsys):
    source = program("int *p = NULL;\n*p = 1;")
    assert run_cli(["--source", source, "--traceback-json", "--json"]) == 1
    captured = capsys.readouterr()
    assert json.loads(captured.out)["success"] is False
    data = json.loads(captured.err)
    assert data["error"]["message"] == "segmentation fault: NULL pointer dereference"
    assert data["traceback"][0]["source_location"]["line"] == 5


def test_verbose_traceback_includes_environment(capsys):
    source = program("int x = 4;\nint y = x % 0;")
    assert run_cli(["--source", source, "--verbose"]) == 1
    assert "Env snapshot: x=4" in capsys.readouterr().err


def test_parse_error_is_reported_without_traceback(capsys):
    assert run_cli(["--source", "int main() { return 0 }"]) == 1
    err = capsys.readouterr().err
    assert err.startswith("ParseError: expected ';' but found '}'")
    assert "Traceback" not in err
