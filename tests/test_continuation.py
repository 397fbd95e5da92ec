import base64

import pytest

from continuation import decode_state, encode_state
from errors import StateError
from interpreter import STATE_VERSION, Interpreter
from tests.conftest import program


SOURCE = program('int x; scanf("%d", &x); printf("%d", x);')


def suspended_state():
    outcome = Interpreter(source=SOURCE).run()
    return outcome.state


def test_round_trip_preserves_state():
    state = suspended_state()
    token = encode_state(state)
    assert "=" not in token
    assert decode_state(token) == state


def test_state_contents():
    state = suspended_state()
    assert state["version"] == STATE_VERSION
    assert state["source"] == SOURCE
    assert state["pending"]["call"] == "scanf"
    assert state["pending"]["format"] == "%d"
    assert state["cursor"] == [["block", 1], ["expr"]]
    assert state["stdin"] == []


def test_modified_payload_fails_integrity_check():
    token = encode_state(suspended_state())
    raw = bytearray(base64.urlsafe_b64decode(token + "=" * (-len(token) % 4)))
    raw[-1] ^= 0x01
    forged = base64.urlsafe_b64encode(bytes(raw)).decode("ascii").rstrip("=")
    with pytest.raises(StateError, match="failed its integrity check"):
        decode_state(forged)


@pytest.mark.parametrize("token", ["", "not base64 !!", "QUJD"])
def test_garbage_tokens(token):
    with pytest.raises(StateError):
        decode_state(token)


def test_non_object_payload_is_rejected():
    with pytest.raises(StateError, match="invalid continuation token"):
        decode_state(encode_state([1, 2, 3]))


def test_resume_runs_to_completion():
    outcome = Interpreter(source=SOURCE).resume(decode_state(encode_state(suspended_state())), "5")
    assert outcome.output == "5"
    assert outcome.exit_status == 0


def test_unknown_version_is_rejected():
    state = suspended_state()
    state["version"] = STATE_VERSION + 1
    with pytest.raises(StateError, match="unsupported continuation state version"):
        Interpreter(source=SOURCE).resume(state, "5")


def test_cursor_must_match_program():
    state = suspended_state()
    state["cursor"] = [["block", 1], ["while", "cond"]]
    with pytest.raises(StateError, match="cursor does not match"):
        Interpreter(source=SOURCE).resume(state, "5")


def test_corrupt_memory_is_reported_as_state_error():
    state = suspended_state()
    del state["memory"]["values"]
    with pytest.raises(StateError, match="continuation state is corrupt"):
        Interpreter(source=SOURCE).resume(state, "5")
