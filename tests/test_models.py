"""
Tests for the result model and CancelToken
"""
import pytest
from pydantic import ValidationError

from run_box.models import CancelToken, ExecuteResult


def test_result_serializes_exit_code_in_camel_case():
    result = ExecuteResult(stdout="hi\n", stderr="", exit_code=0, truncated=False, killed=False)

    assert result.to_wire() == {
        "stdout": "hi\n",
        "stderr": "",
        "exitCode": 0,
        "truncated": False,
        "killed": False,
    }


def test_result_accepts_wire_format():
    result = ExecuteResult.model_validate(
        {"stdout": "", "stderr": "", "exitCode": -1, "truncated": True, "killed": True}
    )

    assert result.exit_code == -1


def test_result_is_immutable():
    result = ExecuteResult(stdout="", stderr="", exit_code=0, truncated=False, killed=False)

    with pytest.raises(ValidationError):
        result.exit_code = 1


def test_cancel_runs_subscribers_once():
    token = CancelToken()
    calls: list[str] = []
    token.subscribe(lambda: calls.append("a"))

    token.cancel()
    token.cancel()

    assert token.cancelled is True
    assert calls == ["a"]


def test_subscribe_after_cancel_runs_immediately():
    token = CancelToken()
    token.cancel()
    calls: list[str] = []

    token.subscribe(lambda: calls.append("late"))

    assert calls == ["late"]


def test_unsubscribe_prevents_callback():
    token = CancelToken()
    calls: list[str] = []
    unsubscribe = token.subscribe(lambda: calls.append("a"))

    unsubscribe()
    unsubscribe()
    token.cancel()

    assert calls == []


def test_failing_subscriber_does_not_stop_others():
    token = CancelToken()
    calls: list[str] = []

    def explode() -> None:
        raise RuntimeError("boom")

    token.subscribe(explode)
    token.subscribe(lambda: calls.append("b"))
    token.cancel()

    assert calls == ["b"]
