"""Tests for main.py — the command-line entry point end to end."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

import main

PARENT = "0x" + "1" * 40
CHILD = "0x" + "c" * 40


@pytest.fixture(autouse=True)
def state_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "state.json"
    monkeypatch.setenv("ALLOWANCE_STATE_PATH", str(path))
    return path


def _run(argv: list[str], capsys: pytest.CaptureFixture) -> tuple[int, str]:
    with pytest.raises(SystemExit) as exc_info:
        main.main(argv)
    return exc_info.value.code, capsys.readouterr().out


def _compile(tmp_path: Path, capsys: pytest.CaptureFixture, *extra: str) -> Path:
    out = tmp_path / "policy.json"
    code, _ = _run(["compile", "--usd-limit", "15", "--base-only", "-o", str(out), *extra], capsys)
    assert code == 0
    return out


class TestCompileEvaluate:
    def test_compile_to_stdout(self, capsys) -> None:
        code, out = _run(["compile", "--usd-limit", "15", "--base-only"], capsys)
        assert code == 0
        assert json.loads(out)["scopes"][0]["permissions"][0]["chainId"] == "8453"

    def test_evaluate_allowed(self, tmp_path: Path, capsys) -> None:
        policy = _compile(tmp_path, capsys)
        code, out = _run(["evaluate", str(policy), '{"chainId": "8453", "type": "TRANSFER", "valueUsd": 14.99}'], capsys)
        assert code == main.EXIT_ALLOWED
        assert json.loads(out) == {"allowed": True}

    def test_evaluate_denied(self, tmp_path: Path, capsys) -> None:
        policy = _compile(tmp_path, capsys)
        code, out = _run(["evaluate", str(policy), '{"chainId": "8453", "type": "TRANSFER", "valueUsd": 15}'], capsys)
        assert code == main.EXIT_DENIED
        assert json.loads(out)["matchedCondition"] == "value_limit"

    def test_malformed_request_is_error(self, tmp_path: Path, capsys) -> None:
        policy = _compile(tmp_path, capsys)
        code, _ = _run(["evaluate", str(policy), '{"type": "TRANSFER"}'], capsys)
        assert code == main.EXIT_ERROR

    def test_invalid_options_is_error(self, capsys) -> None:
        code, _ = _run(["compile", "--usd-limit", "-1"], capsys)
        assert code == main.EXIT_ERROR

    def test_summary(self, tmp_path: Path, capsys) -> None:
        policy = _compile(tmp_path, capsys, "--block", "sign_message")
        code, out = _run(["summary", str(policy)], capsys)
        assert code == 0
        summary = json.loads(out)
        assert summary["chain"] == "Base only"
        assert summary["usd_limit"] == 15
        assert "SIGN_MESSAGE" in summary["blocked_actions"]


class TestStoredPolicies:
    def test_create_link_check(self, capsys) -> None:
        code, out = _run(["create-policy", "--parent", PARENT, "--usd-limit", "15", "--base-only"], capsys)
        assert code == 0
        policy_id = json.loads(out)["id"]

        code, out = _run(["link", policy_id, CHILD], capsys)
        assert code == 0
        assert json.loads(out)["childWalletAddress"] == CHILD

        code, out = _run(["check", CHILD, '{"chainId": "8453", "type": "TRANSFER", "valueUsd": 3}'], capsys)
        assert code == main.EXIT_ALLOWED

        code, out = _run(["check", CHILD, '{"chainId": "1", "type": "TRANSFER", "valueUsd": 3}'], capsys)
        assert code == main.EXIT_DENIED
        assert json.loads(out)["matchedCondition"] == "chain_restriction"

    def test_check_unknown_child_is_denied(self, capsys) -> None:
        code, out = _run(["check", CHILD, '{"chainId": "8453", "type": "TRANSFER"}'], capsys)
        assert code == main.EXIT_DENIED
        assert json.loads(out)["matchedCondition"] == "policy_not_found"

    def test_link_unknown_policy_is_error(self, capsys) -> None:
        code, _ = _run(["link", "missing", CHILD], capsys)
        assert code == main.EXIT_ERROR
