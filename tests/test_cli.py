"""Tests for CLI."""

import json
from pathlib import Path

import pytest

from cortex import cli
from cortex.cli import create_parser, run_cli


class FakeLLM:
    """Returns a canned extraction response."""

    def __init__(self, *args, **kwargs) -> None:
        self.calls = 0

    async def complete(self, prompt: str, system: str | None = None) -> str:
        self.calls += 1
        return json.dumps({
            "operations": [
                {"op": "INSERT", "subject": "User", "predicate": "LOCATION",
                 "object": "Lima", "confidence": 0.9},
            ],
            "reasoning": "User said where they live",
        })


@pytest.fixture
def base_args(tmp_path: Path) -> list[str]:
    return ["--config", str(tmp_path / "config.json"), "--data-dir", str(tmp_path / "data")]


def add_fact(base_args: list[str], capsys, *fact: str) -> str:
    assert run_cli([*base_args, "add", "u1", *fact]) == 0
    out = capsys.readouterr().out
    return out.split()[1]


def test_no_command_prints_help(capsys) -> None:
    assert run_cli([]) == 0
    assert "usage" in capsys.readouterr().out


def test_parser_options() -> None:
    args = create_parser().parse_args(["add", "u1", "User", "NAME", "Ana", "--importance", "9"])
    assert args.command == "add"
    assert args.importance == 9
    assert args.confidence == 1.0


def test_add_and_list_facts(base_args: list[str], capsys) -> None:
    add_fact(base_args, capsys, "User", "lives in", "Lima")

    assert run_cli([*base_args, "facts", "u1"]) == 0
    out = capsys.readouterr().out
    assert "User LIVES_IN: Lima" in out
    assert "Total: 1 fact(s)" in out


def test_facts_empty(base_args: list[str], capsys) -> None:
    assert run_cli([*base_args, "facts", "nobody"]) == 0
    assert "No facts found." in capsys.readouterr().out


def test_forget(base_args: list[str], capsys) -> None:
    fact_id = add_fact(base_args, capsys, "User", "NAME", "Ana")

    assert run_cli([*base_args, "forget", "u1", fact_id, "-r", "typo"]) == 0
    assert f"Forgot fact: {fact_id}" in capsys.readouterr().out

    assert run_cli([*base_args, "facts", "u1"]) == 0
    assert "No facts found." in capsys.readouterr().out

    assert run_cli([*base_args, "facts", "u1", "--all"]) == 0
    assert "(invalidated)" in capsys.readouterr().out


def test_forget_missing_fact(base_args: list[str], capsys) -> None:
    assert run_cli([*base_args, "forget", "u1", "missing"]) == 1
    assert "Error: Fact 'missing' not found." in capsys.readouterr().out


def test_export(base_args: list[str], tmp_path: Path, capsys) -> None:
    fact_id = add_fact(base_args, capsys, "User", "NAME", "Ana")
    output = tmp_path / "export.json"

    assert run_cli([*base_args, "export", "u1", "-o", str(output)]) == 0

    data = json.loads(output.read_text())
    assert [f["id"] for f in data["facts"]] == [fact_id]
    assert len(data["sessions"]) == 1


def test_stats(base_args: list[str], capsys) -> None:
    add_fact(base_args, capsys, "User", "NAME", "Ana")

    assert run_cli([*base_args, "stats", "u1"]) == 0
    out = capsys.readouterr().out
    assert "Valid facts: 1" in out
    assert "Cold facts: 1" in out


def test_consolidate_and_prune(base_args: list[str], capsys) -> None:
    add_fact(base_args, capsys, "User", "NAME", "Ana")

    assert run_cli([*base_args, "consolidate", "u1"]) == 0
    assert "Promoted:" in capsys.readouterr().out

    assert run_cli([*base_args, "prune", "u1"]) == 0
    assert "Pruned 0 fact(s)" in capsys.readouterr().out


def test_digest_requires_api_key(base_args: list[str], monkeypatch, capsys) -> None:
    monkeypatch.delenv("GROQ_API_KEY", raising=False)

    assert run_cli([*base_args, "digest", "u1", "I live in Lima", "Nice!"]) == 1
    assert "GROQ_API_KEY" in capsys.readouterr().out


def test_digest(base_args: list[str], monkeypatch, capsys) -> None:
    monkeypatch.setenv("GROQ_API_KEY", "test-key")
    monkeypatch.setattr(cli, "GroqLLMClient", FakeLLM)

    assert run_cli([*base_args, "digest", "u1", "I live in Lima", "Nice!"]) == 0
    out = capsys.readouterr().out
    assert "INSERT  User LOCATION: Lima" in out
    assert "Reasoning: User said where they live" in out

    assert run_cli([*base_args, "facts", "u1"]) == 0
    assert "User LOCATION: Lima" in capsys.readouterr().out
