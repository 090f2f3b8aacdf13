"""Tests for the ollama CLI wrapper."""

from __future__ import annotations

import subprocess
from unittest.mock import patch

import pytest
from conftest import completed

from stackdoctor.errors import OllamaCommandError
from stackdoctor.ollama import (
    list_models,
    load_model,
    normalize_model_name,
    parse_table_names,
    stop_model,
    unload_all,
)

LIST_OUTPUT = """\
NAME               ID              SIZE      MODIFIED
llama3.2:3b        a80c4f17acd5    2.0 GB    2 days ago
qwen2.5-coder:7b   2b0496514337    4.7 GB    3 weeks ago
"""

PS_OUTPUT = """\
NAME           ID              SIZE      PROCESSOR    UNTIL
llama3.2:3b    a80c4f17acd5    4.0 GB    100% GPU     4 minutes from now
"""


def _fake_ollama(responses: dict[tuple[str, ...], subprocess.CompletedProcess]):
    calls: list[list[str]] = []

    def run(cmd, **kwargs):
        calls.append(list(cmd))
        return responses.get(tuple(cmd[1:]), completed())

    run.calls = calls
    return run


class TestParseTableNames:
    def test_skips_header(self):
        assert parse_table_names(LIST_OUTPUT) == ["llama3.2:3b", "qwen2.5-coder:7b"]

    def test_header_only(self):
        assert parse_table_names("NAME    ID    SIZE    MODIFIED\n") == []

    def test_empty(self):
        assert parse_table_names("") == []


class TestModels:
    def test_list_marks_loaded(self):
        fake = _fake_ollama({("list",): completed(LIST_OUTPUT), ("ps",): completed(PS_OUTPUT)})
        with patch("stackdoctor.ollama.subprocess.run", fake):
            models = list_models()
        assert [(m.name, m.loaded) for m in models] == [
            ("llama3.2:3b", True),
            ("qwen2.5-coder:7b", False),
        ]

    def test_missing_cli(self):
        with (
            patch("stackdoctor.ollama.subprocess.run", side_effect=FileNotFoundError("ollama")),
            pytest.raises(OllamaCommandError, match="not found"),
        ):
            list_models()

    def test_list_failure(self):
        fake = _fake_ollama(
            {
                ("ps",): completed(PS_OUTPUT),
                ("list",): completed(stderr="could not connect", returncode=1),
            }
        )
        with (
            patch("stackdoctor.ollama.subprocess.run", fake),
            pytest.raises(OllamaCommandError, match="could not connect"),
        ):
            list_models()

    def test_stop_failure(self):
        fake = _fake_ollama({("stop", "nope"): completed(stderr="model not found", returncode=1)})
        with (
            patch("stackdoctor.ollama.subprocess.run", fake),
            pytest.raises(OllamaCommandError, match="model not found"),
        ):
            stop_model("nope")

    def test_unload_all_continues_past_failures(self):
        ps = PS_OUTPUT + "phi3:mini      4f2222927938    2.5 GB    100% CPU     now\n"
        fake = _fake_ollama(
            {
                ("ps",): completed(ps),
                ("stop", "llama3.2:3b"): completed(stderr="busy", returncode=1),
            }
        )
        with patch("stackdoctor.ollama.subprocess.run", fake):
            outcomes = unload_all()
        assert [name for name, _ in outcomes] == ["llama3.2:3b", "phi3:mini"]
        assert isinstance(outcomes[0][1], OllamaCommandError)
        assert outcomes[1][1] is None
        assert ["ollama", "stop", "phi3:mini"] in fake.calls

    def test_load_runs_with_empty_prompt(self):
        fake = _fake_ollama({})
        with patch("stackdoctor.ollama.subprocess.run", fake):
            load_model("llama3.2:3b")
        assert fake.calls == [["ollama", "run", "llama3.2:3b", ""]]

    def test_load_failure(self):
        fake = _fake_ollama(
            {("run", "nope", ""): completed(stderr="model \"nope\" not found", returncode=1)}
        )
        with (
            patch("stackdoctor.ollama.subprocess.run", fake),
            pytest.raises(OllamaCommandError, match="ollama run nope failed"),
        ):
            load_model("nope")


class TestNormalizeModelName:
    def test_bare_name_gets_latest(self):
        assert normalize_model_name("llama3") == "llama3:latest"

    def test_tagged_name_unchanged(self):
        assert normalize_model_name("llama3.2:3b") == "llama3.2:3b"
