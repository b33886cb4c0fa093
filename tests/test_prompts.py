"""Tests for app/prompts.py - yes/no confirmations."""

import pytest

from nanopi_imager.app import prompts


@pytest.mark.parametrize(
    "answer,default,expected",
    [
        ("", False, False),
        ("", True, True),
        ("y", False, True),
        ("Yes", False, True),
        ("n", True, False),
        ("nope", True, False),
        ("  y  ", False, True),
    ],
)
def test_confirm(monkeypatch, answer, default, expected):
    monkeypatch.setattr("builtins.input", lambda prompt: answer)

    assert prompts.confirm("overwrite?", default) is expected


def test_prompt_shows_default(monkeypatch):
    seen = []
    monkeypatch.setattr("builtins.input", lambda prompt: seen.append(prompt) or "")

    prompts.confirm("unmount?", True)
    prompts.confirm("overwrite?", False)

    assert seen == ["unmount? <Y/n> ", "overwrite? <y/N> "]


def test_closed_stdin_uses_default(monkeypatch):
    def raise_eof(prompt):
        raise EOFError

    monkeypatch.setattr("builtins.input", raise_eof)

    assert prompts.confirm("unmount?", True) is True
    assert prompts.confirm("overwrite?", False) is False
