"""Operator confirmations.

Every prompt states its default in the ``<y/N>`` / ``<Y/n>`` suffix, and an
empty answer (or a closed stdin) picks that default.
"""

from __future__ import annotations

YES_ANSWERS = {"y", "yes"}


def confirm(question: str, default: bool = False) -> bool:
    suffix = "<Y/n>" if default else "<y/N>"
    try:
        answer = input(f"{question} {suffix} ")
    except EOFError:
        return default
    answer = answer.strip()
    if not answer:
        return default
    return answer.lower() in YES_ANSWERS
