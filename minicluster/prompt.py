"""Interactive prompts that keep asking until they get a usable answer."""

from __future__ import annotations

from typing import Iterable

from minicluster.exceptions import ManagerError

POSITIVE_RESPONSES = ("y", "yes")
NEGATIVE_RESPONSES = ("n", "no")


def _read(prompt: str) -> str:
    try:
        return input(prompt)
    except EOFError as exc:
        raise ManagerError("No input available on stdin") from exc


def ask_yes_no(
    question: str,
    positive: Iterable[str] = POSITIVE_RESPONSES,
    negative: Iterable[str] = NEGATIVE_RESPONSES,
) -> bool:
    """Ask ``question`` until the answer is one of ``positive`` or ``negative`` (case-insensitive)."""
    positive = {item.lower() for item in positive}
    negative = {item.lower() for item in negative}
    while True:
        response = _read(f"{question} [y/n]: ").strip().lower()
        if response in positive:
            return True
        if response in negative:
            return False
        print("Please type yes or no:")


def ask_static_value(question: str) -> str:
    while True:
        response = _read(question).strip()
        if response:
            return response
        print("--Error, please enter a value:")
