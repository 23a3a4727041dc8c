"""Yes/no questions for the operator."""

from __future__ import annotations

import sys
from typing import Callable, Optional

YES = "yes"
NO = "no"
INVALID = "invalid"

_YES_WORDS = {"y", "yes"}
_NO_WORDS = {"n", "no"}


def parse_yes_no(text: Optional[str], default: Optional[str] = None) -> str:
    """Classify an answer as YES, NO or INVALID.

    An empty answer maps to ``default`` when one is given.
    """

    answer = (text or "").strip().lower()
    if not answer:
        return default if default in (YES, NO) else INVALID
    if answer in _YES_WORDS:
        return YES
    if answer in _NO_WORDS:
        return NO
    return INVALID


def _suffix(default: Optional[str]) -> str:
    if default == YES:
        return "(YES/no)"
    if default == NO:
        return "(yes/NO)"
    return "(yes/no)"


def ask_yes_no(
    question: str,
    default: Optional[str] = None,
    input_fn: Callable[[str], str] = input,
    out=None,
) -> bool:
    out = out or sys.stderr
    while True:
        try:
            raw = input_fn(f"{question} {_suffix(default)} ")
        except EOFError:
            raw = ""
            if default not in (YES, NO):
                return False
        verdict = parse_yes_no(raw, default)
        if verdict == YES:
            return True
        if verdict == NO:
            return False
        print("Sorry, I didn't understand that. Please type yes or no", file=out)
