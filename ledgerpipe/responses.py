"""Helpers for pulling JSON out of free-form model responses.

Model output is untrusted: it may be wrapped in a code fence or in prose,
and may hold stray brackets inside strings. These helpers never raise on
malformed text; callers get None and decide what that means.
"""

from __future__ import annotations

import json

_CLOSERS = {"[": "]", "{": "}"}


def strip_code_fence(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip().rsplit("```", 1)[0]
    return cleaned.strip()


def balanced_end(text: str, start: int) -> int | None:
    """Index just past the bracket that closes text[start], or None.

    Brackets inside JSON string literals (escapes honored) are ignored.
    """
    opener = text[start]
    closer = _CLOSERS[opener]
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def first_json(text: str, opener: str):
    """Return the first complete JSON array ("[") or object ("{") literal in text."""
    expected = list if opener == "[" else dict
    pos = text.find(opener)
    while pos != -1:
        end = balanced_end(text, pos)
        if end is not None:
            try:
                value = json.loads(text[pos:end])
            except json.JSONDecodeError:
                value = None
            if isinstance(value, expected):
                return value
        pos = text.find(opener, pos + 1)
    return None
