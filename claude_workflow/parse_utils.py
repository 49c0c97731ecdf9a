"""Helpers for pulling JSON payloads out of free-form agent text."""

from __future__ import annotations

import re

_CLOSE_FENCE_RE = re.compile(r"^\s{0,3}```\s*$")


def _scan_string(text: str, start: int) -> int:
    """Return the index just past the JSON string opening at ``start``.

    Returns ``len(text)`` when the string is never closed.
    """
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == '"':
            return i + 1
        i += 1
    return len(text)


def extract_fenced_block(text: str, tag: str) -> str | None:
    """Return the body of the first ```<tag> fenced block, or None.

    A closing fence line is honoured only when it falls outside a JSON
    string value.
    """
    open_re = re.compile(rf"^\s{{0,3}}```{re.escape(tag)}\s*$")
    lines = text.split("\n")
    start = next((i for i, line in enumerate(lines) if open_re.match(line)), None)
    if start is None:
        return None

    in_string = False
    for i in range(start + 1, len(lines)):
        if not in_string and _CLOSE_FENCE_RE.match(lines[i]):
            return "\n".join(lines[start + 1:i]).strip()
        escaped = False
        for ch in lines[i]:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = not in_string
    return None


def extract_last_brace_block(text: str) -> str | None:
    """Return the last balanced top-level ``{...}`` object in ``text``.

    Braces inside string literals are ignored. Unmatched closing braces at
    depth zero are skipped.
    """
    last: str | None = None
    depth = 0
    start = -1
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == '"' and depth > 0:
            i = _scan_string(text, i)
            continue
        if ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                last = text[start:i + 1]
        i += 1
    return last


def sanitize_json_newlines(payload: str) -> str:
    """Escape literal newlines and carriage returns inside JSON string values."""
    out: list[str] = []
    in_string = False
    escaped = False
    for ch in payload:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ch == "\n":
                out.append("\\n")
                continue
            elif ch == "\r":
                out.append("\\r")
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
    return "".join(out)
