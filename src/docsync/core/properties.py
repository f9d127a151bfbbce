"""Java-style ``.properties`` file support.

This module provides:
- load_properties: Parse properties text into a flat dict
- set_property: Rewrite a single key in place, keeping every other line untouched

Only the subset of the format used by configuration files is supported:
``#``/``!`` comments, ``=``/``:``/whitespace separators, backslash line
continuations and the usual backslash escapes.
"""

from __future__ import annotations

from dataclasses import dataclass

from docsync.core.config import ConfigurationError

_ESCAPES = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}
_SEPARATORS = "=:"
_WHITESPACE = " \t\f"
_HEX_DIGITS = "0123456789abcdefABCDEF"


@dataclass
class _LogicalLine:
    """A key/value entry that may span several physical lines."""

    start: int
    end: int  # exclusive
    key: str
    value: str


def _ends_with_continuation(line: str) -> bool:
    stripped = line.rstrip("\r\n")
    backslashes = len(stripped) - len(stripped.rstrip("\\"))
    return backslashes % 2 == 1


def _is_blank_or_comment(line: str) -> bool:
    stripped = line.lstrip(_WHITESPACE).rstrip("\r\n")
    return not stripped or stripped[0] in "#!"


def _unescape(text: str) -> str:
    result: list[str] = []
    i = 0
    while i < len(text):
        char = text[i]
        if char != "\\" or i + 1 >= len(text):
            result.append(char)
            i += 1
            continue
        nxt = text[i + 1]
        if nxt == "u":
            digits = text[i + 2 : i + 6]
            if len(digits) != 4 or any(c not in _HEX_DIGITS for c in digits):
                raise ValueError(f"Malformed \\uxxxx encoding: '\\u{digits}'")
            result.append(chr(int(digits, 16)))
            i += 6
            continue
        result.append(_ESCAPES.get(nxt, nxt))
        i += 2
    return "".join(result)


def _split_key_value(logical: str) -> tuple[str, str]:
    text = logical.lstrip(_WHITESPACE)
    i = 0
    while i < len(text):
        char = text[i]
        if char == "\\":
            i += 2
            continue
        if char in _SEPARATORS or char in _WHITESPACE:
            break
        i += 1
    key = text[:i]
    rest = text[i:].lstrip(_WHITESPACE)
    if rest and rest[0] in _SEPARATORS:
        rest = rest[1:].lstrip(_WHITESPACE)
    return _unescape(key), _unescape(rest)


def _logical_lines(lines: list[str]) -> list[_LogicalLine]:
    entries: list[_LogicalLine] = []
    i = 0
    while i < len(lines):
        if _is_blank_or_comment(lines[i]):
            i += 1
            continue
        start = i
        parts: list[str] = []
        while True:
            line = lines[i].rstrip("\r\n")
            if i > start:
                line = line.lstrip(_WHITESPACE)
            i += 1
            if _ends_with_continuation(line) and i < len(lines):
                parts.append(line[:-1])
                continue
            parts.append(line[:-1] if _ends_with_continuation(line) else line)
            break
        logical = "".join(parts)
        try:
            key, value = _split_key_value(logical)
        except ValueError as e:
            raw_key = logical.lstrip(_WHITESPACE).split("=", 1)[0].split(":", 1)[0].strip()
            raise ConfigurationError(
                f"Invalid properties entry '{raw_key}' on line {start + 1}: {e}"
            ) from e
        entries.append(_LogicalLine(start=start, end=i, key=key, value=value))
    return entries


def load_properties(text: str) -> dict[str, str]:
    """Parse properties text.

    Args:
        text: Content of a ``.properties`` file.

    Returns:
        Mapping of keys to values; later duplicates win.

    Raises:
        ConfigurationError: If an entry contains a malformed escape.
    """
    return {entry.key: entry.value for entry in _logical_lines(text.splitlines(keepends=True))}


def _escape(text: str, is_key: bool) -> str:
    result: list[str] = []
    for index, char in enumerate(text):
        if char == "\\":
            result.append("\\\\")
        elif char in "\t\n\r\f":
            result.append("\\" + {"\t": "t", "\n": "n", "\r": "r", "\f": "f"}[char])
        elif char == " " and (is_key or index == 0):
            result.append("\\ ")
        elif is_key and char in "=:#!":
            result.append("\\" + char)
        else:
            result.append(char)
    return "".join(result)


def set_property(text: str, key: str, value: str) -> str:
    """Set one key in properties text, preserving all other content.

    Every occurrence of the key is rewritten. If the key is absent it is
    appended at the end.

    Args:
        text: Current content of the ``.properties`` file.
        key: Property key to set.
        value: New value.

    Returns:
        The rewritten content.

    Raises:
        ConfigurationError: If an entry contains a malformed escape.
    """
    lines = text.splitlines(keepends=True)
    newline = "\r\n" if lines and lines[0].endswith("\r\n") else "\n"
    replacement = f"{_escape(key, is_key=True)}={_escape(value, is_key=False)}"
    matches = [entry for entry in _logical_lines(lines) if entry.key == key]

    if not matches:
        if lines and not lines[-1].endswith(("\n", "\r")):
            lines[-1] += newline
        lines.append(replacement + newline)
        return "".join(lines)

    for entry in reversed(matches):
        ending = newline if lines[entry.end - 1].endswith(("\n", "\r")) else ""
        lines[entry.start : entry.end] = [replacement + ending]
    return "".join(lines)
