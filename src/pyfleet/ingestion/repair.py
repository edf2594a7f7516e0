"""Best-effort repair of near-JSON device payloads.

Some tracker firmware emits JavaScript-ish object literals such as
``{soc: 70, status: charging, alerts: [Low battery]}``. This module applies
a short allow-list of textual substitutions (quote bare keys, bare array
elements and bare string values) and nothing else. It is not a parser:
anything the allow-list does not cover stays broken and the caller treats
the message as malformed.
"""

from __future__ import annotations

import re

_LITERALS = frozenset({"true", "false", "null"})
_BARE_WORD = re.compile(r"^[A-Za-z_][A-Za-z0-9_ ]*$")
_NUMBER = re.compile(r"^-?\d+(\.\d+)?([eE][+-]?\d+)?$")

# `{soc:` / `, alerts :` -> quoted key
_BARE_KEY = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*:)")
# `[Low battery, High temp]` -> array content without quotes or nesting
_FLAT_ARRAY = re.compile(r"\[([^\[\]{}\"]*)\]")
# `: charging,` -> bare-word value followed by a delimiter
_BARE_VALUE = re.compile(r"(:\s*)([A-Za-z_][A-Za-z0-9_ ]*)(?=\s*[,}\]])")


def _quote_key(match: re.Match[str]) -> str:
    return f'{match.group(1)}"{match.group(2)}"{match.group(3)}'


def _quote_array(match: re.Match[str]) -> str:
    content = match.group(1)
    if not content.strip():
        return match.group(0)
    elements = [part.strip() for part in content.split(",")]
    repaired: list[str] = []
    for element in elements:
        if not element or element in _LITERALS or _NUMBER.match(element):
            repaired.append(element)
        elif _BARE_WORD.match(element):
            repaired.append(f'"{element}"')
        else:
            return match.group(0)
    return "[" + ", ".join(repaired) + "]"


def _quote_value(match: re.Match[str]) -> str:
    word = match.group(2)
    stripped = word.rstrip()
    if stripped in _LITERALS:
        return match.group(0)
    trailing = word[len(stripped) :]
    return f'{match.group(1)}"{stripped}"{trailing}'


def repair_json_text(text: str) -> str | None:
    """Apply the repair allow-list to *text*.

    Returns the rewritten text, or ``None`` when no rule changed anything
    (so retrying the parse would be pointless).
    """
    fixed = _BARE_KEY.sub(_quote_key, text)
    fixed = _FLAT_ARRAY.sub(_quote_array, fixed)
    fixed = _BARE_VALUE.sub(_quote_value, fixed)
    if fixed == text:
        return None
    return fixed
