"""Best-effort recovery of JSON emitted by language models."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 500
TECH_PACK_REQUIRED_KEYS = (
    "product_name",
    "materials",
    "dimensions",
    "construction",
    "colors",
    "specifications",
    "tech_pack",
)

_FENCE_BLOCK_RE = re.compile(r"```(?:json|JSON|javascript)?[ \t]*\n?(.*?)(?:```|$)", re.DOTALL)
_FENCE_LINE_RE = re.compile(r"^[ \t]*```[a-zA-Z]*[ \t]*$", re.MULTILINE)
_INVISIBLE_RE = re.compile("[\ufeff\u200b\u200c\u200d\u2060]")
_MISSING_COMMA_RE = re.compile(r'(["}\]]|\d|\btrue|\bfalse|\bnull)([ \t]*\r?\n\s*)(["{\[])')
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_STRING_VALUE_LINE_RE = re.compile(r'^(\s*[{\[]?\s*"[^"\\]*"\s*:\s*")(.*)("\s*[,}\]]*\s*)$')
_UNESCAPED_QUOTE_RE = re.compile(r'(?<!\\)"')
_INNERMOST_OBJECT_RE = re.compile(r"\{[^{}]*\}")
_KEY_VALUE_RE = re.compile(
    r'"([^"\\]+)"\s*:\s*('
    r'"(?:[^"\\]|\\.)*"'
    r"|-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?"
    r"|true|false|null"
    r"|\{[^{}]*\}"
    r"|\[[^\[\]]*\]"
    r")"
)


class JSONParseError(ValueError):
    """Raised when no strategy produced valid JSON."""

    def __init__(self, text: str):
        self.snippet = (text or "")[:SNIPPET_LENGTH]
        super().__init__(
            "Failed to parse JSON after all repair strategies. "
            f"Input (first {SNIPPET_LENGTH} chars): {self.snippet}"
        )


def _try_loads(text: Optional[str]) -> tuple[bool, Any]:
    if text is None or not text.strip():
        return False, None
    try:
        return True, json.loads(text)
    except (TypeError, ValueError):
        return False, None


def _balanced_span(text: str, start: int) -> str:
    """Return text from an opening bracket to its match, or to the end when truncated."""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return text[start:]


def extract_json_candidate(text: str) -> Optional[str]:
    """Pull JSON out of a fenced block or the first bracketed span."""
    if not text:
        return None
    fenced = _FENCE_BLOCK_RE.search(text)
    if fenced and fenced.group(1).strip():
        return fenced.group(1).strip()

    starts = [pos for pos in (text.find("{"), text.find("[")) if pos >= 0]
    if not starts:
        return None
    return _balanced_span(text, min(starts))


# Repair transforms. Each is text -> text and applied in the order of REPAIR_STEPS.

def strip_markdown_fences(text: str) -> str:
    return _FENCE_LINE_RE.sub("", text).strip()


def strip_invisible_characters(text: str) -> str:
    return _INVISIBLE_RE.sub("", text)


def close_truncated_string(text: str) -> str:
    in_string = False
    escaped = False
    for char in text:
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == '"':
            in_string = not in_string
    if in_string:
        if escaped:
            text = text[:-1]
        return text + '"'
    return text


def insert_missing_commas(text: str) -> str:
    return _MISSING_COMMA_RE.sub(r"\1,\2\3", text)


def strip_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def escape_internal_quotes(text: str) -> str:
    """Escape stray quotes inside single-line string values."""
    lines = []
    for line in text.split("\n"):
        match = _STRING_VALUE_LINE_RE.match(line)
        if match:
            value = match.group(2)
            # several pairs on one line: leave alone
            if '"' in value and not re.search(r'"\s*[,:]\s*"', value):
                line = match.group(1) + _UNESCAPED_QUOTE_RE.sub(r'\\"', value) + match.group(3)
        lines.append(line)
    return "\n".join(lines)


def escape_control_characters(text: str) -> str:
    """Escape raw newline, carriage return and tab characters inside strings."""
    replacements = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}
    out: List[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            elif char in replacements:
                out.append(replacements[char])
                continue
        elif char == '"':
            in_string = True
        out.append(char)
    return "".join(out)


def wrap_bare_fragment(text: str) -> str:
    stripped = text.strip()
    if stripped and stripped[0] not in "{[" and re.match(r'^"[^"]+"\s*:', stripped):
        return "{" + stripped.rstrip(",") + "}"
    return text


def balance_brackets(text: str) -> str:
    stack: List[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]" and stack and stack[-1] == char:
            stack.pop()
    if not stack:
        return text
    return text.rstrip().rstrip(",") + "".join(reversed(stack))


REPAIR_STEPS: List[Callable[[str], str]] = [
    strip_markdown_fences,
    strip_invisible_characters,
    close_truncated_string,
    insert_missing_commas,
    strip_trailing_commas,
    escape_internal_quotes,
    escape_control_characters,
    wrap_bare_fragment,
    balance_brackets,
]


def repair_json_text(text: str) -> str:
    """Apply every repair transform in order."""
    repaired = text or ""
    for step in REPAIR_STEPS:
        repaired = step(repaired)
    return repaired


def extract_innermost_object(text: str) -> Any:
    for match in _INNERMOST_OBJECT_RE.finditer(text or ""):
        ok, value = _try_loads(match.group(0))
        if ok:
            return value
    raise ValueError("no parseable innermost object")


def reconstruct_from_pairs(text: str) -> Any:
    pairs = _KEY_VALUE_RE.findall(text or "")
    if not pairs:
        raise ValueError("no key/value pairs found")
    body = ", ".join(f'"{key}": {value}' for key, value in pairs)
    ok, value = _try_loads(repair_json_text("{" + body + "}"))
    if not ok:
        raise ValueError("reconstructed object is not valid JSON")
    return value


def parse_json_safely(text: str) -> Any:
    """Parse model output, escalating through repair strategies until one works."""
    ok, value = _try_loads(text)
    if ok:
        return value

    candidate = extract_json_candidate(text)
    ok, value = _try_loads(candidate)
    if ok:
        logger.debug("JSON recovered by extraction")
        return value

    ok, value = _try_loads(repair_json_text(candidate if candidate is not None else text))
    if ok:
        logger.debug("JSON recovered by textual repair")
        return value

    for name, strategy in (("innermost object", extract_innermost_object), ("pair reconstruction", reconstruct_from_pairs)):
        try:
            value = strategy(text)
        except ValueError:
            continue
        logger.debug("JSON recovered by %s", name)
        return value

    raise JSONParseError(text)


def validate_tech_pack_structure(data: Any) -> bool:
    """Shallow check that parsed output looks like a tech pack."""
    if not isinstance(data, dict):
        return False
    return any(key in data for key in TECH_PACK_REQUIRED_KEYS)
