"""Parsing heuristics for free-form language model output.

Model responses are treated as untrusted text: code fences are stripped, the
first JSON block is extracted, and anything that fails to decode is reported
as `None` so callers can fall back.
"""

from __future__ import annotations

import json
import re
from typing import Any

from chatbridge.schemas import SuggestedReply

EXPLANATION_LENGTH_RATIO = 3

# Phrases a translation model emits when it explains or asks instead of translating.
EXPLANATION_PHRASES = (
    "please provide",
    "vui lòng cung cấp",
    "xin vui lòng",
    "提供",
    "ください",
    "cannot translate",
    "unable to translate",
    "không thể dịch",
)

_FENCE_OPEN = re.compile(r"^```[a-zA-Z]*\s*")
_FENCE_CLOSE = re.compile(r"\s*```$")
_NUMBERED_LINE = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s*")
_WORD = re.compile(r"\w")


def strip_code_fences(text: str) -> str:
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN.sub("", cleaned)
        cleaned = _FENCE_CLOSE.sub("", cleaned).strip()
    return cleaned


def _balanced_block(text: str, opener: str, closer: str) -> str | None:
    start = text.find(opener)
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        char = text[idx]
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
        elif char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]
    return None


def extract_json_object(text: str) -> dict[str, Any] | None:
    cleaned = strip_code_fences(text)
    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    block = _balanced_block(cleaned, "{", "}")
    if block is None:
        return None
    try:
        parsed = json.loads(block)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_json_array(text: str) -> list[Any] | None:
    cleaned = strip_code_fences(text)
    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, list):
            return parsed
    except json.JSONDecodeError:
        pass

    block = _balanced_block(cleaned, "[", "]")
    if block is None:
        return None
    try:
        parsed = json.loads(block)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, list) else None


def looks_like_explanation(original: str, candidate: str) -> bool:
    """True when a translation output reads as commentary rather than a translation."""
    source = (original or "").strip()
    output = (candidate or "").strip()
    if not output:
        return True
    if source and len(output) > len(source) * EXPLANATION_LENGTH_RATIO:
        return True
    lowered = output.lower()
    return any(phrase in lowered for phrase in EXPLANATION_PHRASES)


def clean_translation(text: str) -> str:
    cleaned = strip_code_fences(text)
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in {'"', "'"}:
        cleaned = cleaned[1:-1].strip()
    return cleaned


KNOWN_TONES = frozenset(
    {
        "question",
        "empathy",
        "solution",
        "welcome",
        "check-in",
        "gentle-follow-up",
        "continuation",
        "encouragement",
        "confirmation",
        "guidance",
        "support",
    }
)

SAFE_DEFAULT_REPLY = "ご質問ありがとうございます。"


def parse_tone(label: str | None) -> str:
    """Normalize a tone label; anything unrecognized becomes `solution`."""
    token = str(label or "").strip().lower().replace("_", "-").replace(" ", "-")
    return token if token in KNOWN_TONES else "solution"


def safe_default_suggestions(language: str) -> list[SuggestedReply]:
    return [SuggestedReply(content=SAFE_DEFAULT_REPLY, tone="question", language=language)]


def parse_suggestions(text: str, language: str, *, limit: int = 3) -> list[SuggestedReply]:
    """Parse `tone: content` lines into drafted replies.

    Leading bullet markers are stripped and each line is split on its first
    colon (ASCII or full-width). A line with no colon is kept whole with the
    `solution` tone. Output with no usable line yields the safe default, so
    the result is never empty.
    """
    replies: list[SuggestedReply] = []
    for raw_line in strip_code_fences(text).splitlines():
        line = _NUMBERED_LINE.sub("", raw_line).strip()
        if not _WORD.search(line):
            continue
        colon = min((idx for idx in (line.find(":"), line.find("：")) if idx != -1), default=-1)
        if colon == -1:
            replies.append(SuggestedReply(content=line, tone="solution", language=language))
        else:
            content = line[colon + 1 :].strip() or line
            replies.append(SuggestedReply(content=content, tone=parse_tone(line[:colon]), language=language))
        if len(replies) >= limit:
            break
    return replies or safe_default_suggestions(language)
