import re
from collections.abc import Mapping
from typing import Any

QUESTION_ROLES = frozenset({"agent", "assistant"})
MESSAGE_FIELDS = ("message", "original_message", "text", "content")
SPEAKER_FIELDS = ("role", "speaker")

_ANSWER_LINE_PATTERN = re.compile(r"^A: ", re.MULTILINE)


def to_qa_text(turns: Any) -> str:
    """Renders speaker turns as ``Q: ...`` / ``A: ...`` lines separated by a blank line.

    ``count_answer_lines`` relies on this exact shape.
    """
    if not isinstance(turns, list | tuple):
        return ""

    lines: list[str] = []
    for turn in turns:
        if not isinstance(turn, Mapping):
            continue
        message = _first_text(turn, MESSAGE_FIELDS)
        if not message:
            continue
        role = (_first_text(turn, SPEAKER_FIELDS) or "").lower()
        label = "Q" if role in QUESTION_ROLES else "A"
        lines.append(f"{label}: {message}")
    return "\n\n".join(lines)


def count_answer_lines(qa_text: str) -> int:
    return len(_ANSWER_LINE_PATTERN.findall(qa_text))


def _first_text(turn: Mapping[str, Any], fields: tuple[str, ...]) -> str | None:
    for field in fields:
        value = turn.get(field)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None
