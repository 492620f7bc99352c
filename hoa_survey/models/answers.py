"""Answer value types.

Answers arrive as loosely shaped JSON (string, number, list of strings or a
write-in object). `coerce_answer` normalizes them into one of four tagged
variants so visibility checks can dispatch on the variant instead of probing
runtime shapes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple, Union

WRITE_IN_CHOICE = "__WRITE_IN__"


@dataclass(frozen=True)
class Scalar:
    text: str

    def to_json(self) -> Any:
        return self.text


@dataclass(frozen=True)
class MultiChoice:
    items: Tuple[str, ...]

    def to_json(self) -> Any:
        return list(self.items)


@dataclass(frozen=True)
class Rating:
    value: int

    def to_json(self) -> Any:
        return self.value


@dataclass(frozen=True)
class WriteIn:
    choice: str
    text: str

    def to_json(self) -> Any:
        return {"choice": self.choice, "writeIn": self.text}


AnswerValue = Union[Scalar, MultiChoice, Rating, WriteIn]

# Answer set as stored/transported: question id -> raw JSON answer
AnswerSet = Mapping[str, Any]


def coerce_answer(raw: Any) -> Optional[AnswerValue]:
    """Return the tagged variant for a raw answer, or None when unanswered.

    None, the empty string and an empty list all count as unanswered. Booleans
    become the scalars "true"/"false"; integral numbers become ratings.
    """
    if raw is None:
        return None
    if isinstance(raw, (Scalar, MultiChoice, Rating, WriteIn)):
        return raw
    if isinstance(raw, bool):
        return Scalar("true" if raw else "false")
    if isinstance(raw, int):
        return Rating(raw)
    if isinstance(raw, float):
        return Rating(int(raw)) if raw.is_integer() else Scalar(str(raw))
    if isinstance(raw, str):
        return Scalar(raw) if raw != "" else None
    if isinstance(raw, (list, tuple)):
        if not raw:
            return None
        return MultiChoice(tuple(str(item) for item in raw))
    if isinstance(raw, Mapping):
        if raw.get("choice") == WRITE_IN_CHOICE or "writeIn" in raw:
            return WriteIn(str(raw.get("choice") or WRITE_IN_CHOICE), str(raw.get("writeIn") or ""))
        return None
    return Scalar(str(raw))


def answer_text(value: AnswerValue) -> str:
    """String form used by scalar comparisons."""
    if isinstance(value, Scalar):
        return value.text
    if isinstance(value, Rating):
        return str(value.value)
    if isinstance(value, WriteIn):
        return value.text
    return ",".join(value.items)


def is_answered(raw: Any) -> bool:
    return coerce_answer(raw) is not None


__all__ = [
    "WRITE_IN_CHOICE",
    "Scalar",
    "MultiChoice",
    "Rating",
    "WriteIn",
    "AnswerValue",
    "AnswerSet",
    "coerce_answer",
    "answer_text",
    "is_answered",
]
