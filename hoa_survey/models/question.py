"""Survey question and visibility condition models."""

from __future__ import annotations

import json
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class QuestionKind:
    """Allowed question types.

    A constants container instead of an Enum so the raw strings stored in the
    database compare directly.
    """

    YES_NO = "YES_NO"
    MULTI_SINGLE = "MULTI_SINGLE"
    MULTI_MULTI = "MULTI_MULTI"
    RATING_5 = "RATING_5"
    PARAGRAPH = "PARAGRAPH"

    ALL = frozenset({YES_NO, MULTI_SINGLE, MULTI_MULTI, RATING_5, PARAGRAPH})


class Condition(BaseModel):
    """A `showWhen` rule: visible when the trigger question's answer matches."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    trigger_order: int = Field(alias="triggerOrder")
    operator: Literal["equals", "contains"]
    value: str

    @field_validator("value", mode="before")
    @classmethod
    def value_as_string(cls, v: Any) -> str:
        if v is None:
            raise ValueError("condition value is required")
        if isinstance(v, bool):
            return "true" if v else "false"
        return str(v)

    def to_json(self) -> str:
        """Encode with the camelCase wire keys used for persistence."""
        return json.dumps(self.model_dump(by_alias=True), separators=(",", ":"))


class Question(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    order: int
    kind: str = Field(alias="type")
    text: str = ""
    options: Optional[List[str]] = None
    max_selections: Optional[int] = Field(default=None, alias="maxSelections")
    required: bool = False
    # Kept raw (string or mapping); parsed lazily so malformed rules fail closed
    show_when: Any = Field(default=None, alias="showWhen")

    @field_validator("kind")
    @classmethod
    def kind_must_be_known(cls, v: str) -> str:
        if v not in QuestionKind.ALL:
            raise ValueError(f"question type must be one of {sorted(QuestionKind.ALL)}")
        return v


__all__ = ["QuestionKind", "Condition", "Question"]
