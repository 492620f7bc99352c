"""Pydantic request and response bodies for the HTTP routes."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from hoa_survey.models.question import Question

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class MemberListCreate(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def name_required(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name is required")
        return v.strip()


class MemberCreate(BaseModel):
    lot: str
    name: str
    email: str
    address: str = ""

    @field_validator("lot", "name")
    @classmethod
    def non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("email")
    @classmethod
    def email_format(cls, v: str) -> str:
        if not _EMAIL_RE.match(v.strip()):
            raise ValueError("invalid email format")
        return v.strip()


class SurveyCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    member_list_id: str = Field(alias="memberListId")
    closes_at: Optional[str] = Field(default=None, alias="closesAt")
    questions: List[Question] = Field(default_factory=list)

    @field_validator("closes_at")
    @classmethod
    def closes_at_utc(cls, v: Optional[str]) -> Optional[str]:
        """Normalise to the `YYYY-MM-DDTHH:MM:SSZ` form stored for timestamps."""
        if v is None or not v.strip():
            return None
        parsed = datetime.fromisoformat(v.strip().replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


class AnswersBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    answers: Dict[str, Any] = Field(default_factory=dict)
    # Answers before the edit; visibility changes are reported against them
    previous_answers: Optional[Dict[str, Any]] = Field(default=None, alias="previousAnswers")


class VisibilityResult(BaseModel):
    enabled: Dict[str, bool]
    answers: Dict[str, Any]
    suppressed_answers: List[str]
    now_visible: List[str] = Field(default_factory=list)
    now_hidden: List[str] = Field(default_factory=list)


class SubmissionResult(BaseModel):
    response_id: str
    submitted_at: str
    answers: Dict[str, Any]
    suppressed_answers: List[str]


__all__ = [
    "MemberListCreate",
    "MemberCreate",
    "SurveyCreate",
    "AnswersBody",
    "VisibilityResult",
    "SubmissionResult",
]
