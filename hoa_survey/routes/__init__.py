"""APIRouter registration for the survey service."""

from __future__ import annotations

from fastapi import APIRouter

from hoa_survey.routes.members import router as members_router
from hoa_survey.routes.responses import router as responses_router
from hoa_survey.routes.surveys import router as surveys_router

api_router = APIRouter()
api_router.include_router(members_router, tags=["MemberLists"])
api_router.include_router(surveys_router, tags=["Surveys", "Visibility"])
api_router.include_router(responses_router, tags=["Responses"])

__all__ = ["api_router"]
