"""HOA survey administration core.

Exposes the FastAPI application factory. Conditional question visibility,
the streaming member/non-respondent export and its resumable client live in
`hoa_survey/logic/`; route handlers live in `hoa_survey/routes/`.
"""

from __future__ import annotations

from hoa_survey.main import create_app

__all__ = ["create_app"]
