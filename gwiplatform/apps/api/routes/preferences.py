from __future__ import annotations

from fastapi import APIRouter, HTTPException, Response, status
from pydantic import BaseModel, Field

from gwiplatform.apps.api.deps import set_preference_cookie
from gwiplatform.core.config import get_settings


router = APIRouter(prefix="/api/preferences", tags=["preferences"])


class LocaleRequest(BaseModel):
    locale: str = Field(min_length=2, max_length=16)


@router.post("/locale")
async def set_locale(payload: LocaleRequest, response: Response) -> dict:
    settings = get_settings()
    locale = payload.locale.strip().lower()
    if locale not in settings.supported_locales:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "VALIDATION_ERROR", "message": f"Unsupported locale: {payload.locale}"},
        )
    set_preference_cookie(response, settings.locale_cookie, locale)
    return {"locale": locale}
