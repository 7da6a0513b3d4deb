import logging
import os
from typing import Any, Optional

from fastapi import APIRouter, Cookie, Response
from pydantic import BaseModel, ConfigDict, Field

from allergen_assistant.core.security import open_cookie_payload, seal_cookie_payload
from allergen_assistant.core.validation import sanitize_allergen_list

router = APIRouter(prefix="/api/preferences", tags=["preferences"])
logger = logging.getLogger("uvicorn.error")

PREFERENCES_COOKIE = "allergenPreferences"
MAX_AGE_SECONDS = 60 * 60 * 24 * 30
APP_ENV = os.getenv("APP_ENV", "development").strip().lower()


class PreferencesPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    selected_allergens: Any = Field(default=None, alias="selectedAllergens")
    has_selected_initial_allergens: Any = Field(default=False, alias="hasSelectedInitialAllergens")


class PreferencesResponse(BaseModel):
    selectedAllergens: list[str]
    hasSelectedInitialAllergens: bool


class SaveResponse(BaseModel):
    success: bool


def _defaults() -> PreferencesResponse:
    return PreferencesResponse(selectedAllergens=[], hasSelectedInitialAllergens=False)


@router.get("", response_model=PreferencesResponse)
def read_preferences(
    allergen_preferences: Optional[str] = Cookie(default=None, alias=PREFERENCES_COOKIE),
) -> PreferencesResponse:
    if not allergen_preferences:
        return _defaults()
    try:
        stored = open_cookie_payload(allergen_preferences)
    except ValueError as exc:
        logger.warning("preferences_cookie_unreadable detail=%s", str(exc))
        return _defaults()
    return PreferencesResponse(
        selectedAllergens=sanitize_allergen_list(stored.get("selectedAllergens")),
        hasSelectedInitialAllergens=bool(stored.get("hasSelectedInitialAllergens")),
    )


@router.post("", response_model=SaveResponse)
def save_preferences(payload: PreferencesPayload, response: Response) -> SaveResponse:
    value = seal_cookie_payload(
        {
            "selectedAllergens": sanitize_allergen_list(payload.selected_allergens),
            "hasSelectedInitialAllergens": bool(payload.has_selected_initial_allergens),
        }
    )
    response.set_cookie(
        key=PREFERENCES_COOKIE,
        value=value,
        max_age=MAX_AGE_SECONDS,
        path="/",
        httponly=True,
        samesite="lax",
        secure=APP_ENV == "production",
    )
    return SaveResponse(success=True)
