import logging
import os
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from allergen_assistant.core.errors import ModelAccessExhausted, ModelRequestError, ValidationError
from allergen_assistant.core.prompts import (
    build_dish_allergen_prompt,
    build_food_alternative_prompt,
    build_menu_image_prompt,
    is_menu_recognition_failure,
)
from allergen_assistant.core.validation import (
    sanitize_allergen_list,
    sanitize_text_input,
    split_data_url,
    validate_and_normalize_text,
    validate_image_payload,
)
from allergen_assistant.services.llm import (
    GEMINI_CHAT_MODEL,
    GEMINI_VISION_MODEL,
    ImageInput,
    LLMClient,
    get_llm_client,
)
from allergen_assistant.services.model_access import build_model_candidate_list, build_multimodal_candidate_list

router = APIRouter(prefix="/api", tags=["chat"])
logger = logging.getLogger("uvicorn.error")
MENU_IMAGE_MAX_BYTES = int(os.getenv("MENU_IMAGE_MAX_BYTES", str(10 * 1024 * 1024)))


class DishChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    dish_name: Any = Field(default=None, alias="dishName")
    selected_allergens: Any = Field(default=None, alias="selectedAllergens")


class FoodAlternativeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_prompt: Any = Field(default=None, alias="userPrompt")
    selected_allergens: Any = Field(default=None, alias="selectedAllergens")


class ImageChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_data_url: Any = Field(default=None, alias="imageDataUrl")
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    size: Optional[float] = None
    prompt: Any = None
    selected_allergens: Any = Field(default=None, alias="selectedAllergens")


class ChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    response: str
    is_llm_error: bool = Field(default=False, serialization_alias="isLlmError")


def _invoke_model(
    llm_client: LLMClient,
    prompt: str,
    candidates: list[str],
    *,
    event: str,
    failure_message: str,
    image: Optional[ImageInput] = None,
) -> str:
    try:
        return llm_client.generate_text(prompt, candidates, image=image)
    except ModelAccessExhausted as exc:
        logger.error("%s_model_access_exhausted tried=%s", event, ",".join(exc.tried_models))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except ModelRequestError as exc:
        logger.exception("%s_llm_request_error model=%s detail=%s", event, exc.model, str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": failure_message, "error": str(exc)},
        ) from exc
    except Exception as exc:
        logger.exception("%s_unhandled_error detail=%s", event, str(exc))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=failure_message) from exc


@router.post("/chat", response_model=ChatResponse, response_model_by_alias=True)
def dish_allergen_chat(
    payload: DishChatRequest,
    llm_client: LLMClient = Depends(get_llm_client),
) -> ChatResponse:
    try:
        dish_name = validate_and_normalize_text(payload.dish_name, required=True)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Dish name: {exc}") from exc
    allergens = sanitize_allergen_list(payload.selected_allergens)

    text = _invoke_model(
        llm_client,
        build_dish_allergen_prompt(dish_name, allergens),
        build_model_candidate_list(GEMINI_CHAT_MODEL),
        event="chat",
        failure_message="A culinary misstep has occurred! Failed to retrieve text information.",
    )
    return ChatResponse(response=text)


@router.post("/food-alternative", response_model=ChatResponse, response_model_by_alias=True)
def food_alternative(
    payload: FoodAlternativeRequest,
    llm_client: LLMClient = Depends(get_llm_client),
) -> ChatResponse:
    try:
        description = validate_and_normalize_text(payload.user_prompt, required=True)
    except ValidationError as exc:
        raise HTTPException(
            status_code=400, detail=f"A prompt describing the dish or craving is required. {exc}"
        ) from exc
    allergens = sanitize_allergen_list(payload.selected_allergens)

    text = _invoke_model(
        llm_client,
        build_food_alternative_prompt(description, allergens),
        build_model_candidate_list(GEMINI_CHAT_MODEL),
        event="food_alternative",
        failure_message=(
            "A culinary misstep has occurred! Failed to retrieve an allergen-safe alternative recommendation."
        ),
    )
    return ChatResponse(response=text)


@router.post("/image-chat", response_model=ChatResponse, response_model_by_alias=True)
def menu_image_chat(
    payload: ImageChatRequest,
    llm_client: LLMClient = Depends(get_llm_client),
) -> ChatResponse:
    if not payload.image_data_url:
        raise HTTPException(status_code=400, detail="Image data is required.")
    try:
        validate_image_payload(
            payload.image_data_url,
            payload.mime_type,
            payload.size,
            max_size=MENU_IMAGE_MAX_BYTES,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    mime_type, body = split_data_url(payload.image_data_url)
    note = sanitize_text_input(payload.prompt) or None
    allergens = sanitize_allergen_list(payload.selected_allergens)

    text = _invoke_model(
        llm_client,
        build_menu_image_prompt(allergens, note),
        build_multimodal_candidate_list(GEMINI_VISION_MODEL),
        event="image_chat",
        failure_message=(
            "Menu recognition failed. It seems there was a technical glitch in analyzing the image. "
            "Please try again!"
        ),
        image=ImageInput(mime_type=mime_type, data_base64=body),
    )
    return ChatResponse(response=text, is_llm_error=is_menu_recognition_failure(text))
