import os
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

from allergen_assistant.core.errors import ModelRequestError
from allergen_assistant.services.model_access import (
    build_user_content,
    generate_with_fallback,
    is_retryable_model_error,
)

GEMINI_API_BASE = os.getenv("GEMINI_API_BASE", "https://generativelanguage.googleapis.com/v1beta")
GEMINI_CHAT_MODEL = os.getenv("GEMINI_CHAT_MODEL", "gemini-2.0-flash")
GEMINI_VISION_MODEL = os.getenv("GEMINI_VISION_MODEL", GEMINI_CHAT_MODEL)
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
LLM_CONNECT_TIMEOUT_SECONDS = float(os.getenv("LLM_CONNECT_TIMEOUT_SECONDS", "10"))
LLM_WRITE_TIMEOUT_SECONDS = float(os.getenv("LLM_WRITE_TIMEOUT_SECONDS", "30"))
LLM_POOL_TIMEOUT_SECONDS = float(os.getenv("LLM_POOL_TIMEOUT_SECONDS", "60"))
LLM_MAX_OUTPUT_TOKENS = int(os.getenv("LLM_MAX_OUTPUT_TOKENS", "700"))
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.7"))


def _http_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=LLM_CONNECT_TIMEOUT_SECONDS,
        read=LLM_TIMEOUT_SECONDS,
        write=LLM_WRITE_TIMEOUT_SECONDS,
        pool=LLM_POOL_TIMEOUT_SECONDS,
    )


def _api_key() -> str:
    return os.getenv("GEMINI_API_KEY", "").strip() or os.getenv("GOOGLE_API_KEY", "").strip()


@dataclass(frozen=True)
class ImageInput:
    mime_type: str
    data_base64: str


def _provider_error(model: str, exc: httpx.HTTPStatusError) -> ModelRequestError:
    status = exc.response.status_code if exc.response is not None else None
    detail = ""
    if exc.response is not None:
        detail = (exc.response.text or "").strip()[:220]
    error = ModelRequestError(
        f"Gemini request failed (status={status}): {detail or 'no response body'}",
        model=model,
        status_code=status,
    )
    error.retryable = is_retryable_model_error(error)
    return error


def _gemini_request(
    model: str,
    api_key: str,
    prompt: str,
    image: Optional[ImageInput] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> dict[str, Any]:
    image_part = {"mime_type": image.mime_type, "data": image.data_base64} if image else None
    payload = {
        "generationConfig": {"temperature": LLM_TEMPERATURE, "maxOutputTokens": LLM_MAX_OUTPUT_TOKENS},
        "contents": [build_user_content(prompt, image_part)],
    }
    url = f"{GEMINI_API_BASE}/models/{model}:generateContent"
    try:
        with httpx.Client(timeout=_http_timeout(), transport=transport) as client:
            response = client.post(
                url,
                params={"key": api_key},
                headers={"Content-Type": "application/json"},
                json=payload,
            )
            response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise _provider_error(model, exc) from exc
    except httpx.TimeoutException as exc:
        raise ModelRequestError(
            "Gemini request timed out while waiting for response.", model=model
        ) from exc
    except httpx.HTTPError as exc:
        raise ModelRequestError(f"Gemini request failed: {str(exc)[:220]}", model=model) from exc
    return {"response": response.json()}


class LLMClient(Protocol):
    def generate_text(
        self, prompt: str, candidates: list[str], image: Optional[ImageInput] = None
    ) -> str:
        ...


class RealLLMClient:
    def __init__(self, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.transport = transport

    def generate_text(
        self, prompt: str, candidates: list[str], image: Optional[ImageInput] = None
    ) -> str:
        api_key = _api_key()
        if not api_key:
            raise ModelRequestError("Gemini API key is not configured.")
        return generate_with_fallback(
            candidates,
            lambda model: _gemini_request(model, api_key, prompt, image=image, transport=self.transport),
        )


def get_llm_client() -> LLMClient:
    return RealLLMClient()
