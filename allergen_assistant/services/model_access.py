import logging
import re
from typing import Any, Callable, Iterable, Optional

from allergen_assistant.core.errors import EmptyResponseError, ModelAccessExhausted, ModelRequestError

logger = logging.getLogger("uvicorn.error")

DEFAULT_TEXT_MODELS = [
    "gemini-2.0-flash",
    "gemini-1.5-flash-latest",
    "gemini-1.5-pro-latest",
    "gemini-1.0-pro-001",
]

DEFAULT_MULTIMODAL_MODELS = [
    "gemini-2.0-flash",
    "gemini-1.5-flash-latest",
    "gemini-1.5-pro-latest",
]

NO_TEXT_FALLBACK = "Gemini did not return any textual content. Please try again with a different prompt."

_MODEL_PREFIX_RE = re.compile(r"^models/", re.IGNORECASE)
_RETRYABLE_MESSAGE_PATTERNS = [
    re.compile(r"permission denied", re.IGNORECASE),
    re.compile(r"insufficient permission", re.IGNORECASE),
    re.compile(r"not found", re.IGNORECASE),
    re.compile(r"model .*? does not exist", re.IGNORECASE),
    re.compile(r"404"),
    re.compile(r"403"),
]


def normalize_model_name(name: Any) -> str:
    if not isinstance(name, str):
        return ""
    return _MODEL_PREFIX_RE.sub("", name.strip()).strip()


def build_model_candidate_list(
    requested_model: Optional[str], fallback_models: Iterable[str] = DEFAULT_TEXT_MODELS
) -> list[str]:
    candidates: list[str] = []
    for name in [requested_model, *fallback_models]:
        normalized = normalize_model_name(name)
        if normalized and normalized not in candidates:
            candidates.append(normalized)
    return candidates


def build_multimodal_candidate_list(requested_model: Optional[str]) -> list[str]:
    return build_model_candidate_list(requested_model, DEFAULT_MULTIMODAL_MODELS)


def is_retryable_model_error(error: Optional[BaseException]) -> bool:
    """True when the error means "this model is not available to us".

    Only access problems justify moving on to the next candidate. Quota,
    validation and transport failures are not retryable.
    """
    if error is None:
        return False
    if isinstance(error, ModelRequestError) and error.retryable:
        return True
    status_code = getattr(error, "status_code", None)
    if status_code in (403, 404):
        return True
    message = str(error)
    if not message:
        return False
    return any(pattern.search(message) for pattern in _RETRYABLE_MESSAGE_PATTERNS)


def summarize_model_access_issue(tried_models: Optional[list[str]]) -> str:
    if not tried_models:
        return (
            "Gemini did not provide an accessible model for this request. "
            "Please verify your API key permissions."
        )
    models = ", ".join(tried_models)
    return (
        "Gemini reported that none of the configured models are accessible with the current API key. "
        f"Tried models: {models}. Update GEMINI_CHAT_MODEL (or related env vars) to a model enabled "
        "for your key, or adjust API access in Google AI Studio."
    )


def _field(source: Any, name: str) -> Any:
    if source is None:
        return None
    if isinstance(source, dict):
        return source.get(name)
    return getattr(source, name, None)


def _humanize(code: Any) -> str:
    return str(code).replace("_", " ").lower()


def _format_blocked_message(feedback: Any) -> str:
    block_reason = _field(feedback, "blockReason") or _field(feedback, "block_reason")
    block_message = _field(feedback, "blockReasonMessage") or _field(feedback, "block_reason_message")
    ratings = _field(feedback, "safetyRatings") or _field(feedback, "safety_ratings") or []

    reason_text = _humanize(block_reason) if block_reason else "unspecified safety concern"
    flagged = []
    for rating in ratings:
        category = _field(rating, "category")
        if not category:
            continue
        probability = _field(rating, "probability")
        label = _humanize(category)
        flagged.append(f"{label} ({_humanize(probability)})" if probability else label)

    details = f" Categories flagged: {', '.join(flagged)}." if flagged else ""
    message = f" {block_message}" if block_message else ""
    return (
        f"Gemini was unable to produce a response due to {reason_text}.{message}{details} "
        "Please adjust the prompt and try again."
    )


def _text_from_accessor(response: Any) -> str:
    accessor = _field(response, "text")
    try:
        value = accessor() if callable(accessor) else accessor
    except Exception:
        # SDK accessors raise when the reply was blocked; fall back to the parts.
        return ""
    return value.strip() if isinstance(value, str) else ""


def extract_model_text(result: Any) -> str:
    response = _field(result, "response")
    if not response:
        raise EmptyResponseError("Gemini response payload was empty.")

    helper_text = _text_from_accessor(response)
    if helper_text:
        return helper_text

    segments: list[str] = []
    for candidate in _field(response, "candidates") or []:
        content = _field(candidate, "content")
        for part in _field(content, "parts") or []:
            text = _field(part, "text")
            if isinstance(text, str) and text.strip():
                segments.append(text.strip())
    consolidated = "\n".join(segments).strip()
    if consolidated:
        return consolidated

    feedback = _field(response, "promptFeedback")
    if feedback is None:
        feedback = _field(response, "prompt_feedback")
    if feedback is not None:
        return _format_blocked_message(feedback)
    return NO_TEXT_FALLBACK


def build_user_content(text: str, image: Optional[dict[str, str]] = None) -> dict[str, Any]:
    if not isinstance(text, str) or not text.strip():
        raise ValueError("Gemini prompt must be a non-empty string.")
    parts: list[dict[str, Any]] = [{"text": text}]
    if image:
        parts.append({"inline_data": {"mime_type": image["mime_type"], "data": image["data"]}})
    return {"role": "user", "parts": parts}


def generate_with_fallback(candidates: list[str], call: Callable[[str], Any]) -> str:
    tried: list[str] = []
    for index, model in enumerate(candidates):
        tried.append(model)
        try:
            result = call(model)
        except Exception as exc:
            if not is_retryable_model_error(exc):
                raise
            remaining = len(candidates) - index - 1
            logger.warning(
                "model_candidate_unavailable model=%s remaining=%s detail=%s", model, remaining, str(exc)[:220]
            )
            continue
        return extract_model_text(result)
    raise ModelAccessExhausted(summarize_model_access_issue(tried), tried_models=tried)
