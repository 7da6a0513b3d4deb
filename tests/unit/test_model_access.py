from types import SimpleNamespace

import pytest

from allergen_assistant.core.errors import EmptyResponseError, ModelAccessExhausted, ModelRequestError
from allergen_assistant.services.model_access import (
    DEFAULT_MULTIMODAL_MODELS,
    NO_TEXT_FALLBACK,
    build_model_candidate_list,
    build_multimodal_candidate_list,
    build_user_content,
    extract_model_text,
    generate_with_fallback,
    is_retryable_model_error,
    summarize_model_access_issue,
)


def test_candidate_list_normalizes_and_dedupes() -> None:
    assert build_model_candidate_list("models/gemini-x", ["gemini-x", "gemini-y"]) == ["gemini-x", "gemini-y"]


def test_candidate_list_skips_empty_names() -> None:
    assert build_model_candidate_list("", ["  ", None, " Models/gemini-z ", "gemini-z"]) == ["gemini-z"]
    assert build_model_candidate_list(None, []) == []


def test_multimodal_candidate_list_uses_multimodal_fallbacks() -> None:
    assert build_multimodal_candidate_list("custom-vision") == ["custom-vision", *DEFAULT_MULTIMODAL_MODELS]


def test_retryable_by_status() -> None:
    assert is_retryable_model_error(ModelRequestError("boom", status_code=404))
    assert is_retryable_model_error(ModelRequestError("boom", status_code=403))
    assert not is_retryable_model_error(ModelRequestError("Too many requests", status_code=429))
    assert not is_retryable_model_error(ModelRequestError("bad request", status_code=400))


def test_retryable_by_message() -> None:
    assert is_retryable_model_error(RuntimeError("model foo does not exist"))
    assert is_retryable_model_error(RuntimeError("PERMISSION DENIED for this key"))
    assert is_retryable_model_error(RuntimeError("Insufficient permission"))
    assert is_retryable_model_error(RuntimeError("upstream said 404"))
    assert not is_retryable_model_error(RuntimeError("connection reset"))
    assert not is_retryable_model_error(RuntimeError(""))
    assert not is_retryable_model_error(None)


def test_retryable_flag_set_at_boundary() -> None:
    assert is_retryable_model_error(ModelRequestError("opaque", retryable=True))


def test_summary_lists_models() -> None:
    message = summarize_model_access_issue(["gemini-a", "gemini-b"])
    assert "gemini-a, gemini-b" in message
    assert "API key" in summarize_model_access_issue([])


def test_extract_requires_response_envelope() -> None:
    with pytest.raises(EmptyResponseError):
        extract_model_text({})
    with pytest.raises(EmptyResponseError):
        extract_model_text(None)


def test_extract_prefers_text_accessor() -> None:
    result = SimpleNamespace(response=SimpleNamespace(text=lambda: "  hello  ", candidates=[]))
    assert extract_model_text(result) == "hello"


def test_extract_falls_back_to_parts_when_accessor_raises() -> None:
    def broken() -> str:
        raise ValueError("blocked")

    response = SimpleNamespace(
        text=broken,
        candidates=[
            SimpleNamespace(content=SimpleNamespace(parts=[SimpleNamespace(text=" first "), SimpleNamespace(text="")])),
            SimpleNamespace(content=SimpleNamespace(parts=[SimpleNamespace(text="second")])),
        ],
    )
    assert extract_model_text(SimpleNamespace(response=response)) == "first\nsecond"


def test_extract_from_rest_json() -> None:
    result = {"response": {"candidates": [{"content": {"parts": [{"text": "Pad Thai contains peanuts."}]}}]}}
    assert extract_model_text(result) == "Pad Thai contains peanuts."


def test_extract_blocked_prompt_feedback() -> None:
    result = {
        "response": {
            "candidates": [],
            "promptFeedback": {
                "blockReason": "SAFETY",
                "safetyRatings": [
                    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "probability": "HIGH"},
                    {"probability": "LOW"},
                ],
            },
        }
    }
    text = extract_model_text(result)
    assert "safety" in text.lower()
    assert "harm category dangerous content (high)" in text


def test_extract_empty_prompt_feedback_still_reports_block() -> None:
    text = extract_model_text({"response": {"candidates": [], "promptFeedback": {}}})
    assert "unspecified safety concern" in text
    assert text != NO_TEXT_FALLBACK


def test_extract_returns_fallback_sentence() -> None:
    assert extract_model_text({"response": {"candidates": []}}) == NO_TEXT_FALLBACK


def test_build_user_content() -> None:
    content = build_user_content("hi", {"mime_type": "image/png", "data": "AAAA"})
    assert content["role"] == "user"
    assert content["parts"][1] == {"inline_data": {"mime_type": "image/png", "data": "AAAA"}}
    with pytest.raises(ValueError):
        build_user_content("   ")


def _ok(text: str) -> dict:
    return {"response": {"candidates": [{"content": {"parts": [{"text": text}]}}]}}


def test_fallback_moves_past_access_errors() -> None:
    attempted: list[str] = []

    def call(model: str) -> dict:
        attempted.append(model)
        if model == "a":
            raise ModelRequestError("not available", status_code=404)
        return _ok(f"from {model}")

    assert generate_with_fallback(["a", "b", "c"], call) == "from b"
    assert attempted == ["a", "b"]


def test_fallback_propagates_non_retryable_errors() -> None:
    attempted: list[str] = []

    def call(model: str) -> dict:
        attempted.append(model)
        raise ModelRequestError("quota", status_code=429)

    with pytest.raises(ModelRequestError) as excinfo:
        generate_with_fallback(["a", "b"], call)
    assert excinfo.value.status_code == 429
    assert attempted == ["a"]


def test_fallback_exhaustion_reports_every_model() -> None:
    def call(model: str) -> dict:
        raise ModelRequestError("permission denied", status_code=403)

    with pytest.raises(ModelAccessExhausted) as excinfo:
        generate_with_fallback(["a", "b"], call)
    assert excinfo.value.tried_models == ["a", "b"]
    assert "Tried models: a, b" in str(excinfo.value)


def test_fallback_with_no_candidates() -> None:
    with pytest.raises(ModelAccessExhausted):
        generate_with_fallback([], lambda model: _ok("never"))
