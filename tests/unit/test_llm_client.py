import json

import httpx
import pytest

from allergen_assistant.core.errors import ModelAccessExhausted, ModelRequestError
from allergen_assistant.services.llm import ImageInput, RealLLMClient


def _reply(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


class RecordingTransport:
    def __init__(self, responses: dict[str, httpx.Response]) -> None:
        self.responses = responses
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        model = request.url.path.rsplit("/", 1)[-1].split(":", 1)[0]
        return self.responses.get(model, httpx.Response(500, text="unexpected model"))

    def models(self) -> list[str]:
        return [request.url.path.rsplit("/", 1)[-1].split(":", 1)[0] for request in self.requests]


@pytest.fixture
def api_key(monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    return "test-key"


def test_missing_key_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    with pytest.raises(ModelRequestError, match="API key is not configured"):
        RealLLMClient().generate_text("hello", ["gemini-a"])


def test_google_api_key_is_accepted(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.setenv("GOOGLE_API_KEY", "other-key")
    recorder = RecordingTransport({"gemini-a": httpx.Response(200, json=_reply("ok"))})
    client = RealLLMClient(transport=httpx.MockTransport(recorder))

    assert client.generate_text("hello", ["gemini-a"]) == "ok"
    assert recorder.requests[0].url.params["key"] == "other-key"


def test_request_payload_carries_prompt_and_image(api_key: str) -> None:
    recorder = RecordingTransport({"gemini-a": httpx.Response(200, json=_reply("menu text"))})
    client = RealLLMClient(transport=httpx.MockTransport(recorder))

    image = ImageInput(mime_type="image/png", data_base64="AAAA")
    assert client.generate_text("read this menu", ["gemini-a"], image=image) == "menu text"

    body = json.loads(recorder.requests[0].content)
    parts = body["contents"][0]["parts"]
    assert parts[0] == {"text": "read this menu"}
    assert parts[1] == {"inline_data": {"mime_type": "image/png", "data": "AAAA"}}
    assert "maxOutputTokens" in body["generationConfig"]


def test_unavailable_model_falls_back(api_key: str) -> None:
    recorder = RecordingTransport(
        {
            "gemini-a": httpx.Response(404, text="models/gemini-a is not found"),
            "gemini-b": httpx.Response(200, json=_reply("from b")),
        }
    )
    client = RealLLMClient(transport=httpx.MockTransport(recorder))

    assert client.generate_text("hello", ["gemini-a", "gemini-b"]) == "from b"
    assert recorder.models() == ["gemini-a", "gemini-b"]


def test_rate_limit_is_not_retried(api_key: str) -> None:
    recorder = RecordingTransport(
        {
            "gemini-a": httpx.Response(429, text="quota exceeded"),
            "gemini-b": httpx.Response(200, json=_reply("from b")),
        }
    )
    client = RealLLMClient(transport=httpx.MockTransport(recorder))

    with pytest.raises(ModelRequestError) as excinfo:
        client.generate_text("hello", ["gemini-a", "gemini-b"])
    assert excinfo.value.status_code == 429
    assert recorder.models() == ["gemini-a"]


def test_every_model_denied(api_key: str) -> None:
    recorder = RecordingTransport(
        {
            "gemini-a": httpx.Response(403, text="permission denied"),
            "gemini-b": httpx.Response(404, text="not found"),
        }
    )
    client = RealLLMClient(transport=httpx.MockTransport(recorder))

    with pytest.raises(ModelAccessExhausted) as excinfo:
        client.generate_text("hello", ["gemini-a", "gemini-b"])
    assert excinfo.value.tried_models == ["gemini-a", "gemini-b"]


def test_transport_failure_is_wrapped(api_key: str) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = RealLLMClient(transport=httpx.MockTransport(handler))
    with pytest.raises(ModelRequestError, match="Gemini request failed"):
        client.generate_text("hello", ["gemini-a"])
