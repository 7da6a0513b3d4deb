from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import pytest
from fastapi.testclient import TestClient

from allergen_assistant.core.errors import ModelAccessExhausted, ModelRequestError, UpstreamFetchError
from allergen_assistant.core.prompts import NOT_A_MENU_REPLY
from allergen_assistant.db.session import SessionLocal, configure_database, ensure_schema
from allergen_assistant.services.air_quality import get_air_quality_service, resolve_aqi_level, resolve_pollen_level
from allergen_assistant.services.llm import ImageInput, get_llm_client
from allergen_assistant.services.model_access import extract_model_text, summarize_model_access_issue


class FakeScenario(str, Enum):
    OK = "OK"
    BLOCKED = "BLOCKED"
    ACCESS_EXHAUSTED = "ACCESS_EXHAUSTED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    NOT_A_MENU = "NOT_A_MENU"
    CRASH = "CRASH"


class FakeLLMClient:
    def __init__(self, scenario: FakeScenario) -> None:
        self.scenario = scenario
        self.calls: list[dict[str, Any]] = []

    def generate_text(
        self, prompt: str, candidates: list[str], image: Optional[ImageInput] = None
    ) -> str:
        self.calls.append({"prompt": prompt, "candidates": list(candidates), "image": image})
        if self.scenario == FakeScenario.OK:
            return "• **MILK**\nModerate cross-contamination risk. Please confirm with the establishment."
        if self.scenario == FakeScenario.BLOCKED:
            return extract_model_text(
                {"response": {"candidates": [], "promptFeedback": {"blockReason": "SAFETY"}}}
            )
        if self.scenario == FakeScenario.ACCESS_EXHAUSTED:
            raise ModelAccessExhausted(summarize_model_access_issue(candidates), tried_models=candidates)
        if self.scenario == FakeScenario.PROVIDER_ERROR:
            raise ModelRequestError("Gemini request failed (status=429): quota", model=candidates[0], status_code=429)
        if self.scenario == FakeScenario.NOT_A_MENU:
            return NOT_A_MENU_REPLY
        raise RuntimeError("simulated crash")


SAMPLE_METRICS = {
    "coordinates": {"latitude": 47.6062, "longitude": -122.3321},
    "air": {"usAqi": 42, "europeanAqi": 30, "pm25": 8.1, "pm10": 12.4, "timestamp": "2026-10-19T10:00"},
    "pollen": {"index": 1.8, "timestamp": "2026-10-19T10:00"},
}


class FakeAirQualityService:
    def __init__(self) -> None:
        self.batch_requests: list[Optional[list[str]]] = []
        self.fail_batch = False

    async def fetch_batch(self, cities: Optional[list[str]] = None) -> list[dict[str, Any]]:
        self.batch_requests.append(cities)
        if self.fail_batch:
            raise UpstreamFetchError("upstream down")
        names = cities or ["Seattle"]
        return [
            {
                "city": name,
                **SAMPLE_METRICS,
                "aqiLevel": resolve_aqi_level(42),
                "pollenLevel": resolve_pollen_level(1.8),
            }
            for name in names
        ]

    async def fetch_location(self, latitude: float, longitude: float) -> dict[str, Any]:
        if latitude > 90:
            raise UpstreamFetchError("Failed to fetch air quality data.")
        return {**SAMPLE_METRICS, "coordinates": {"latitude": latitude, "longitude": longitude}}

    async def fetch_city(self, city_name: str) -> dict[str, Any]:
        if city_name == "Atlantis":
            raise UpstreamFetchError("City could not be located. Please refine your search.")
        return {
            "location": {"label": f"{city_name}, United States", "coordinates": SAMPLE_METRICS["coordinates"]},
            "metrics": SAMPLE_METRICS,
            "aqiLevel": resolve_aqi_level(42),
            "pollenLevel": resolve_pollen_level(1.8),
        }

    def list_cities(self) -> list[str]:
        return ["Seattle", "Denver"]


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "allergen_assistant_test.db"
    configure_database(str(db_path))
    ensure_schema()
    return db_path


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from allergen_assistant.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}


@pytest.fixture
def db_session(test_db_path: Path):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def override_llm(app) -> Callable[[FakeScenario], FakeLLMClient]:
    def _override(scenario: FakeScenario) -> FakeLLMClient:
        fake = FakeLLMClient(scenario)
        app.dependency_overrides[get_llm_client] = lambda: fake
        return fake

    return _override


@pytest.fixture
def fake_air_quality(app, client) -> FakeAirQualityService:
    fake = FakeAirQualityService()
    app.dependency_overrides[get_air_quality_service] = lambda: fake
    return fake
