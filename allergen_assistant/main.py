from fastapi import FastAPI

from allergen_assistant.api.air_quality import router as air_quality_router
from allergen_assistant.api.chat import router as chat_router
from allergen_assistant.api.oit_doses import router as oit_doses_router
from allergen_assistant.api.preferences import router as preferences_router
from allergen_assistant.db.session import ensure_schema

app = FastAPI(title="Allergen Assistant")


@app.on_event("startup")
def on_startup() -> None:
    ensure_schema()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api")
def api_root() -> dict[str, str]:
    return {"service": "Allergen Assistant API", "status": "ok"}


app.include_router(chat_router)
app.include_router(preferences_router)
app.include_router(oit_doses_router)
app.include_router(air_quality_router)
