import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from allergen_assistant.core.errors import UpstreamFetchError
from allergen_assistant.core.validation import sanitize_text_input
from allergen_assistant.services.air_quality import (
    AirQualityService,
    get_air_quality_service,
    resolve_aqi_level,
    resolve_pollen_level,
)
from allergen_assistant.services.streaming import (
    SSE_HEADERS,
    SSE_MEDIA_TYPE,
    FrameChannel,
    StreamSession,
    stream_session_frames,
)

router = APIRouter(prefix="/api/air-quality", tags=["air-quality"])
logger = logging.getLogger("uvicorn.error")


def parse_cities(raw: Optional[str]) -> Optional[list[str]]:
    if not raw:
        return None
    names = [name.strip() for name in raw.split(",") if name.strip()]
    return names or None


def _parse_coordinate(raw: str) -> float:
    value = float(raw)
    if math.isnan(value):
        raise ValueError("NaN coordinate")
    return value


@router.get("")
async def air_quality(
    request: Request,
    mode: Optional[str] = None,
    cities: Optional[str] = None,
    city: Optional[str] = None,
    lat: Optional[str] = None,
    lon: Optional[str] = None,
    service: AirQualityService = Depends(get_air_quality_service),
):
    if mode == "stream":
        channel = FrameChannel()
        session = StreamSession(service.fetch_batch, channel, locations=parse_cities(cities))
        return StreamingResponse(
            stream_session_frames(session, channel, request.is_disconnected),
            media_type=SSE_MEDIA_TYPE,
            headers=SSE_HEADERS,
        )

    if city:
        city_name = sanitize_text_input(city)
        if not city_name:
            raise HTTPException(status_code=400, detail="City name is required.")
        try:
            return await service.fetch_city(city_name)
        except UpstreamFetchError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    if lat is not None and lon is not None:
        try:
            latitude = _parse_coordinate(lat)
            longitude = _parse_coordinate(lon)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Latitude and longitude must be numeric values.") from exc
        try:
            metrics = await service.fetch_location(latitude, longitude)
        except UpstreamFetchError as exc:
            logger.warning("air_quality_location_failed lat=%s lon=%s detail=%s", latitude, longitude, str(exc))
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {
            "location": {"coordinates": metrics["coordinates"], "label": "Your Location"},
            "metrics": metrics,
            "aqiLevel": resolve_aqi_level(metrics["air"]["usAqi"]),
            "pollenLevel": resolve_pollen_level(metrics["pollen"]["index"]),
        }

    try:
        results = await service.fetch_batch(parse_cities(cities))
    except Exception as exc:
        logger.exception("air_quality_batch_failed detail=%s", str(exc))
        raise HTTPException(status_code=500, detail="Failed to fetch air quality data.") from exc
    return {"results": results, "availableCities": service.list_cities()}
