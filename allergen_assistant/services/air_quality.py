import asyncio
import logging
import math
import os
from typing import Any, Optional

import httpx

from allergen_assistant.core.errors import UpstreamFetchError

logger = logging.getLogger("uvicorn.error")

OPEN_METEO_AIR_QUALITY_URL = "https://air-quality-api.open-meteo.com/v1/air-quality"
OPEN_METEO_POLLEN_URL = "https://pollen-api.open-meteo.com/v1/forecast"
OPEN_METEO_GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
AIR_QUALITY_TIMEOUT_SECONDS = float(os.getenv("AIR_QUALITY_TIMEOUT_SECONDS", "15"))

HOURLY_AIR_METRICS = [
    "pm10",
    "pm2_5",
    "european_aqi",
    "us_aqi",
    "carbon_monoxide",
    "nitrogen_dioxide",
    "sulphur_dioxide",
    "ozone",
]

HOURLY_POLLEN_METRICS = [
    "grass_pollen",
    "tree_pollen",
    "weed_pollen",
    "alder_pollen",
    "ash_pollen",
    "birch_pollen",
    "hazel_pollen",
    "mugwort_pollen",
    "olive_pollen",
    "pine_pollen",
    "ragweed_pollen",
]

CITY_COORDINATES: dict[str, dict[str, float]] = {
    "San Francisco": {"latitude": 37.7749, "longitude": -122.4194},
    "Los Angeles": {"latitude": 34.0522, "longitude": -118.2437},
    "New York": {"latitude": 40.7128, "longitude": -74.006},
    "Chicago": {"latitude": 41.8781, "longitude": -87.6298},
    "Atlanta": {"latitude": 33.749, "longitude": -84.388},
    "Austin": {"latitude": 30.2672, "longitude": -97.7431},
    "Seattle": {"latitude": 47.6062, "longitude": -122.3321},
    "Denver": {"latitude": 39.7392, "longitude": -104.9903},
}

# (upper bound inclusive, label, colour)
AQI_LEVELS = [
    (50, "Good", "#2ecc71"),
    (100, "Moderate", "#f1c40f"),
    (150, "Unhealthy for Sensitive Groups", "#e67e22"),
    (200, "Unhealthy", "#e74c3c"),
    (300, "Very Unhealthy", "#8e44ad"),
    (math.inf, "Hazardous", "#7f1d1d"),
]

POLLEN_LEVELS = [
    (1, "Minimal", "#9be7ff"),
    (2.5, "Low", "#2ecc71"),
    (4, "Moderate", "#f1c40f"),
    (6, "High", "#e67e22"),
    (math.inf, "Very High", "#e74c3c"),
]

UNKNOWN_LEVEL = {"label": "Unknown", "color": "#7f8c8d"}

_LOGGED_LABELS: set[str] = set()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and not math.isnan(value)


def _pick_level(value: Any, levels: list[tuple[float, str, str]]) -> dict[str, str]:
    if not _is_number(value):
        return dict(UNKNOWN_LEVEL)
    for upper, label, color in levels:
        if value <= upper:
            return {"label": label, "color": color}
    return dict(UNKNOWN_LEVEL)


def resolve_aqi_level(aqi: Any) -> dict[str, str]:
    return _pick_level(aqi, AQI_LEVELS)


def resolve_pollen_level(index: Any) -> dict[str, str]:
    return _pick_level(index, POLLEN_LEVELS)


def latest_metric_value(series: Any, times: Any) -> Optional[dict[str, Any]]:
    if not isinstance(series, list) or not isinstance(times, list) or not series:
        return None
    for index in range(len(series) - 1, -1, -1):
        candidate = series[index]
        if _is_number(candidate):
            if index < len(times):
                timestamp = times[index]
            else:
                timestamp = times[-1] if times else None
            return {"value": candidate, "timestamp": timestamp}
    return None


def average_pollen_index(hourly: Optional[dict[str, Any]]) -> Optional[float]:
    if not hourly:
        return None
    values = []
    for key in HOURLY_POLLEN_METRICS:
        if not isinstance(hourly.get(key), list):
            continue
        latest = latest_metric_value(hourly[key], hourly.get("time"))
        if latest is not None:
            values.append(latest["value"])
    if not values:
        return None
    return sum(values) / len(values)


def derive_pollen_index_from_air(
    pm10: Optional[dict[str, Any]], pm25: Optional[dict[str, Any]]
) -> Optional[float]:
    pm10_value = pm10["value"] if pm10 else None
    pm25_value = pm25["value"] if pm25 else None
    if pm10_value is None and pm25_value is None:
        return None
    strongest = max(pm10_value or 0, pm25_value or 0)
    if strongest <= 0:
        return None
    scaled = min(8, strongest / 8)
    return round(scaled, 2) if math.isfinite(scaled) else None


def _log_once(key: str, message: str, *args: Any) -> None:
    if key in _LOGGED_LABELS:
        return
    _LOGGED_LABELS.add(key)
    logger.warning(message, *args)


class AirQualityService:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=AIR_QUALITY_TIMEOUT_SECONDS, transport=self.transport)

    async def _safe_json(
        self, client: httpx.AsyncClient, url: str, params: dict[str, Any], label: str
    ) -> Optional[dict[str, Any]]:
        try:
            response = await client.get(url, params=params)
            if response.status_code == 404:
                _log_once(f"{label}-404", "air_quality_series_unavailable label=%s status=404", label)
                return None
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            detail = str(exc)[:220]
            _log_once(f"{label}-{detail}", "air_quality_request_failed label=%s detail=%s", label, detail)
            return None
        return payload if isinstance(payload, dict) else None

    async def _fetch_location(self, client: httpx.AsyncClient, latitude: float, longitude: float) -> dict[str, Any]:
        base = {"latitude": str(latitude), "longitude": str(longitude)}
        air_json, pollen_json = await asyncio.gather(
            self._safe_json(
                client, OPEN_METEO_AIR_QUALITY_URL, {**base, "hourly": ",".join(HOURLY_AIR_METRICS)}, "pollutants"
            ),
            self._safe_json(
                client, OPEN_METEO_POLLEN_URL, {**base, "hourly": ",".join(HOURLY_POLLEN_METRICS)}, "pollen"
            ),
        )
        if not air_json:
            raise UpstreamFetchError("Failed to fetch air quality data.")

        hourly = air_json.get("hourly") or {}
        times = hourly.get("time")
        latest_aqi = latest_metric_value(hourly.get("us_aqi"), times)
        latest_eu_aqi = latest_metric_value(hourly.get("european_aqi"), times)
        latest_pm25 = latest_metric_value(hourly.get("pm2_5"), times)
        latest_pm10 = latest_metric_value(hourly.get("pm10"), times)

        pollen_hourly = (pollen_json or {}).get("hourly")
        pollen_index = average_pollen_index(pollen_hourly)
        pollen_times = (pollen_hourly or {}).get("time") or []
        pollen_timestamp = pollen_times[-1] if pollen_hourly and pollen_times else None
        if pollen_index is None:
            derived = derive_pollen_index_from_air(latest_pm10, latest_pm25)
            if derived is not None:
                pollen_index = derived
                pollen_timestamp = next(
                    (
                        item["timestamp"]
                        for item in (latest_pm10, latest_pm25, latest_aqi, latest_eu_aqi)
                        if item and item.get("timestamp") is not None
                    ),
                    None,
                )

        air_timestamp = next(
            (item["timestamp"] for item in (latest_aqi, latest_eu_aqi) if item and item.get("timestamp") is not None),
            None,
        )
        if air_timestamp is None and isinstance(times, list) and times:
            air_timestamp = times[-1]

        us_aqi = latest_aqi or latest_eu_aqi
        return {
            "coordinates": {"latitude": latitude, "longitude": longitude},
            "air": {
                "usAqi": us_aqi["value"] if us_aqi else None,
                "europeanAqi": latest_eu_aqi["value"] if latest_eu_aqi else None,
                "pm25": latest_pm25["value"] if latest_pm25 else None,
                "pm10": latest_pm10["value"] if latest_pm10 else None,
                "timestamp": air_timestamp,
            },
            "pollen": {"index": pollen_index, "timestamp": pollen_timestamp},
        }

    async def fetch_location(self, latitude: float, longitude: float) -> dict[str, Any]:
        async with self._client() as client:
            return await self._fetch_location(client, latitude, longitude)

    async def _fetch_city(self, client: httpx.AsyncClient, city: str) -> dict[str, Any]:
        coords = CITY_COORDINATES[city]
        try:
            metrics = await self._fetch_location(client, coords["latitude"], coords["longitude"])
        except UpstreamFetchError as exc:
            return {"city": city, "coordinates": dict(coords), "error": str(exc)}
        except Exception as exc:
            logger.warning("air_quality_city_failed city=%s detail=%s", city, str(exc)[:220])
            return {"city": city, "coordinates": dict(coords), "error": "Failed to fetch air quality data."}
        return {
            "city": city,
            **metrics,
            "aqiLevel": resolve_aqi_level(metrics["air"]["usAqi"]),
            "pollenLevel": resolve_pollen_level(metrics["pollen"]["index"]),
        }

    async def fetch_batch(self, cities: Optional[list[str]] = None) -> list[dict[str, Any]]:
        requested = cities if cities else list(CITY_COORDINATES)
        unique = [name for name in dict.fromkeys(requested) if name in CITY_COORDINATES]
        async with self._client() as client:
            return list(await asyncio.gather(*(self._fetch_city(client, name) for name in unique)))

    async def _geocode(self, client: httpx.AsyncClient, city_name: str) -> dict[str, Any]:
        payload = await self._safe_json(
            client,
            OPEN_METEO_GEOCODING_URL,
            {"name": city_name, "count": "1", "language": "en", "format": "json"},
            "geocoding",
        )
        results = (payload or {}).get("results") or []
        if not results:
            raise UpstreamFetchError("City could not be located. Please refine your search.")
        match = results[0]
        try:
            latitude = float(match.get("latitude"))
            longitude = float(match.get("longitude"))
        except (TypeError, ValueError) as exc:
            raise UpstreamFetchError("Failed to resolve coordinates for the specified city.") from exc
        if math.isnan(latitude) or math.isnan(longitude):
            raise UpstreamFetchError("Failed to resolve coordinates for the specified city.")
        return {
            "latitude": latitude,
            "longitude": longitude,
            "name": match.get("name") or city_name,
            "country": match.get("country") or "",
        }

    async def fetch_city(self, city_name: str) -> dict[str, Any]:
        async with self._client() as client:
            geo = await self._geocode(client, city_name)
            metrics = await self._fetch_location(client, geo["latitude"], geo["longitude"])
        label = f"{geo['name']}, {geo['country']}" if geo["country"] else geo["name"]
        return {
            "location": {
                "label": label,
                "coordinates": {"latitude": geo["latitude"], "longitude": geo["longitude"]},
            },
            "metrics": metrics,
            "aqiLevel": resolve_aqi_level(metrics["air"]["usAqi"]),
            "pollenLevel": resolve_pollen_level(metrics["pollen"]["index"]),
        }

    def list_cities(self) -> list[str]:
        return list(CITY_COORDINATES)


def get_air_quality_service() -> AirQualityService:
    return AirQualityService()
