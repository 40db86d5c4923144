"""Free weather skill backed by the Open-Meteo geocoding and forecast APIs."""

import logging

import httpx

from ..exceptions import ToolExecutionError
from ..module_registry import ModuleRegistry
from ..runtime import ExecutionRuntime

logger = logging.getLogger(__name__)

MODULE_NAME = "skills.weather"

GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
FORECAST_URL = "https://api.open-meteo.com/v1/forecast"


async def _geocode_city(client: httpx.AsyncClient, city: str) -> tuple[float, float] | None:
    response = await client.get(
        GEOCODING_URL,
        params={"name": city, "count": 1, "language": "en", "format": "json"},
    )
    if response.status_code != 200:
        return None

    results = response.json().get("results") or []
    if not results:
        return None
    return results[0]["latitude"], results[0]["longitude"]


async def get_weather(
    runtime: ExecutionRuntime,
    city: str | None = None,
    latitude: float | None = None,
    longitude: float | None = None,
) -> dict:
    """Current temperature, hourly temperatures and daily sunrise/sunset for a city or coordinates."""
    async with runtime.http_client() as client:
        if latitude is None or longitude is None:
            if not city:
                raise ValueError("Please provide either a city name or both latitude and longitude.")
            coords = await _geocode_city(client, city)
            if coords is None:
                raise ValueError(f'Could not find coordinates for "{city}".')
            latitude, longitude = coords

        logger.debug(f"Fetching forecast for {latitude},{longitude}")
        response = await client.get(
            FORECAST_URL,
            params={
                "latitude": latitude,
                "longitude": longitude,
                "current": "temperature_2m",
                "hourly": "temperature_2m",
                "daily": "sunrise,sunset",
                "timezone": "auto",
            },
        )
        if response.status_code != 200:
            raise ToolExecutionError("get_weather", f"forecast request returned {response.status_code}")
        payload = response.json()

    current = payload.get("current")
    hourly = payload.get("hourly")
    daily = payload.get("daily")
    return {
        "city_name": city,
        "current": {"temperature_celsius": current.get("temperature_2m")} if current else None,
        "hourly": {
            "times": hourly.get("time", []),
            "temperatures_celsius": hourly.get("temperature_2m", []),
        } if hourly else None,
        "daily": {
            "sunrise": daily.get("sunrise", []),
            "sunset": daily.get("sunset", []),
        } if daily else None,
    }


def register(registry: ModuleRegistry) -> None:
    weather = registry.module(MODULE_NAME, "Weather forecasts from Open-Meteo (free).")
    weather.capability(
        output_description=(
            "dict with city_name, current.temperature_celsius, "
            "hourly.times / hourly.temperatures_celsius, daily.sunrise / daily.sunset"
        ),
    )(get_weather)
