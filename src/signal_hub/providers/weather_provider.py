from datetime import datetime
from typing import Any, Dict, List, Optional

from src.signal_hub.logging_setup import get_logger
from src.signal_hub.models import AuthType, Domain, Signal, SignalType, SyncSchedule, utcnow
from src.signal_hub.provider import Provider
from src.signal_hub.wellness import round_half_up

log = get_logger(__name__)

GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
CURRENT_FIELDS = "temperature_2m,relative_humidity_2m,apparent_temperature,weather_code,wind_speed_10m"
WINDY_ABOVE_KMH = 15

WEATHER_CONDITIONS = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Foggy",
    48: "Depositing rime fog",
    51: "Light drizzle",
    53: "Moderate drizzle",
    55: "Dense drizzle",
    61: "Slight rain",
    63: "Moderate rain",
    65: "Heavy rain",
    71: "Slight snow",
    73: "Moderate snow",
    75: "Heavy snow",
    77: "Snow grains",
    80: "Slight rain showers",
    81: "Moderate rain showers",
    82: "Violent rain showers",
    85: "Slight snow showers",
    86: "Heavy snow showers",
    95: "Thunderstorm",
    96: "Thunderstorm with slight hail",
    99: "Thunderstorm with heavy hail",
}


def format_weather(temperature: int, condition: str, wind_speed: int) -> str:
    formatted = f"{temperature}°C, {condition}"
    if wind_speed > WINDY_ABOVE_KMH:
        formatted += f", windy ({wind_speed} km/h)"
    return formatted


class WeatherProvider(Provider):
    """Current conditions from Open-Meteo for the configured location (no key needed)."""

    id = "weather"
    name = "Weather"
    description = "Local weather conditions for context-aware suggestions"
    icon = "🌤️"
    domains = [Domain.PERSONAL]
    category = "context"
    auth_type = AuthType.NONE
    capabilities = frozenset({SignalType.EVENT})
    sync_schedule = SyncSchedule(type="fixed", interval_ms=30 * 60 * 1000, sync_on_connect=True)

    async def fetch_current(self, location: str) -> Optional[Dict[str, Any]]:
        geo = await self.http.get_json(GEOCODING_URL, params={
            "name": location,
            "count": 1,
            "language": "en",
            "format": "json",
        })
        results = (geo or {}).get("results") or []
        if not results:
            log.warning("weather_location_not_found", location=location)
            return None
        place = results[0]

        forecast = await self.http.get_json(FORECAST_URL, params={
            "latitude": place["latitude"],
            "longitude": place["longitude"],
            "current": CURRENT_FIELDS,
            "timezone": "auto",
        })
        current = forecast.get("current") or {}
        code = current.get("weather_code")
        label = ", ".join(p for p in (place.get("name"), place.get("country")) if p)
        return {
            "location": label,
            "temperature": round_half_up(current.get("temperature_2m", 0)),
            "feels_like": round_half_up(current.get("apparent_temperature", 0)),
            "humidity": current.get("relative_humidity_2m"),
            "wind_speed": round_half_up(current.get("wind_speed_10m", 0)),
            "weather_code": code,
            "condition": WEATHER_CONDITIONS.get(code, "Unknown"),
        }

    async def sync(self, since: Optional[datetime], instance_id: Optional[str] = None) -> List[Signal]:
        location = self.settings.get("location")
        if not location:
            return []
        weather = await self.fetch_current(location)
        if weather is None:
            return []

        now = utcnow()
        weather["formatted"] = format_weather(weather["temperature"], weather["condition"], weather["wind_speed"])
        return [Signal(
            id=f"weather-{now.strftime('%Y-%m-%dT%H:%M')}",
            source=self.id,
            type=SignalType.EVENT,
            timestamp=now,
            domain=Domain.PERSONAL,
            data=weather,
        )]
