"""Provider tests with the network replaced by a patched requests.request."""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import requests

from src.signal_hub.credentials import InMemoryCredentialStore
from src.signal_hub.errors import (
    AuthExpiredError,
    ConfigurationError,
    CredentialsRevokedError,
    NetworkError,
    ProviderError,
)
from src.signal_hub.models import AccountInfo, Domain, SignalType
from src.signal_hub.oauth import OAuthHelper
from src.signal_hub.providers.apple_health_provider import AppleHealthProvider
from src.signal_hub.providers.google_provider import GoogleProvider, get_event_domain, sender_name
from src.signal_hub.providers.oura_provider import OuraProvider
from src.signal_hub.providers.time_provider import TimeProvider
from src.signal_hub.providers.weather_provider import WeatherProvider
from src.signal_hub.providers.whoop_provider import WhoopProvider
from tests.utils.http_fixture import Router, fake_response

pytestmark = pytest.mark.asyncio(loop_scope="function")

NOW = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)  # a Monday


# --- time -------------------------------------------------------------------

async def test_time_signal_fields():
    clock = lambda: datetime(2025, 3, 1, 15, 5, tzinfo=timezone.utc)
    provider = TimeProvider(InMemoryCredentialStore(), clock=clock, settings={"location": "Berlin"})

    [signal] = await provider.sync(None)

    assert signal.id == "time-2025-03-01T15:05"
    assert signal.data["formatted_time"] == "3:05 PM"
    assert signal.data["time_of_day"] == "afternoon"
    assert signal.data["day_of_week"] == "Saturday"
    assert signal.data["date"] == "March 1, 2025"
    assert signal.data["is_weekend"] is True
    assert signal.data["location"] == "Berlin"
    assert provider.is_connected() is True


# --- weather ----------------------------------------------------------------

GEOCODE = {"results": [{"name": "Berlin", "country": "Germany", "latitude": 52.52, "longitude": 13.41}]}
FORECAST = {"current": {
    "temperature_2m": 12.5,
    "apparent_temperature": 10.4,
    "relative_humidity_2m": 70,
    "wind_speed_10m": 20.2,
    "weather_code": 3,
}}


async def test_weather_sync_formats_current_conditions():
    router = Router([("v1/search", fake_response(200, GEOCODE)), ("v1/forecast", fake_response(200, FORECAST))])
    provider = WeatherProvider(InMemoryCredentialStore(), settings={"location": "Berlin"})

    with patch("requests.request", side_effect=router):
        [signal] = await provider.sync(None)

    assert signal.source == "weather"
    assert signal.data["location"] == "Berlin, Germany"
    assert signal.data["temperature"] == 13
    assert signal.data["condition"] == "Overcast"
    assert signal.data["formatted"] == "13°C, Overcast, windy (20 km/h)"
    forecast_call = router.calls[1]
    assert forecast_call["params"]["latitude"] == 52.52


async def test_weather_without_location_makes_no_calls():
    router = Router([])
    provider = WeatherProvider(InMemoryCredentialStore())
    with patch("requests.request", side_effect=router):
        assert await provider.sync(None) == []
    assert router.calls == []


async def test_weather_unknown_location():
    router = Router([("v1/search", fake_response(200, {"results": []}))])
    provider = WeatherProvider(InMemoryCredentialStore(), settings={"location": "Atlantis"})
    with patch("requests.request", side_effect=router):
        assert await provider.sync(None) == []
    assert len(router.calls) == 1


async def test_weather_network_failure_raises():
    router = Router([("v1/search", requests.exceptions.ConnectionError("offline"))])
    provider = WeatherProvider(InMemoryCredentialStore(), settings={"location": "Berlin"})
    with patch("requests.request", side_effect=router):
        with pytest.raises(NetworkError):
            await provider.sync(None)


# --- google -----------------------------------------------------------------

class FixedGoogle(GoogleProvider):
    def _now(self):
        return NOW


CALENDAR = {"items": [
    {
        "id": "e1",
        "summary": "Team standup",
        "start": {"dateTime": "2025-03-03T10:00:00+00:00"},
        "end": {"dateTime": "2025-03-03T10:30:00+00:00"},
        "attendees": [{"email": "me@example.com", "self": True}, {"email": "a@example.com"}, {"email": "b@example.com"}],
        "conferenceData": {"entryPoints": [{"entryPointType": "video", "uri": "https://meet.google.com/abc"}]},
        "htmlLink": "https://calendar.google.com/e1",
    },
    {"id": "e2", "summary": "Cancelled thing", "status": "cancelled", "start": {"dateTime": "2025-03-03T12:00:00+00:00"}},
    {"id": "e3", "summary": "Mum's birthday", "start": {"date": "2025-03-04"}, "end": {"date": "2025-03-05"}},
]}
MESSAGE = {
    "id": "m1",
    "labelIds": ["UNREAD", "IMPORTANT", "INBOX"],
    "internalDate": "1740992400000",
    "snippet": "Are we still on?",
    "payload": {"headers": [
        {"name": "From", "value": "Ada Lovelace <ada@example.com>"},
        {"name": "Subject", "value": "Plans"},
    ]},
}


def _google(credentials=None):
    credentials = credentials or InMemoryCredentialStore({"google_i1_access_token": "tok"})
    return FixedGoogle(credentials, settings={"client_id": "cid"})


async def test_google_sync_events_and_important_mail():
    router = Router([
        ("messages/m1", fake_response(200, MESSAGE)),
        ("messages/m2", fake_response(404, {"error": "gone"}, reason="Not Found")),
        ("messages", fake_response(200, {"messages": [{"id": "m1"}, {"id": "m2"}]})),
        ("calendar", fake_response(200, CALENDAR)),
    ])
    provider = _google()

    with patch("requests.request", side_effect=router):
        signals = await provider.sync(None, "i1")

    by_id = {s.id: s for s in signals}
    assert sorted(by_id) == ["google-cal-e1", "google-cal-e3", "google-mail-m1"]

    standup = by_id["google-cal-e1"]
    assert standup.domain == Domain.WORK
    assert standup.data["formatted_time"] == "10:00 AM - 10:30 AM"
    assert standup.data["formatted_date"] == "Today"
    assert standup.data["attendee_count"] == 2
    assert standup.data["has_video_call"] is True
    assert standup.data["video_link"] == "https://meet.google.com/abc"

    birthday = by_id["google-cal-e3"]
    assert birthday.data["is_all_day"] is True
    assert birthday.data["formatted_time"] == "All day"
    assert birthday.data["formatted_date"] == "Tomorrow"
    assert birthday.domain == Domain.FAMILY

    mail = by_id["google-mail-m1"]
    assert mail.type == SignalType.MESSAGE_RECEIVED
    assert mail.data["from"] == "Ada Lovelace"
    assert mail.data["subject"] == "Plans"
    assert mail.data["is_important"] is True

    assert all(c["headers"]["Authorization"] == "Bearer tok" for c in router.calls)


async def test_google_expired_token_surfaces_auth_error():
    router = Router([("calendar", fake_response(401, {"error": "invalid"}, reason="Unauthorized"))])
    with patch("requests.request", side_effect=router):
        with pytest.raises(AuthExpiredError):
            await _google().sync(None, "i1")


async def test_google_account_info():
    router = Router([("userinfo", fake_response(200, {"email": "ada@example.com", "name": "Ada"}))])
    with patch("requests.request", side_effect=router):
        info = await _google().get_account_info("i1")
    assert info == AccountInfo(id="ada@example.com", label="Ada")


async def test_google_helpers():
    assert get_event_domain({"summary": "Gym session"}) == Domain.SPORT
    assert get_event_domain({"summary": "Dentist"}) == Domain.HEALTH
    assert get_event_domain({"summary": "Read a book"}) == Domain.PERSONAL
    assert sender_name("ada@example.com") == "ada@example.com"
    assert sender_name("Ada <ada@example.com>") == "Ada"


# --- oauth connect / refresh --------------------------------------------------

TOKEN = {"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 3600}


async def test_oauth_connect_stores_instance_tokens():
    credentials = InMemoryCredentialStore()
    oauth = OAuthHelper(credentials, authorizer=lambda namespace, config: "code-123")
    provider = GoogleProvider(credentials, oauth=oauth, settings={"client_id": "cid", "redirect_uri": "http://cb"})
    router = Router([("oauth2.googleapis.com/token", fake_response(200, TOKEN))])

    with patch("requests.request", side_effect=router):
        await provider.connect("i1")

    assert credentials.get_secret("google_i1_access_token") == "at-1"
    assert credentials.get_secret("google_i1_refresh_token") == "rt-1"
    assert provider.is_connected("i1") is True
    assert provider.is_connected("i2") is False
    posted = router.calls[0]["data"]
    assert posted["grant_type"] == "authorization_code"
    assert posted["code"] == "code-123"
    assert posted["redirect_uri"] == "http://cb"


async def test_oauth_connect_without_client_id():
    provider = WhoopProvider(InMemoryCredentialStore())
    with pytest.raises(ConfigurationError) as exc:
        await provider.connect()
    assert str(exc.value) == "WHOOP client ID not configured. Set whoop_client_id in credentials."


async def test_oauth_client_id_from_credentials():
    provider = WhoopProvider(InMemoryCredentialStore({"whoop_client_id": "from-store"}))
    assert provider.oauth_config.client_id == "from-store"


async def test_oauth_failed_exchange_leaves_no_tokens():
    credentials = InMemoryCredentialStore()
    oauth = OAuthHelper(credentials, authorizer=lambda namespace, config: "code-123")
    provider = OuraProvider(credentials, oauth=oauth, settings={"client_id": "cid"})
    router = Router([("oauth/token", fake_response(500, {"error": "boom"}, reason="Server Error"))])

    with patch("requests.request", side_effect=router):
        with pytest.raises(ProviderError):
            await provider.connect()
    assert credentials.secrets == {}


async def test_refresh_credentials():
    credentials = InMemoryCredentialStore({"whoop_access_token": "old", "whoop_refresh_token": "rt-0"})
    provider = WhoopProvider(credentials, settings={"client_id": "cid"})
    router = Router([("oauth2/token", fake_response(200, {"access_token": "new", "expires_in": 60}))])

    with patch("requests.request", side_effect=router):
        assert await provider.refresh_credentials() is True

    assert credentials.get_secret("whoop_access_token") == "new"
    assert credentials.get_secret("whoop_refresh_token") == "rt-0"
    assert router.calls[0]["data"]["grant_type"] == "refresh_token"


async def test_refresh_rejected_grant_is_revocation():
    credentials = InMemoryCredentialStore({"whoop_access_token": "old", "whoop_refresh_token": "rt-0"})
    provider = WhoopProvider(credentials, settings={"client_id": "cid"})
    router = Router([("oauth2/token", fake_response(400, {"error": "invalid_grant"}, reason="Bad Request"))])

    with patch("requests.request", side_effect=router):
        with pytest.raises(CredentialsRevokedError):
            await provider.refresh_credentials()


async def test_refresh_without_refresh_token():
    provider = WhoopProvider(InMemoryCredentialStore({"whoop_access_token": "old"}), settings={"client_id": "cid"})
    with pytest.raises(CredentialsRevokedError):
        await provider.refresh_credentials()


# --- whoop ------------------------------------------------------------------

WHOOP_RECOVERY = {"records": [
    {"cycle_id": 10, "created_at": "2025-03-03T07:00:00Z",
     "score": {"recovery_score": 62, "hrv_rmssd_milli": 55.2, "resting_heart_rate": 52}},
    {"cycle_id": 11, "created_at": "2025-03-04T07:00:00Z", "score": None},
]}
WHOOP_SLEEP = {"records": [
    {"id": "s1", "start": "2025-03-02T23:00:00Z", "end": "2025-03-03T06:45:00Z", "nap": False, "score": {
        "stage_summary": {
            "total_in_bed_time_milli": 27900000,
            "total_awake_time_milli": 1800000,
            "total_light_sleep_time_milli": 13000000,
            "total_slow_wave_sleep_time_milli": 6500000,
            "total_rem_sleep_time_milli": 6600000,
        },
        "sleep_performance_percentage": 88,
        "sleep_efficiency_percentage": 93.5,
        "sleep_consistency_percentage": 75,
        "sleep_needed": {"need_from_sleep_debt_milli": 600000},
    }},
    {"id": "s2", "start": "2025-03-03T14:00:00Z", "end": "2025-03-03T14:20:00Z", "nap": True,
     "score": {"stage_summary": {}}},
]}
WHOOP_CYCLE = {"records": [
    {"id": 10, "start": "2025-03-03T06:45:00Z",
     "score": {"strain": 12.3, "kilojoule": 8000, "average_heart_rate": 70, "max_heart_rate": 170}},
]}
WHOOP_WORKOUT = {"records": [
    {"id": "w1", "sport_id": 0, "start": "2025-03-03T17:00:00Z", "end": "2025-03-03T17:45:00Z",
     "score": {"strain": 9.1, "kilojoule": 2000, "distance_meter": 8000, "zone_duration": {"zone_two_milli": 900000}}},
]}


async def test_whoop_sync_normalizes_all_streams():
    router = Router([
        ("/recovery", fake_response(200, WHOOP_RECOVERY)),
        ("/activity/sleep", fake_response(200, WHOOP_SLEEP)),
        ("/cycle", fake_response(200, WHOOP_CYCLE)),
        ("/activity/workout", fake_response(200, WHOOP_WORKOUT)),
    ])
    provider = WhoopProvider(InMemoryCredentialStore({"whoop_access_token": "tok"}))
    since = NOW - timedelta(days=1)

    with patch("requests.request", side_effect=router):
        signals = await provider.sync(since)

    by_id = {s.id: s for s in signals}
    assert sorted(by_id) == ["whoop-activity-w1", "whoop-recovery-10", "whoop-sleep-s1", "whoop-strain-10"]

    recovery = by_id["whoop-recovery-10"]
    assert recovery.data["score"] == 62
    assert recovery.data["sleep_performance"] == 88
    assert recovery.capacity_impact.cognitive == 81

    sleep = by_id["whoop-sleep-s1"]
    assert sleep.data["duration"] == 26100000
    assert sleep.data["stages"]["deep"] == 6500000
    assert sleep.data["sleep_debt"] == 600000

    assert by_id["whoop-strain-10"].data["calories"] == 1912
    workout = by_id["whoop-activity-w1"]
    assert workout.data["type"] == "running"
    assert workout.data["duration"] == 45 * 60 * 1000
    assert workout.data["calories"] == 478

    assert all(c["params"]["limit"] == 25 for c in router.calls)
    assert all(c["params"]["start"] == since.isoformat() for c in router.calls)


# --- oura -------------------------------------------------------------------

OURA_READINESS = {"data": [
    {"id": "r1", "day": "2025-03-03", "score": 80, "temperature_deviation": 0.1},
    {"id": "r2", "day": "2025-03-02", "score": None},
]}
OURA_SLEEP = {"data": [
    {"id": "sl1", "type": "long_sleep", "bedtime_start": "2025-03-02T23:10:00+00:00",
     "bedtime_end": "2025-03-03T07:00:00+00:00", "total_sleep_duration": 27000, "efficiency": 90,
     "score": 85, "awake_time": 1200, "light_sleep_duration": 14000, "deep_sleep_duration": 6000,
     "rem_sleep_duration": 7000},
    {"id": "sl2", "type": "rest", "bedtime_start": "2025-03-03T13:00:00+00:00",
     "bedtime_end": "2025-03-03T13:20:00+00:00", "total_sleep_duration": 1200},
]}
OURA_ACTIVITY = {"data": [
    {"id": "a1", "day": "2025-03-03", "steps": 9000, "active_calories": 400, "high_activity_time": 600,
     "medium_activity_time": 1200, "low_activity_time": 3600, "score": 77},
]}


async def test_oura_sync():
    router = Router([
        ("daily_readiness", fake_response(200, OURA_READINESS)),
        ("daily_activity", fake_response(200, OURA_ACTIVITY)),
        ("/sleep", fake_response(200, OURA_SLEEP)),
    ])
    provider = OuraProvider(InMemoryCredentialStore({"oura_access_token": "tok"}))

    with patch("requests.request", side_effect=router):
        signals = await provider.sync(None)

    by_id = {s.id: s for s in signals}
    assert sorted(by_id) == ["oura-activity-a1", "oura-recovery-r1", "oura-sleep-sl1"]
    assert by_id["oura-recovery-r1"].capacity_impact.physical == 80
    assert by_id["oura-sleep-sl1"].data["duration"] == 27000 * 1000
    assert by_id["oura-sleep-sl1"].data["sleep_score"] == 85
    assert by_id["oura-activity-a1"].data["duration"] == 5400 * 1000
    assert not any(s.type == SignalType.STRAIN for s in signals)
    assert all("start_date" in c["params"] and "end_date" in c["params"] for c in router.calls)


async def test_oura_not_connected():
    with pytest.raises(ConfigurationError):
        await OuraProvider(InMemoryCredentialStore()).sync(None)


# --- apple health -----------------------------------------------------------

class FakeBridge:
    def __init__(self, authorize=True, fail=False):
        self.authorize = authorize
        self.fail = fail
        self.requested = None

    async def is_available(self):
        return True

    async def request_authorization(self, types):
        self.requested = types
        return self.authorize

    async def query_sleep_analysis(self, start, end):
        if self.fail:
            raise RuntimeError("HealthKit query failed")
        return [
            {"startDate": "2025-03-02T23:00:00+00:00", "endDate": "2025-03-03T03:00:00+00:00", "value": "AsleepCore"},
            {"startDate": "2025-03-03T03:00:00+00:00", "endDate": "2025-03-03T03:20:00+00:00", "value": "Awake"},
            {"startDate": "2025-03-03T03:20:00+00:00", "endDate": "2025-03-03T06:00:00+00:00", "value": "AsleepDeep"},
        ]

    async def query_heart_rate(self, start, end):
        return [
            {"startDate": "2025-03-03T05:00:00+00:00", "value": 54, "motionContext": "sedentary"},
            {"startDate": "2025-03-03T08:00:00+00:00", "value": 130, "motionContext": "active"},
        ]

    async def query_hrv(self, start, end):
        return [{"startDate": "2025-03-03T06:00:00+00:00", "value": 64}]

    async def query_workouts(self, start, end):
        return [{
            "startDate": "2025-03-03T17:00:00+00:00",
            "endDate": "2025-03-03T17:30:00+00:00",
            "activityType": "Running",
            "duration": 1800,
            "totalEnergyBurned": 300,
            "totalDistance": 5000,
        }]


async def test_apple_health_requires_bridge():
    provider = AppleHealthProvider(InMemoryCredentialStore())
    with pytest.raises(ConfigurationError) as exc:
        await provider.connect()
    assert "requires macOS" in str(exc.value)
    assert provider.is_connected() is False


async def test_apple_health_denied():
    provider = AppleHealthProvider(InMemoryCredentialStore(), bridge=FakeBridge(authorize=False))
    with pytest.raises(ConfigurationError):
        await provider.connect()
    assert provider.is_connected() is False


async def test_apple_health_connect_and_sync():
    bridge = FakeBridge()
    provider = AppleHealthProvider(InMemoryCredentialStore(), bridge=bridge)

    await provider.connect()
    assert provider.is_connected() is True
    assert "HKCategoryTypeIdentifierSleepAnalysis" in bridge.requested

    signals = await provider.sync(None)
    types = sorted(s.type.value for s in signals)
    assert types == ["activity", "recovery", "sleep"]
    sleep = next(s for s in signals if s.type == SignalType.SLEEP)
    assert sleep.data["duration"] == (240 + 160) * 60 * 1000
    recovery = next(s for s in signals if s.type == SignalType.RECOVERY)
    assert recovery.data["hrv"] == 64
    assert recovery.data["rhr"] == 54
    activity = next(s for s in signals if s.type == SignalType.ACTIVITY)
    assert activity.data["type"] == "running"
    assert activity.data["duration"] == 1800 * 1000

    # permissions live in System Settings, disconnect keeps them
    await provider.disconnect()
    assert provider.is_connected() is True
    assert await provider.refresh_credentials() is False


async def test_apple_health_query_failure_is_provider_error():
    provider = AppleHealthProvider(InMemoryCredentialStore(), bridge=FakeBridge(fail=True))
    await provider.connect()
    with pytest.raises(ProviderError):
        await provider.sync(None)
