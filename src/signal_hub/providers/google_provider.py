"""
Google calendar + Gmail provider.

Multi-instance: every connected Google account is its own instance with its
own tokens (`google_{instance}_access_token`) and its own sync schedule.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from src.signal_hub.errors import ProviderAPIError
from src.signal_hub.logging_setup import get_logger
from src.signal_hub.models import (
    AccountInfo,
    ActiveHours,
    Domain,
    Signal,
    SignalType,
    SyncSchedule,
    parse_timestamp,
)
from src.signal_hub.provider import OAuthProvider

log = get_logger(__name__)

CALENDAR_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
GMAIL_MESSAGES_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
IMPORTANT_QUERY = "is:important is:unread"
IMPORTANT_LIMIT = 5

WORK_WORDS = ("meeting", "call", "sync", "standup", "1:1", "client")
SPORT_WORDS = ("workout", "gym", "training", "run", "ride")
HEALTH_WORDS = ("doctor", "dentist", "appointment")
FAMILY_WORDS = ("family", "birthday", "dinner", "kids", "school")

SENDER_RE = re.compile(r"^([^<]+)?<?([^>]+)?>?$")


def _entry_points(event: Dict[str, Any]) -> List[Dict[str, Any]]:
    return (event.get("conferenceData") or {}).get("entryPoints") or []


def get_event_domain(event: Dict[str, Any]) -> Domain:
    """Keyword classification of a calendar event into a life domain."""
    text = f"{event.get('summary') or ''} {event.get('description') or ''}".lower()
    if any(w in text for w in WORK_WORDS) or any(
        "meet.google.com" in (e.get("uri") or "") for e in _entry_points(event)
    ):
        return Domain.WORK
    if any(w in text for w in SPORT_WORDS):
        return Domain.SPORT
    if any(w in text for w in HEALTH_WORDS):
        return Domain.HEALTH
    if any(w in text for w in FAMILY_WORDS):
        return Domain.FAMILY
    return Domain.PERSONAL


def _clock(moment: datetime) -> str:
    hour = moment.hour % 12 or 12
    return f"{hour}:{moment.minute:02d} {'AM' if moment.hour < 12 else 'PM'}"


def format_event_time(event: Dict[str, Any], tz=None) -> str:
    start = event.get("start") or {}
    end = event.get("end") or {}
    if start.get("date"):
        return "All day"
    if not start.get("dateTime"):
        return ""
    start_time = parse_timestamp(start["dateTime"]).astimezone(tz)
    if end.get("dateTime"):
        end_time = parse_timestamp(end["dateTime"]).astimezone(tz)
        return f"{_clock(start_time)} - {_clock(end_time)}"
    return _clock(start_time)


def format_event_date(start: datetime, now: datetime) -> str:
    """'Today', 'Tomorrow', or e.g. 'Wed, Mar 4' relative to `now` (same timezone)."""
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    tomorrow = today + timedelta(days=1)
    if today <= start < tomorrow:
        return "Today"
    if tomorrow <= start < tomorrow + timedelta(days=1):
        return "Tomorrow"
    return f"{start.strftime('%a')}, {start.strftime('%b')} {start.day}"


def _event_bound(bound: Dict[str, Any], tz) -> Optional[datetime]:
    if bound.get("dateTime"):
        return parse_timestamp(bound["dateTime"])
    if bound.get("date"):
        day = datetime.fromisoformat(bound["date"])
        return day.replace(tzinfo=tz) if tz else day.astimezone()
    return None


def event_to_signal(event: Dict[str, Any], now: datetime) -> Signal:
    tz = now.tzinfo
    start_time = _event_bound(event.get("start") or {}, tz)
    end_time = _event_bound(event.get("end") or {}, tz) or start_time
    attendees = event.get("attendees") or []
    video = next((e for e in _entry_points(event) if e.get("entryPointType") == "video"), None)

    return Signal(
        id=f"google-cal-{event['id']}",
        source="google",
        type=SignalType.EVENT,
        timestamp=start_time,
        domain=get_event_domain(event),
        data={
            "title": event.get("summary") or "Untitled Event",
            "description": event.get("description"),
            "location": event.get("location"),
            "start_time": start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "is_all_day": not (event.get("start") or {}).get("dateTime"),
            "attendee_count": len([a for a in attendees if not a.get("self")]),
            "has_video_call": video is not None,
            "video_link": video.get("uri") if video else None,
            "link": event.get("htmlLink"),
            "formatted_time": format_event_time(event, tz),
            "formatted_date": format_event_date(start_time.astimezone(tz), now),
        },
    )


def _header(message: Dict[str, Any], name: str) -> Optional[str]:
    for header in (message.get("payload") or {}).get("headers") or []:
        if header.get("name", "").lower() == name.lower():
            return header.get("value")
    return None


def sender_name(from_header: str) -> str:
    match = SENDER_RE.match(from_header)
    if match:
        name = (match.group(1) or "").strip()
        return name or match.group(2) or from_header
    return from_header


def email_to_signal(message: Dict[str, Any]) -> Signal:
    labels = message.get("labelIds") or []
    internal_ms = int(message.get("internalDate") or 0)
    return Signal(
        id=f"google-mail-{message['id']}",
        source="google",
        type=SignalType.MESSAGE_RECEIVED,
        timestamp=datetime.fromtimestamp(internal_ms / 1000, tz=timezone.utc),
        domain=Domain.WORK,
        data={
            "from": sender_name(_header(message, "From") or "Unknown"),
            "subject": _header(message, "Subject") or "(no subject)",
            "snippet": message.get("snippet"),
            "is_unread": "UNREAD" in labels,
            "is_important": "IMPORTANT" in labels,
            "link": f"https://mail.google.com/mail/u/0/#inbox/{message['id']}",
        },
    )


class GoogleProvider(OAuthProvider):
    id = "google"
    name = "Google"
    description = "Calendar events and Gmail inbox"
    icon = "🔷"
    domains = [Domain.WORK, Domain.PERSONAL, Domain.FAMILY]
    category = "productivity"
    capabilities = frozenset({SignalType.EVENT, SignalType.MESSAGE_RECEIVED})
    multi_instance = True
    supports_account_info = True
    auth_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    scopes = [
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
        "https://www.googleapis.com/auth/calendar.readonly",
        "https://www.googleapis.com/auth/calendar.events.readonly",
        "https://www.googleapis.com/auth/gmail.readonly",
    ]
    sync_schedule = SyncSchedule(
        type="smart",
        active_hours=ActiveHours(start=6, end=22),
        active_interval_ms=15 * 60 * 1000,
        inactive_interval_ms=60 * 60 * 1000,
        sync_on_connect=True,
        sync_on_wake=True,
    )

    def _now(self) -> datetime:
        return datetime.now().astimezone()

    async def get_week_events(self, instance_id: Optional[str] = None) -> List[Dict[str, Any]]:
        now = self._now()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        # through the end of Sunday
        end_of_week = (today + timedelta(days=7 - (now.isoweekday() % 7))).replace(
            hour=23, minute=59, second=59
        )
        body = await self.http.get_json(CALENDAR_EVENTS_URL, headers=self.auth_headers(instance_id), params={
            "timeMin": today.isoformat(),
            "timeMax": end_of_week.isoformat(),
            "maxResults": 100,
            "singleEvents": "true",
            "orderBy": "startTime",
        })
        return [e for e in body.get("items") or [] if e.get("status") != "cancelled"]

    async def get_recent_important(self, instance_id: Optional[str] = None, limit: int = IMPORTANT_LIMIT) -> List[Dict[str, Any]]:
        headers = self.auth_headers(instance_id)
        listing = await self.http.get_json(GMAIL_MESSAGES_URL, headers=headers, params={
            "q": IMPORTANT_QUERY,
            "maxResults": limit,
        })
        messages = []
        for ref in (listing.get("messages") or [])[:limit]:
            try:
                messages.append(await self.http.get_json(
                    f"{GMAIL_MESSAGES_URL}/{ref['id']}", headers=headers, params={"format": "metadata"}
                ))
            except ProviderAPIError as e:
                # message deleted between list and fetch
                log.warning("gmail_message_skipped", message_id=ref["id"], error=str(e))
        return messages

    async def sync(self, since: Optional[datetime], instance_id: Optional[str] = None) -> List[Signal]:
        now = self._now()
        events = await self.get_week_events(instance_id)
        messages = await self.get_recent_important(instance_id)
        signals = [event_to_signal(e, now) for e in events]
        signals.extend(email_to_signal(m) for m in messages)
        return signals

    async def get_account_info(self, instance_id: Optional[str] = None) -> Optional[AccountInfo]:
        profile = await self.http.get_json(USERINFO_URL, headers=self.auth_headers(instance_id))
        email = profile.get("email")
        if not email:
            return None
        return AccountInfo(id=email, label=profile.get("name") or email)
