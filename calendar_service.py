# calendar_service.py
"""Google Calendar access for pending invitations, over the Calendar v3 REST API."""
import logging
import urllib.parse
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from exceptions import CalendarAuthExpired, CalendarError, CalendarNotAuthorized, EventNotFound
from google_auth import GoogleAuth
from models import Attendee, DateRange, PendingInvite, PendingInvitesResult, RespondResult

logger = logging.getLogger(__name__)

_CALENDAR_BASE = "https://www.googleapis.com/calendar/v3"
_EVENTS_URL = f"{_CALENDAR_BASE}/calendars/primary/events"

DEFAULT_RANGE_DAYS = 14
MAX_RESULTS = 250
RESPONSE_STATUSES = ("accepted", "declined", "tentative")

_STATUS_MESSAGES = {
    "accepted": "accepted",
    "declined": "declined",
    "tentative": "marked as tentative",
}


def iso_utc(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 date or datetime, accepting a trailing Z. Values without an offset are UTC."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_rfc3339(value: str) -> str:
    """Normalise a date or datetime to the UTC timestamp form the Calendar API requires."""
    try:
        return iso_utc(parse_iso(value))
    except ValueError:
        raise CalendarError(f"Invalid date: {value}")


def _event_time(value: Dict[str, Any]):
    if value.get("date"):
        return value["date"], True
    if value.get("dateTime"):
        return value["dateTime"], False
    return "Unknown", False


def event_to_pending_invite(event: Dict[str, Any], user_email: str) -> Optional[PendingInvite]:
    """
    Project a calendar event onto a PendingInvite.

    Returns None unless the user is a non-organizing attendee who has not responded yet.
    """
    if not event.get("id") or not event.get("summary"):
        return None

    attendees = event.get("attendees") or []
    me = next((a for a in attendees if (a.get("email") or "").lower() == user_email.lower()), None)
    if me is None or me.get("organizer"):
        return None
    if me.get("responseStatus") != "needsAction":
        return None

    start, is_all_day = _event_time(event.get("start") or {})
    end, _ = _event_time(event.get("end") or {})
    organizer = event.get("organizer") or {}
    return PendingInvite(
        event_id=event["id"],
        summary=event["summary"],
        description=event.get("description"),
        location=event.get("location"),
        start_time=start,
        end_time=end,
        is_all_day=is_all_day,
        organizer_email=organizer.get("email") or "Unknown",
        organizer_name=organizer.get("displayName"),
        attendees=[
            Attendee(
                email=a.get("email") or "Unknown",
                name=a.get("displayName"),
                status=a.get("responseStatus") or "unknown",
            )
            for a in attendees
        ],
        calendar_link=event.get("htmlLink") or "",
    )


def format_invites_as_text(invites: List[PendingInvite]) -> str:
    if not invites:
        return "You have no pending calendar invitations that need a response."

    plural = "s" if len(invites) > 1 else ""
    lines = [f"You have {len(invites)} pending calendar invitation{plural}:", ""]
    for index, invite in enumerate(invites, start=1):
        try:
            start = parse_iso(invite.start_time)
            date_str = f"{start:%A, %B} {start.day}, {start.year}"
            if invite.is_all_day:
                time_str = "All day"
            else:
                time_str = f"{start.hour % 12 or 12}:{start:%M} {'AM' if start.hour < 12 else 'PM'}"
            when = f"{date_str} at {time_str}"
        except ValueError:
            when = invite.start_time
        lines.append(f"{index}. **{invite.summary}**")
        lines.append(f"   - When: {when}")
        lines.append(f"   - Organizer: {invite.organizer_name or invite.organizer_email}")
        if invite.location:
            lines.append(f"   - Location: {invite.location}")
        lines.append(f"   - Event ID: {invite.event_id}")
        lines.append("")
    lines.append("You can accept, decline, or mark as tentative any of these invitations.")
    return "\n".join(lines)


class CalendarService:
    """
    Reads and answers a user's invitations on their primary calendar.

    Failures surface as CalendarError subclasses: CalendarAuthExpired for a
    rejected Google token, EventNotFound for a missing event, plain
    CalendarError for everything else (including timeouts).
    """

    def __init__(self, auth: GoogleAuth, timeout: float = 30,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.auth = auth
        self.timeout = timeout
        self._transport = transport

    def is_authorized(self, user_id: str) -> bool:
        return self.auth.is_authorized(user_id)

    def get_consent_url(self, user_id: str) -> str:
        return self.auth.get_auth_url(user_id)

    def get_user_email(self, user_id: str) -> Optional[str]:
        return self.auth.get_user_email(user_id)

    async def _request(self, user_id: str, method: str, url: str,
                       event_id: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        token = await self.auth.get_access_token(user_id)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(
                    method, url, headers={"Authorization": f"Bearer {token}"}, **kwargs
                )
                resp.raise_for_status()
                return resp.json()
        except httpx.TimeoutException:
            logger.error(f"Calendar request timed out: {method} {url}")
            raise CalendarError("Calendar request timed out")
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"Calendar API returned {status} for {method} {url}")
            if status == 401:
                raise CalendarAuthExpired()
            if status == 404 and event_id is not None:
                raise EventNotFound(event_id)
            raise CalendarError(f"Calendar API error ({status})")
        except httpx.HTTPError as e:
            logger.error(f"Calendar request failed: {e}")
            raise CalendarError(f"Calendar request failed: {e}")

    def _event_url(self, event_id: str) -> str:
        return f"{_EVENTS_URL}/{urllib.parse.quote(event_id, safe='')}"

    def _require_email(self, user_id: str) -> str:
        record = self.auth.store.load(user_id)
        if record is None:
            raise CalendarNotAuthorized(user_id)
        if not record.email:
            raise CalendarError("User email not found")
        return record.email

    async def list_pending_invites(self, user_id: str, start_date: Optional[str] = None,
                                   end_date: Optional[str] = None) -> PendingInvitesResult:
        user_email = self._require_email(user_id)
        now = datetime.now(timezone.utc)
        time_min = to_rfc3339(start_date) if start_date else iso_utc(now)
        time_max = to_rfc3339(end_date) if end_date else iso_utc(now + timedelta(days=DEFAULT_RANGE_DAYS))

        try:
            data = await self._request(user_id, "GET", _EVENTS_URL, params={
                "timeMin": time_min,
                "timeMax": time_max,
                "singleEvents": "true",
                "orderBy": "startTime",
                "maxResults": MAX_RESULTS,
            })
        except (CalendarAuthExpired, CalendarNotAuthorized):
            raise
        except CalendarError as e:
            raise CalendarError(f"Failed to fetch calendar events: {e}")

        invites = []
        for event in data.get("items", []):
            invite = event_to_pending_invite(event, user_email)
            if invite:
                invites.append(invite)
        logger.info(f"Found {len(invites)} pending invites for user '{user_id}'")
        return PendingInvitesResult(
            invites=invites,
            date_range=DateRange(start=time_min, end=time_max),
            total_count=len(invites),
        )

    async def get_event(self, user_id: str, event_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._request(user_id, "GET", self._event_url(event_id), event_id=event_id)
        except EventNotFound:
            return None

    async def respond_to_event(self, user_id: str, event_id: str, response: str) -> RespondResult:
        """
        Set the user's own attendance status on an event, leaving other attendees untouched.
        Answering the same way twice simply rewrites the same status.
        """
        if response not in RESPONSE_STATUSES:
            raise ValueError(f"Invalid response: {response}")
        user_email = self._require_email(user_id)

        event = await self.get_event(user_id, event_id)
        if event is None:
            raise EventNotFound(event_id)
        attendees = event.get("attendees")
        if not attendees:
            raise CalendarError("Event has no attendees")

        updated = []
        found = False
        for attendee in attendees:
            if (attendee.get("email") or "").lower() == user_email.lower():
                attendee = {**attendee, "responseStatus": response}
                found = True
            updated.append(attendee)
        if not found:
            raise CalendarError("You are not an attendee of this event")

        await self._request(
            user_id, "PATCH", self._event_url(event_id), event_id=event_id,
            params={"sendUpdates": "all"}, json={"attendees": updated},
        )
        summary = event.get("summary")
        logger.info(f"User '{user_id}' {response} event '{event_id}'")
        return RespondResult(
            message=f'You have {_STATUS_MESSAGES[response]} the invitation "{summary}"',
            event_id=event_id,
            new_status=response,
            event_summary=summary,
        )
