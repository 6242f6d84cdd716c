"""Google Calendar helpers for cohort events.

Calls go through the synchronous googleapiclient; the HTTP layer runs them in
a worker thread. Credentials come from Application Default Credentials.
"""
import datetime as dt
import json
from typing import Any, Dict, List, Optional

from praxis import config

CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]

logger = config.configure_logger("praxis.ai.calendar")


class CalendarError(RuntimeError):
    pass


def calendar_service() -> Any:
    import google.auth
    from googleapiclient.discovery import build

    credentials, _project = google.auth.default(scopes=CALENDAR_SCOPES)
    return build("calendar", "v3", credentials=credentials, cache_discovery=False)


def _time_min(now: Optional[dt.datetime] = None) -> str:
    # Five minutes of slack so events that just started still show
    now = now or dt.datetime.now(dt.timezone.utc)
    return (now - dt.timedelta(minutes=5)).isoformat().replace("+00:00", "Z")


def get_events_for_student(
    service: Any,
    calendar_id: str,
    student_email: str,
    *,
    now: Optional[dt.datetime] = None,
) -> List[Dict[str, Any]]:
    """Upcoming events on ``calendar_id`` where ``student_email`` is an attendee."""
    data = service.events().list(
        calendarId=calendar_id,
        singleEvents=True,
        orderBy="startTime",
        maxResults=2500,
        conferenceDataVersion=1,
        timeMin=_time_min(now),
    ).execute()
    wanted = (student_email or "").strip().lower()
    out = []
    for ev in data.get("items") or []:
        for a in ev.get("attendees") or []:
            if (a.get("email") or "").strip().lower() == wanted:
                out.append(ev)
                break
    return out


def extract_meeting_link(ev: Dict[str, Any]) -> Optional[str]:
    if ev.get("hangoutLink"):
        return ev["hangoutLink"]
    conf = ev.get("conferenceData") or {}
    for ep in conf.get("entryPoints") or []:
        if ep.get("entryPointType") == "video" and ep.get("uri"):
            return ep["uri"]
    return None


def format_event(ev: Dict[str, Any]) -> Dict[str, Any]:
    """Public event shape. Attendees are never exposed."""
    start = ev.get("start") or {}
    return {
        "id": ev.get("id"),
        "summary": ev.get("summary") or "",
        "description": ev.get("description") or "",
        "start": ev.get("start"),
        "end": ev.get("end"),
        "htmlLink": ev.get("htmlLink") or "",
        "location": ev.get("location") or "",
        "meetingLink": extract_meeting_link(ev) or "",
        "isAllDay": bool(start.get("date")) and not start.get("dateTime"),
        "isRecurring": bool(ev.get("recurringEventId") or ev.get("recurrence")),
        "recurringEventId": ev.get("recurringEventId"),
    }


def add_students_to_event(service: Any, calendar_id: str, event_id: str, emails: List[str]) -> Dict[str, Any]:
    """Set the event's attendee list to ``emails`` and send invitations."""
    attendees = [{"email": e.strip()} for e in emails if isinstance(e, str) and e.strip()]
    return service.events().patch(
        calendarId=calendar_id,
        eventId=event_id,
        body={"attendees": attendees},
        sendUpdates="all",
    ).execute()


def remove_event(service: Any, calendar_id: str, event_id: str) -> Dict[str, Any]:
    try:
        service.events().delete(calendarId=calendar_id, eventId=event_id).execute()
    except Exception as e:
        logger.error(json.dumps({
            "event": "calendar_delete_failed",
            "calendarId": calendar_id,
            "eventId": event_id,
            "error": str(e)[:256],
        }))
        raise CalendarError("Error removing event.") from e
    return {"success": True, "message": "Event deleted successfully."}
