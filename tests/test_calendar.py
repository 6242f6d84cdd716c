import datetime as dt

import pytest
from fastapi.testclient import TestClient

from praxis import calendar as cal
from praxis.main import app


class FakeRequest:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    def execute(self):
        if self.error is not None:
            raise self.error
        return self.result


class FakeEvents:
    def __init__(self, items=None, delete_error=None):
        self.items = items or []
        self.delete_error = delete_error
        self.calls = []

    def list(self, **kwargs):
        self.calls.append(("list", kwargs))
        return FakeRequest({"items": self.items})

    def patch(self, **kwargs):
        self.calls.append(("patch", kwargs))
        return FakeRequest({"id": kwargs["eventId"], "attendees": kwargs["body"]["attendees"]})

    def delete(self, **kwargs):
        self.calls.append(("delete", kwargs))
        return FakeRequest(None, self.delete_error)


class FakeService:
    def __init__(self, events: FakeEvents):
        self._events = events

    def events(self):
        return self._events


EVENTS = [
    {
        "id": "ev1",
        "summary": "Cohort kickoff",
        "start": {"dateTime": "2026-10-20T10:00:00Z"},
        "end": {"dateTime": "2026-10-20T11:00:00Z"},
        "hangoutLink": "https://meet.google.com/abc",
        "attendees": [{"email": " Ada@Example.com "}, {"email": "tutor@example.com"}],
        "recurringEventId": "series-1",
    },
    {
        "id": "ev2",
        "summary": "Other cohort",
        "start": {"date": "2026-10-21"},
        "end": {"date": "2026-10-22"},
        "attendees": [{"email": "someone@example.com"}],
    },
    {
        "id": "ev3",
        "start": {"date": "2026-10-23"},
        "end": {"date": "2026-10-24"},
        "conferenceData": {"entryPoints": [
            {"entryPointType": "phone", "uri": "tel:+1"},
            {"entryPointType": "video", "uri": "https://zoom.us/j/1"},
        ]},
        "attendees": [{"email": "ada@example.com"}],
    },
]


def test_get_events_filters_by_attendee_and_lists_upcoming():
    events = FakeEvents(EVENTS)
    now = dt.datetime(2026, 10, 17, 12, 0, tzinfo=dt.timezone.utc)
    out = cal.get_events_for_student(FakeService(events), "cal-1", "ada@example.com", now=now)
    assert [e["id"] for e in out] == ["ev1", "ev3"]
    _, params = events.calls[0]
    assert params["calendarId"] == "cal-1"
    assert params["singleEvents"] is True
    assert params["orderBy"] == "startTime"
    assert params["maxResults"] == 2500
    assert params["conferenceDataVersion"] == 1
    assert params["timeMin"] == "2026-10-17T11:55:00Z"


def test_format_event_shape_hides_attendees():
    timed = cal.format_event(EVENTS[0])
    assert timed["meetingLink"] == "https://meet.google.com/abc"
    assert timed["isAllDay"] is False
    assert timed["isRecurring"] is True
    assert timed["recurringEventId"] == "series-1"
    assert "attendees" not in timed

    all_day = cal.format_event(EVENTS[2])
    assert all_day["isAllDay"] is True
    assert all_day["meetingLink"] == "https://zoom.us/j/1"
    assert all_day["summary"] == "" and all_day["htmlLink"] == ""
    assert all_day["recurringEventId"] is None


def test_extract_meeting_link_none_without_conference():
    assert cal.extract_meeting_link({"id": "x"}) is None


def test_add_students_patches_attendees_and_sends_updates():
    events = FakeEvents()
    cal.add_students_to_event(FakeService(events), "cal-1", "ev1", ["a@x.com", " ", "b@x.com "])
    _, params = events.calls[0]
    assert params["body"] == {"attendees": [{"email": "a@x.com"}, {"email": "b@x.com"}]}
    assert params["sendUpdates"] == "all"


def test_remove_event_wraps_errors():
    ok = cal.remove_event(FakeService(FakeEvents()), "cal-1", "ev1")
    assert ok == {"success": True, "message": "Event deleted successfully."}
    with pytest.raises(cal.CalendarError):
        cal.remove_event(FakeService(FakeEvents(delete_error=RuntimeError("404"))), "cal-1", "ev1")


@pytest.fixture
def calendar_client(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MY_LMS_API_KEY", "secret")
    events = FakeEvents(EVENTS)
    with TestClient(app) as client:
        app.state.calendar_service_factory = lambda: FakeService(events)
        yield client, events


def test_calendar_routes_require_api_key(calendar_client):
    client, _ = calendar_client
    assert client.get("/calendar-events", params={"email": "a@x.com", "calendarId": "c"}).status_code == 401
    r = client.get("/calendar-events", params={"email": "a@x.com", "calendarId": "c"}, headers={"x-api-key": "wrong"})
    assert r.status_code == 401
    assert client.delete("/remove-event", params={"calendarId": "c", "eventId": "e"}).status_code == 401
    assert client.post("/add-students-to-event", json={}).status_code == 401


def test_calendar_events_route(calendar_client):
    client, _ = calendar_client
    headers = {"x-api-key": "secret"}
    assert client.get("/calendar-events", params={"email": "ada@example.com"}, headers=headers).status_code == 400
    r = client.get("/calendar-events", params={"email": "ADA@example.com", "calendarId": "cal-1"}, headers=headers)
    assert r.status_code == 200
    assert [e["id"] for e in r.json()["events"]] == ["ev1", "ev3"]


def test_add_students_and_remove_routes(calendar_client):
    client, events = calendar_client
    headers = {"x-api-key": "secret"}
    r = client.post("/add-students-to-event", json={"calendarId": "cal-1", "eventId": "ev1", "emails": []}, headers=headers)
    assert r.status_code == 400
    r = client.post(
        "/add-students-to-event",
        json={"calendarId": "cal-1", "eventId": "ev1", "emails": ["a@x.com"]},
        headers=headers,
    )
    assert r.status_code == 200
    assert r.json() == {"success": True, "eventId": "ev1", "added": 1}

    r = client.delete("/remove-event", params={"calendarId": "cal-1", "eventId": "ev1"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert [c[0] for c in events.calls] == ["patch", "delete"]
