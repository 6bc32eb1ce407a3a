# tests/test_adapter.py

from __future__ import annotations

import datetime as dt
import json

import pytest

from daybook_client import Daybook, Event, MalformedResponseError, Note, Reminder, ResourceError, Task

from .fakes import FakeApiServer

DUE = dt.datetime(2024, 6, 1, 12, 0, tzinfo=dt.timezone.utc)


def test_create_then_list(signed_in_app: Daybook, server: FakeApiServer) -> None:
    todos = signed_in_app.adapter(Task)
    created = todos.create(Task(title="Buy milk", due_date=DUE))

    assert created.id == "t1"
    assert created.due_date == DUE
    listed = todos.list()
    assert [t.id for t in listed] == ["t1"]
    assert listed[0].to_payload() == created.to_payload()
    assert server.requests[-1].headers["Authorization"].startswith("Bearer token-")


def test_update_sends_every_field(signed_in_app: Daybook, server: FakeApiServer) -> None:
    server.seed("events", title="Standup", description="daily", startDate="2024-06-01T09:00:00.000Z",
                endDate="2024-06-01T09:15:00.000Z", location="Room 4", priority="low")
    events = signed_in_app.adapter(Event)
    event = events.list()[0]

    updated = events.update(event.id, Event(**{**event.field_values(), "location": "Room 5"}))

    sent = json.loads(server.calls("PUT")[-1].body)
    assert set(sent) == {"title", "description", "startDate", "endDate", "location", "priority"}
    assert "id" not in sent
    assert updated.location == "Room 5"
    assert updated.description == "daily"
    assert server.collections["events"]["e1"]["location"] == "Room 5"


def test_delete_removes_record(signed_in_app: Daybook, server: FakeApiServer) -> None:
    server.seed("notes", title="Ideas", content="", tags=[], color="#FFE4B5")
    signed_in_app.adapter(Note).delete("n1")
    assert server.collections["notes"] == {}
    assert server.calls("DELETE")[-1].url.endswith("/api/notes/n1")


def test_missing_record_raises_not_found(signed_in_app: Daybook) -> None:
    with pytest.raises(ResourceError) as excinfo:
        signed_in_app.adapter(Task).delete("t1")
    assert excinfo.value.status == 404
    assert excinfo.value.message == "Todo not found"
    assert not excinfo.value.unauthorized


def test_unauthenticated_list_is_rejected(app: Daybook, server: FakeApiServer) -> None:
    server.require_auth = True
    with pytest.raises(ResourceError) as excinfo:
        app.adapter(Reminder).list()
    assert excinfo.value.status == 401
    assert excinfo.value.unauthorized
    assert "Authorization" not in server.requests[-1].headers


def test_empty_id_is_refused_before_sending(signed_in_app: Daybook, server: FakeApiServer) -> None:
    before = len(server.requests)
    with pytest.raises(ValueError):
        signed_in_app.adapter(Task).update("", Task(title="x"))
    assert len(server.requests) == before


def test_list_must_be_an_array(signed_in_app: Daybook, server: FakeApiServer) -> None:
    server.respond_with("GET", "/api/todos", 200, {"items": []})
    with pytest.raises(MalformedResponseError):
        signed_in_app.adapter(Task).list()


def test_list_must_be_json(signed_in_app: Daybook, server: FakeApiServer) -> None:
    server.respond_with("GET", "/api/notes", 200, raw="<html>oops</html>")
    with pytest.raises(MalformedResponseError):
        signed_in_app.adapter(Note).list()


def test_mongo_style_ids_are_read(signed_in_app: Daybook) -> None:
    server = FakeApiServer(id_key="_id")
    signed_in_app.dispatcher.http.mount("http://", server)
    server.seed("reminders", title="Call mom", completed=True)

    reminder = signed_in_app.adapter(Reminder).list()[0]
    assert reminder.id == "r1"
    assert reminder.completed is True
