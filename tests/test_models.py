# tests/test_models.py

from __future__ import annotations

import datetime as dt
import logging

import pytest

from daybook_client import (
    DEFAULT_NOTE_COLOR,
    Event,
    MalformedResponseError,
    Note,
    Reminder,
    Task,
    parse_iso_datetime,
    parse_tags,
    resource_type_for,
    to_iso_utc,
)

MOMENT = dt.datetime(2024, 5, 1, 9, 30, tzinfo=dt.timezone.utc)


def test_iso_round_trip_matches_javascript_format() -> None:
    assert to_iso_utc(MOMENT) == "2024-05-01T09:30:00.000Z"
    assert parse_iso_datetime("2024-05-01T09:30:00.000Z") == MOMENT
    assert parse_iso_datetime("2024-05-01T11:30:00+02:00") == MOMENT


@pytest.mark.parametrize("value", [None, "", "yesterday", 42])
def test_unparseable_dates_are_none(value) -> None:
    assert parse_iso_datetime(value) is None


def test_naive_datetimes_are_treated_as_utc() -> None:
    assert parse_iso_datetime(dt.datetime(2024, 5, 1, 9, 30)) == MOMENT


def test_tags_accept_text_or_list() -> None:
    assert parse_tags("work, home ,, urgent") == ["work", "home", "urgent"]
    assert parse_tags(["a", " b ", "", None]) == ["a", "b"]
    assert parse_tags(None) == []
    with pytest.raises(ValueError):
        parse_tags(12)


def test_task_payload_uses_wire_names_and_no_id() -> None:
    task = Task(id="t1", title="Buy milk", due_date=MOMENT, priority="low")
    assert task.to_payload() == {
        "title": "Buy milk",
        "description": "",
        "dueDate": "2024-05-01T09:30:00.000Z",
        "priority": "low",
        "status": "pending",
    }


def test_partial_record_is_normalized_once_with_defaults() -> None:
    reminder = Reminder.from_payload({"_id": 77, "title": "Call mom", "priority": None, "completed": None})
    assert reminder.id == "77"
    assert reminder.title == "Call mom"
    assert reminder.description == ""
    assert reminder.priority == "medium"
    assert reminder.completed is False
    assert isinstance(reminder.due_date, dt.datetime)


def test_unknown_choice_values_fall_back_to_defaults() -> None:
    task = Task.from_payload({"id": "t1", "title": "x", "priority": "URGENT", "status": "In_Progress"})
    assert task.priority == "medium"
    assert task.status == "in_progress"


def test_note_fields() -> None:
    note = Note.from_payload({"id": "n1", "title": "Ideas", "tags": "a,b"})
    assert note.tags == ["a", "b"]
    assert note.color == DEFAULT_NOTE_COLOR
    assert note.to_payload() == {"title": "Ideas", "content": "", "tags": ["a", "b"], "color": DEFAULT_NOTE_COLOR}


def test_event_blank_shares_one_now() -> None:
    event = Event.blank()
    assert event.start_date == event.end_date
    assert event.priority == "medium"
    assert event.location == ""


def test_event_rejects_start_after_end() -> None:
    event = Event(title="Trip", start_date=MOMENT, end_date=MOMENT - dt.timedelta(hours=1))
    assert event.validate() == ["Start date must not be after end date."]


def test_validation_reports_every_problem() -> None:
    task = Task(title="  ", priority="urgent", status="done")
    problems = task.validate()
    assert "Title is required." in problems
    assert any(p.startswith("Priority must be one of") for p in problems)
    assert any(p.startswith("Status must be one of") for p in problems)


def test_non_object_payload_is_malformed() -> None:
    with pytest.raises(MalformedResponseError):
        Task.from_payload(["not", "a", "dict"])


def test_resource_type_lookup_accepts_aliases() -> None:
    assert resource_type_for("todos") is Task
    assert resource_type_for("Tasks") is Task
    assert resource_type_for("reminder") is Reminder
    with pytest.raises(KeyError):
        resource_type_for("contacts")


def test_field_names_resolve_from_wire_names() -> None:
    assert Event.resolve_field_name("startDate") == "start_date"
    assert Event.resolve_field_name("start_date") == "start_date"
    assert Event.resolve_field_name("attendees") is None


@pytest.mark.parametrize(
    "text, micros",
    [
        ("2024-05-01T09:30:00.5Z", 500000),
        ("2024-05-01T09:30:00.12Z", 120000),
        ("2024-05-01T09:30:00.1234567+00:00", 123456),
    ],
)
def test_any_fraction_length_is_accepted(text: str, micros: int) -> None:
    assert parse_iso_datetime(text) == MOMENT.replace(microsecond=micros)


def test_unreadable_server_date_is_logged(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="daybook_client"):
        task = Task.from_payload({"id": "t1", "title": "x", "dueDate": "next tuesday"})
    assert isinstance(task.due_date, dt.datetime)
    assert "next tuesday" in caplog.text


def test_missing_server_date_is_not_logged(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="daybook_client"):
        Task.from_payload({"id": "t1", "title": "x"})
    assert caplog.text == ""
