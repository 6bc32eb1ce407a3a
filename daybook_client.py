#!/usr/bin/env python3
"""Command-line companion for the Daybook productivity service.

Features:
- Email/password sign-in and account registration
- Session token persisted locally and sent as a bearer header on every call
- Uniform CRUD over todos, notes, events and reminders
- Draft editing with per-kind defaults and validation
- Every write is followed by a full reload from the server
"""

from __future__ import annotations

import argparse
import dataclasses
import datetime as dt
import json
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, Generic, List, Mapping, Optional, Sequence, Type, TypeVar

import requests

logger = logging.getLogger(__name__)

APP_NAME = "Daybook"
ENV_PREFIX = "DAYBOOK"

API_PREFIX = "/api"
DEFAULT_ORIGIN = "http://localhost:3000"
TARGET_ORIGINS = {
    "ios": "http://localhost:3000",
    "android": "http://10.0.2.2:3000",
    "desktop": "http://127.0.0.1:3000",
}
DEFAULT_TARGET = "desktop"
DEFAULT_TIMEOUT_SECONDS = 25.0
SESSION_FILE = os.path.join(os.path.expanduser("~"), ".daybook_session.json")

PRIORITY_OPTIONS = ["low", "medium", "high"]
DEFAULT_PRIORITY = "medium"
TASK_STATUS_OPTIONS = ["pending", "in_progress", "completed"]
DEFAULT_TASK_STATUS = "pending"
DEFAULT_NOTE_COLOR = "#FFE4B5"

STATE_IDLE = "idle"
STATE_EDITING = "editing"
STATE_SUBMITTING = "submitting"

FIELD_TEXT = "text"
FIELD_DATETIME = "datetime"
FIELD_PRIORITY = "priority"
FIELD_TASK_STATUS = "task_status"
FIELD_TAGS = "tags"
FIELD_FLAG = "flag"

_FRACTION_RE = re.compile(r"\.(\d+)(?=(?:[+-]\d{2}:?\d{2})?$)")


def _k(suffix: str) -> str:
    return f"{ENV_PREFIX}_{suffix}"


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    target: str = DEFAULT_TARGET
    api_url: Optional[str] = None
    session_file: str = SESSION_FILE
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    log_level: str = "WARNING"

    @staticmethod
    def from_env(env: Optional[Mapping[str, str]] = None) -> "Settings":
        environ = dict(os.environ if env is None else env)
        api_url = (environ.get(_k("API_URL")) or "").strip() or None
        session_file = (environ.get(_k("SESSION_FILE")) or "").strip() or SESSION_FILE
        return Settings(
            target=(environ.get(_k("TARGET")) or DEFAULT_TARGET).strip().lower(),
            api_url=api_url,
            session_file=os.path.expanduser(session_file),
            timeout_seconds=_env_float(environ, _k("TIMEOUT_SECONDS"), DEFAULT_TIMEOUT_SECONDS),
            log_level=(environ.get(_k("LOG_LEVEL")) or "WARNING").strip().upper(),
        )


def setup_logging(level: str | int = logging.WARNING) -> None:
    """Install a single stderr handler on the root logger.

    Call once, early, from the entry point. Library code only uses the module
    logger and never configures handlers itself.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.WARNING

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(handler)

    # urllib3 connection chatter is only interesting when something breaks.
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))


# ---- errors ----


class DaybookError(RuntimeError):
    """Base class for every failure surfaced by the client core."""


class AuthError(DaybookError):
    pass


class ResourceError(DaybookError):
    def __init__(self, status: int, message: str):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.message = message

    @property
    def unauthorized(self) -> bool:
        return self.status in (401, 403)


class TransportError(DaybookError):
    pass


class MalformedResponseError(DaybookError):
    pass


class DraftValidationError(DaybookError):
    def __init__(self, problems: Sequence[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "Draft is not valid.")


class ControllerStateError(DaybookError):
    pass


# ---- dates ----


def utc_now() -> dt.datetime:
    return dt.datetime.now(tz=dt.timezone.utc)


def parse_iso_datetime(value: Any) -> Optional[dt.datetime]:
    """Parse an ISO-8601 string into an aware UTC datetime, or None."""
    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        # fromisoformat before 3.11 only takes 3 or 6 fractional digits
        text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def to_iso_utc(value: dt.datetime) -> str:
    """Serialize like JavaScript's toISOString: millisecond precision, Z suffix."""
    moment = parse_iso_datetime(value) or utc_now()
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def format_local_datetime(value: Optional[dt.datetime]) -> str:
    if value is None:
        return ""
    return value.astimezone().strftime("%Y-%m-%d %H:%M")


# ---- field coercion ----


def parse_tags(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        items: List[Any] = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        items = list(raw)
    else:
        raise ValueError("Tags must be a list or comma-separated text.")
    tags: List[str] = []
    for item in items:
        if item is None:
            continue
        text = str(item).strip()
        if text:
            tags.append(text)
    return tags


def parse_flag(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if raw is None:
        return False
    if isinstance(raw, (int, float)):
        return raw != 0
    text = str(raw).strip().lower()
    if text in {"1", "true", "yes", "y", "on"}:
        return True
    if text in {"", "0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"Cannot read {raw!r} as yes/no.")


def _choice_default(kind: str) -> str:
    return DEFAULT_TASK_STATUS if kind == FIELD_TASK_STATUS else DEFAULT_PRIORITY


def _choice_options(kind: str) -> List[str]:
    return TASK_STATUS_OPTIONS if kind == FIELD_TASK_STATUS else PRIORITY_OPTIONS


def normalize_wire_value(kind: str, raw: Any, default: Any) -> Any:
    """Lenient read of one server field: anything unusable becomes the default."""
    if kind == FIELD_TEXT:
        return default if raw is None else str(raw)
    if kind == FIELD_DATETIME:
        parsed = parse_iso_datetime(raw)
        if parsed is None and raw not in (None, ""):
            logger.warning("Unreadable date %r from server; using %s", raw, default)
        return parsed or default
    if kind in (FIELD_PRIORITY, FIELD_TASK_STATUS):
        text = str(raw or "").strip().lower()
        return text if text in _choice_options(kind) else default
    if kind == FIELD_TAGS:
        try:
            return parse_tags(raw)
        except ValueError:
            return list(default)
    if kind == FIELD_FLAG:
        try:
            return parse_flag(raw)
        except ValueError:
            return default
    return raw


def coerce_draft_value(kind: str, value: Any) -> Any:
    """Strict conversion of user input; raises ValueError when it cannot be used."""
    if kind == FIELD_TEXT:
        return "" if value is None else str(value)
    if kind == FIELD_DATETIME:
        parsed = parse_iso_datetime(value)
        if parsed is None:
            raise ValueError(f"{value!r} is not an ISO-8601 date/time.")
        return parsed
    if kind in (FIELD_PRIORITY, FIELD_TASK_STATUS):
        # Membership is checked on submit so the draft can hold what was typed.
        return str(value or "").strip().lower()
    if kind == FIELD_TAGS:
        return parse_tags(value)
    if kind == FIELD_FLAG:
        return parse_flag(value)
    return value


def encode_wire_value(kind: str, value: Any) -> Any:
    if kind == FIELD_DATETIME:
        return to_iso_utc(value) if value is not None else None
    if kind == FIELD_TAGS:
        return list(value or [])
    return value


# ---- resource models ----


def extract_resource_id(payload: Mapping[str, Any]) -> Optional[str]:
    for candidate_key in ("id", "_id"):
        raw = payload.get(candidate_key)
        if raw is None:
            continue
        text = str(raw).strip()
        if text:
            return text
    return None


@dataclass
class Resource:
    """Server-owned record; subclasses declare their path and field schema."""

    PATH: ClassVar[str] = ""
    LABEL: ClassVar[str] = "item"
    FIELD_KINDS: ClassVar[Dict[str, str]] = {}
    WIRE_KEYS: ClassVar[Dict[str, str]] = {}

    id: Optional[str] = None

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in dataclasses.fields(cls) if f.name != "id"]

    @classmethod
    def wire_key(cls, name: str) -> str:
        return cls.WIRE_KEYS.get(name, name)

    @classmethod
    def field_kind(cls, name: str) -> str:
        if name not in cls.FIELD_KINDS:
            raise KeyError(name)
        return cls.FIELD_KINDS[name]

    @classmethod
    def resolve_field_name(cls, name: str) -> Optional[str]:
        """Map a python or wire field name onto the python name."""
        if name in cls.FIELD_KINDS:
            return name
        for python_name, wire_name in cls.WIRE_KEYS.items():
            if wire_name == name:
                return python_name
        return None

    @classmethod
    def blank(cls) -> "Resource":
        return cls()

    @classmethod
    def from_payload(cls, payload: Any) -> "Resource":
        if not isinstance(payload, dict):
            raise MalformedResponseError(f"Expected a {cls.LABEL} object, got {type(payload).__name__}.")
        defaults = cls.blank()
        values: Dict[str, Any] = {}
        for name in cls.field_names():
            values[name] = normalize_wire_value(
                cls.field_kind(name),
                payload.get(cls.wire_key(name)),
                getattr(defaults, name),
            )
        return cls(id=extract_resource_id(payload), **values)

    def to_payload(self) -> Dict[str, Any]:
        return {
            self.wire_key(name): encode_wire_value(self.field_kind(name), getattr(self, name))
            for name in self.field_names()
        }

    def field_values(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for name in self.field_names():
            value = getattr(self, name)
            values[name] = list(value) if isinstance(value, list) else value
        return values

    def validate(self) -> List[str]:
        problems: List[str] = []
        if not str(getattr(self, "title", "") or "").strip():
            problems.append("Title is required.")
        for name in self.field_names():
            kind = self.field_kind(name)
            value = getattr(self, name)
            if kind in (FIELD_PRIORITY, FIELD_TASK_STATUS) and value not in _choice_options(kind):
                options = ", ".join(_choice_options(kind))
                problems.append(f"{name.replace('_', ' ').capitalize()} must be one of: {options}.")
            if kind == FIELD_DATETIME and not isinstance(value, dt.datetime):
                problems.append(f"{name.replace('_', ' ').capitalize()} must be a date/time.")
        return problems

    def summary(self) -> str:
        return str(getattr(self, "title", "") or "(untitled)")


@dataclass
class Task(Resource):
    PATH: ClassVar[str] = "todos"
    LABEL: ClassVar[str] = "todo"
    FIELD_KINDS: ClassVar[Dict[str, str]] = {
        "title": FIELD_TEXT,
        "description": FIELD_TEXT,
        "due_date": FIELD_DATETIME,
        "priority": FIELD_PRIORITY,
        "status": FIELD_TASK_STATUS,
    }
    WIRE_KEYS: ClassVar[Dict[str, str]] = {"due_date": "dueDate"}

    title: str = ""
    description: str = ""
    due_date: dt.datetime = field(default_factory=utc_now)
    priority: str = DEFAULT_PRIORITY
    status: str = DEFAULT_TASK_STATUS

    def summary(self) -> str:
        return f"{self.title}  [{self.priority}] {self.status}  due {format_local_datetime(self.due_date)}"


@dataclass
class Note(Resource):
    PATH: ClassVar[str] = "notes"
    LABEL: ClassVar[str] = "note"
    FIELD_KINDS: ClassVar[Dict[str, str]] = {
        "title": FIELD_TEXT,
        "content": FIELD_TEXT,
        "tags": FIELD_TAGS,
        "color": FIELD_TEXT,
    }

    title: str = ""
    content: str = ""
    tags: List[str] = field(default_factory=list)
    color: str = DEFAULT_NOTE_COLOR

    def summary(self) -> str:
        tags = f"  #{' #'.join(self.tags)}" if self.tags else ""
        return f"{self.title}{tags}"


@dataclass
class Event(Resource):
    PATH: ClassVar[str] = "events"
    LABEL: ClassVar[str] = "event"
    FIELD_KINDS: ClassVar[Dict[str, str]] = {
        "title": FIELD_TEXT,
        "description": FIELD_TEXT,
        "start_date": FIELD_DATETIME,
        "end_date": FIELD_DATETIME,
        "location": FIELD_TEXT,
        "priority": FIELD_PRIORITY,
    }
    WIRE_KEYS: ClassVar[Dict[str, str]] = {"start_date": "startDate", "end_date": "endDate"}

    title: str = ""
    description: str = ""
    start_date: dt.datetime = field(default_factory=utc_now)
    end_date: dt.datetime = field(default_factory=utc_now)
    location: str = ""
    priority: str = DEFAULT_PRIORITY

    @classmethod
    def blank(cls) -> "Event":
        now_value = utc_now()
        return cls(start_date=now_value, end_date=now_value)

    def validate(self) -> List[str]:
        problems = super().validate()
        if isinstance(self.start_date, dt.datetime) and isinstance(self.end_date, dt.datetime):
            if self.start_date > self.end_date:
                problems.append("Start date must not be after end date.")
        return problems

    def summary(self) -> str:
        where = f" @ {self.location}" if self.location else ""
        return (
            f"{self.title}{where}  [{self.priority}]  "
            f"{format_local_datetime(self.start_date)} -> {format_local_datetime(self.end_date)}"
        )


@dataclass
class Reminder(Resource):
    PATH: ClassVar[str] = "reminders"
    LABEL: ClassVar[str] = "reminder"
    FIELD_KINDS: ClassVar[Dict[str, str]] = {
        "title": FIELD_TEXT,
        "description": FIELD_TEXT,
        "due_date": FIELD_DATETIME,
        "priority": FIELD_PRIORITY,
        "completed": FIELD_FLAG,
    }
    WIRE_KEYS: ClassVar[Dict[str, str]] = {"due_date": "dueDate"}

    title: str = ""
    description: str = ""
    due_date: dt.datetime = field(default_factory=utc_now)
    priority: str = DEFAULT_PRIORITY
    completed: bool = False

    def summary(self) -> str:
        mark = "x" if self.completed else " "
        return f"[{mark}] {self.title}  [{self.priority}]  due {format_local_datetime(self.due_date)}"


RESOURCE_TYPES: Dict[str, Type[Resource]] = {
    Task.PATH: Task,
    Note.PATH: Note,
    Event.PATH: Event,
    Reminder.PATH: Reminder,
}
RESOURCE_ALIASES = {
    "todo": Task.PATH,
    "task": Task.PATH,
    "tasks": Task.PATH,
    "note": Note.PATH,
    "event": Event.PATH,
    "reminder": Reminder.PATH,
}


def resource_type_for(name: str) -> Type[Resource]:
    key = (name or "").strip().lower()
    key = RESOURCE_ALIASES.get(key, key)
    if key not in RESOURCE_TYPES:
        options = ", ".join(sorted(RESOURCE_TYPES))
        raise KeyError(f"Unknown collection {name!r}; expected one of: {options}.")
    return RESOURCE_TYPES[key]


# ---- session ----


@dataclass
class UserProfile:
    id: Optional[str] = None
    name: str = ""
    email: str = ""

    @staticmethod
    def from_payload(payload: Any) -> "UserProfile":
        if not isinstance(payload, dict):
            return UserProfile()
        return UserProfile(
            id=extract_resource_id(payload),
            name=str(payload.get("name") or ""),
            email=str(payload.get("email") or ""),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "email": self.email}


class SessionStore:
    """Holds the bearer token and signed-in profile, persisted as JSON."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or SESSION_FILE
        self._token: Optional[str] = None
        self._user: Optional[UserProfile] = None
        self.refresh()

    @property
    def user(self) -> Optional[UserProfile]:
        return self._user

    @property
    def signed_in(self) -> bool:
        return bool(self._token)

    def get(self) -> Optional[str]:
        return self._token

    def set(self, token: str, user: Optional[UserProfile] = None) -> None:
        if not token:
            raise ValueError("Refusing to store an empty session token.")
        self._token = token
        self._user = user
        self._save()

    def clear(self) -> None:
        self._token = None
        self._user = None
        try:
            if os.path.exists(self.path):
                os.remove(self.path)
        except OSError as exc:
            logger.warning("Could not remove session file %s: %s", self.path, exc)

    def refresh(self) -> None:
        """Reload the persisted session, dropping whatever is held in memory."""
        self._token = None
        self._user = None
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable session file %s: %s", self.path, exc)
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring session file %s with unexpected content", self.path)
            return
        token = str(data.get("token") or "").strip()
        if not token:
            return
        self._token = token
        if isinstance(data.get("user"), dict):
            self._user = UserProfile.from_payload(data["user"])

    def _save(self) -> None:
        data = {
            "token": self._token,
            "user": self._user.to_payload() if self._user else None,
        }
        tmp_path = f"{self.path}.tmp"
        try:
            parent = os.path.dirname(self.path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as handle:
                json.dump(data, handle)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            logger.warning("Session kept in memory only; could not write %s: %s", self.path, exc)
        finally:
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass


# ---- transport ----


def resolve_base_url(target: Optional[str], origin_override: Optional[str] = None) -> str:
    if origin_override:
        origin = origin_override.strip().rstrip("/")
        if origin.endswith(API_PREFIX):
            return origin
        return f"{origin}{API_PREFIX}"
    origin = TARGET_ORIGINS.get((target or "").strip().lower(), DEFAULT_ORIGIN)
    return f"{origin}{API_PREFIX}"


def extract_error_message(response: requests.Response) -> str:
    try:
        body = response.json()
        if isinstance(body, dict):
            if isinstance(body.get("error"), dict):
                msg = body["error"].get("message")
                if msg:
                    return str(msg)
            msg = body.get("message") or body.get("error_description") or body.get("error")
            if msg:
                return str(msg)
    except ValueError:
        pass
    text = (response.text or "").strip()
    if text:
        return text[:300]
    return "request failed"


class RequestDispatcher:
    """The one HTTP client; attaches the session token to each request."""

    def __init__(
        self,
        session_store: SessionStore,
        target: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http: Optional[requests.Session] = None,
    ):
        self.session_store = session_store
        self.base_url = resolve_base_url(target, base_url)
        self.timeout = timeout
        self.http = http or requests.Session()
        self.http.headers.update({"Content-Type": "application/json", "Accept": "application/json"})

    def _auth_headers(self) -> Dict[str, str]:
        token = self.session_store.get()
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> requests.Response:
        url = self.url_for(path)
        try:
            response = self.http.request(
                method,
                url,
                headers=self._auth_headers(),
                json=payload,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            logger.warning("%s %s timed out after %ss", method, path, self.timeout)
            raise TransportError("The server took too long to respond. Try again.") from exc
        except requests.RequestException as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise TransportError("Could not reach the server. Check your connection and try again.") from exc
        logger.debug("%s %s -> %s", method, path, response.status_code)
        return response

    def get(self, path: str) -> requests.Response:
        return self.request("GET", path)

    def post(self, path: str, payload: Dict[str, Any]) -> requests.Response:
        return self.request("POST", path, payload)

    def put(self, path: str, payload: Dict[str, Any]) -> requests.Response:
        return self.request("PUT", path, payload)

    def delete(self, path: str) -> requests.Response:
        return self.request("DELETE", path)


def _json_body(response: requests.Response, what: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise MalformedResponseError(f"Unexpected response format while loading {what}.") from exc


# ---- auth ----


@dataclass
class AuthResult:
    token: str
    user: UserProfile


class AuthGateway:
    """Exchanges credentials for a token; the only writer of the session store."""

    def __init__(self, dispatcher: RequestDispatcher, session_store: SessionStore):
        self.dispatcher = dispatcher
        self.session_store = session_store

    def login(self, email: str, password: str) -> AuthResult:
        email = (email or "").strip()
        if not email or not password:
            raise AuthError("Enter email and password first.")
        return self._authenticate("auth/login", {"email": email, "password": password})

    def register(self, name: str, email: str, password: str) -> AuthResult:
        name = (name or "").strip()
        email = (email or "").strip()
        if not name or not email or not password:
            raise AuthError("Name, email and password are required.")
        return self._authenticate("auth/register", {"name": name, "email": email, "password": password})

    def logout(self) -> None:
        self.session_store.clear()
        logger.info("Signed out")

    def _authenticate(self, path: str, payload: Dict[str, Any]) -> AuthResult:
        response = self.dispatcher.post(path, payload)
        if response.status_code >= 300:
            message = extract_error_message(response)
            logger.warning("%s rejected with HTTP %s", path, response.status_code)
            raise AuthError(message)
        body = _json_body(response, "the sign-in response")
        if not isinstance(body, dict):
            raise MalformedResponseError("Sign-in returned an unexpected response.")
        token = str(body.get("token") or "").strip()
        if not token:
            raise MalformedResponseError("Sign-in returned no token.")
        user = UserProfile.from_payload(body.get("user"))
        self.session_store.set(token, user)
        logger.info("Signed in as %s", user.email or user.id or "(unknown user)")
        return AuthResult(token=token, user=user)


# ---- resources ----

T = TypeVar("T", bound=Resource)


class ResourceAdapter(Generic[T]):
    """CRUD binding for one resource kind over the shared dispatcher."""

    def __init__(self, dispatcher: RequestDispatcher, model: Type[T]):
        self.dispatcher = dispatcher
        self.model = model

    @property
    def path(self) -> str:
        return self.model.PATH

    def _item_path(self, resource_id: str) -> str:
        if not resource_id:
            raise ValueError(f"A {self.model.LABEL} id is required.")
        return f"{self.path}/{resource_id}"

    def _check(self, response: requests.Response) -> None:
        if response.status_code >= 300:
            raise ResourceError(response.status_code, extract_error_message(response))

    def _parse_one(self, response: requests.Response) -> T:
        return self.model.from_payload(_json_body(response, self.model.LABEL))  # type: ignore[return-value]

    def list(self) -> List[T]:
        response = self.dispatcher.get(self.path)
        self._check(response)
        rows = _json_body(response, self.path)
        if not isinstance(rows, list):
            raise MalformedResponseError(f"Expected a list of {self.path}, got {type(rows).__name__}.")
        return [self.model.from_payload(row) for row in rows]  # type: ignore[misc]

    def create(self, item: T) -> T:
        response = self.dispatcher.post(self.path, item.to_payload())
        self._check(response)
        return self._parse_one(response)

    def update(self, resource_id: str, item: T) -> T:
        response = self.dispatcher.put(self._item_path(resource_id), item.to_payload())
        self._check(response)
        return self._parse_one(response)

    def delete(self, resource_id: str) -> None:
        response = self.dispatcher.delete(self._item_path(resource_id))
        self._check(response)


# ---- drafts & controller ----


@dataclass
class Draft:
    model: Type[Resource]
    resource_id: Optional[str]
    values: Dict[str, Any]

    @property
    def is_new(self) -> bool:
        return self.resource_id is None

    def build(self) -> Resource:
        return self.model(id=self.resource_id, **self.values)


class CollectionController(Generic[T]):
    """Owns one collection and at most one open draft.

    Idle -> Editing (open_create/open_edit) -> Submitting (submit) -> Idle on
    success or back to Editing on failure. The collection only changes through
    refresh(), which replaces it with whatever the server returns.
    """

    def __init__(self, adapter: ResourceAdapter[T], on_change: Optional[Callable[["CollectionController[T]"], None]] = None):
        self.adapter = adapter
        self.on_change = on_change
        self.items: List[T] = []
        self.draft: Optional[Draft] = None
        self.state = STATE_IDLE
        self.status = ""
        self.last_error: Optional[DaybookError] = None

    @property
    def model(self) -> Type[T]:
        return self.adapter.model

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self)

    def _require_state(self, *allowed: str) -> None:
        if self.state not in allowed:
            raise ControllerStateError(f"Cannot do that while {self.state}.")

    def _fail(self, exc: DaybookError, action: str) -> None:
        self.last_error = exc
        self.status = f"{action} failed: {exc}"
        logger.warning("%s %s failed: %s", self.adapter.path, action.lower(), exc)
        self._notify()

    def set_status(self, message: str) -> None:
        self.status = message
        self.last_error = None
        self._notify()

    def _open_draft(self) -> Draft:
        self._require_state(STATE_EDITING)
        if self.draft is None:
            raise ControllerStateError("No draft is open.")
        return self.draft

    def _reload_after_write(self) -> bool:
        """Refresh after a committed write; a failed reload is recorded, not raised."""
        try:
            self.refresh()
        except DaybookError:
            return False
        return True

    def refresh(self) -> List[T]:
        try:
            items = self.adapter.list()
        except MalformedResponseError as exc:
            self.items = []
            self._fail(exc, "Load")
            raise
        except DaybookError as exc:
            self._fail(exc, "Load")
            raise
        self.items = items
        self.set_status(f"Loaded {len(items)} {self.adapter.path}.")
        return items

    def find(self, resource_id: str) -> Optional[T]:
        for item in self.items:
            if item.id == resource_id:
                return item
        return None

    def open_create(self) -> Draft:
        self._require_state(STATE_IDLE, STATE_EDITING)
        blank = self.model.blank()
        self.draft = Draft(model=self.model, resource_id=None, values=blank.field_values())
        self.state = STATE_EDITING
        self._notify()
        return self.draft

    def open_edit(self, resource: T) -> Draft:
        self._require_state(STATE_IDLE, STATE_EDITING)
        if not resource.id:
            raise ValueError(f"Cannot edit a {self.model.LABEL} that has no id.")
        self.draft = Draft(model=self.model, resource_id=resource.id, values=resource.field_values())
        self.state = STATE_EDITING
        self._notify()
        return self.draft

    def update_draft_field(self, name: str, value: Any) -> None:
        draft = self._open_draft()
        field_name = self.model.resolve_field_name(name)
        if field_name is None:
            raise DraftValidationError([f"{self.model.LABEL.capitalize()} has no field {name!r}."])
        try:
            draft.values[field_name] = coerce_draft_value(self.model.field_kind(field_name), value)
        except ValueError as exc:
            raise DraftValidationError([f"{field_name}: {exc}"]) from exc
        self._notify()

    def cancel(self) -> None:
        self._require_state(STATE_EDITING)
        self.draft = None
        self.state = STATE_IDLE
        self._notify()

    def submit(self) -> Optional[T]:
        """Send the draft and reload.

        Returns the saved item, or None when the server accepted the write but
        its reply could not be read; the reloaded collection is then the only
        record of it. A write the server rejected (or that never reached it)
        raises and leaves the draft open for another try.
        """
        draft = self._open_draft()
        item = draft.build()
        problems = item.validate()
        if problems:
            error = DraftValidationError(problems)
            self._fail(error, "Save")
            raise error

        self.state = STATE_SUBMITTING
        self._notify()
        saved: Optional[T] = None
        try:
            if draft.is_new:
                saved = self.adapter.create(item)  # type: ignore[arg-type]
            else:
                saved = self.adapter.update(draft.resource_id, item)  # type: ignore[arg-type]
        except MalformedResponseError as exc:
            # 2xx already came back, so the write is committed
            logger.warning("%s saved but the reply was unreadable: %s", self.adapter.path, exc)
        except DaybookError as exc:
            self.state = STATE_EDITING
            self._fail(exc, "Save")
            raise

        self.draft = None
        self.state = STATE_IDLE
        if not self._reload_after_write():
            return saved
        if saved is None and draft.resource_id is not None:
            saved = self.find(draft.resource_id)
        self.set_status(f"Saved {self.model.LABEL} {saved.id if saved else ''}".strip() + ".")
        return saved

    def remove(self, resource_id: str) -> None:
        self._require_state(STATE_IDLE)
        try:
            self.adapter.delete(resource_id)
        except DaybookError as exc:
            self._fail(exc, "Delete")
            raise
        if self._reload_after_write():
            self.set_status(f"Deleted {self.model.LABEL} {resource_id}.")

    def toggle_completed(self, resource: T) -> Optional[T]:
        self._require_state(STATE_IDLE, STATE_EDITING)
        if "completed" not in self.model.FIELD_KINDS:
            raise TypeError(f"{self.model.LABEL.capitalize()} has no completed flag.")
        if not resource.id:
            raise ValueError(f"Cannot update a {self.model.LABEL} that has no id.")
        flipped = dataclasses.replace(resource, completed=not getattr(resource, "completed"))
        saved: Optional[T] = None
        try:
            saved = self.adapter.update(resource.id, flipped)
        except MalformedResponseError as exc:
            logger.warning("%s updated but the reply was unreadable: %s", self.adapter.path, exc)
        except DaybookError as exc:
            self._fail(exc, "Update")
            raise
        if self._reload_after_write() and saved is None:
            saved = self.find(resource.id)
        return saved


# ---- composition ----


class Daybook:
    def __init__(self, settings: Optional[Settings] = None, http: Optional[requests.Session] = None):
        self.settings = settings or Settings.from_env()
        self.session = SessionStore(self.settings.session_file)
        self.dispatcher = RequestDispatcher(
            self.session,
            target=self.settings.target,
            base_url=self.settings.api_url,
            timeout=self.settings.timeout_seconds,
            http=http,
        )
        self.auth = AuthGateway(self.dispatcher, self.session)

    def adapter(self, model: Type[T]) -> ResourceAdapter[T]:
        return ResourceAdapter(self.dispatcher, model)

    def controller(self, kind: str | Type[Resource]) -> CollectionController[Any]:
        model = resource_type_for(kind) if isinstance(kind, str) else kind
        return CollectionController(self.adapter(model))


# ---- command line ----


def _parse_assignments(pairs: Sequence[str]) -> List[tuple[str, str]]:
    parsed: List[tuple[str, str]] = []
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Expected field=value, got {pair!r}.")
        name, value = pair.split("=", 1)
        parsed.append((name.strip(), value))
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="daybook", description=f"{APP_NAME} command-line client")
    parser.add_argument("--target", help="deployment target: ios, android or desktop")
    parser.add_argument("--api-url", help="server origin, overrides --target")
    parser.add_argument("--session-file", help="where the session token is kept")
    parser.add_argument("-v", "--verbose", action="store_true", help="log requests to stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="sign in and remember the session")
    login.add_argument("email")
    login.add_argument("password")

    register = sub.add_parser("register", help="create an account and sign in")
    register.add_argument("name")
    register.add_argument("email")
    register.add_argument("password")

    sub.add_parser("logout", help="forget the stored session")
    sub.add_parser("whoami", help="show the signed-in user")

    list_cmd = sub.add_parser("list", help="list a collection")
    list_cmd.add_argument("kind")

    add = sub.add_parser("add", help="create an item")
    add.add_argument("kind")
    add.add_argument("--set", dest="assignments", action="append", default=[], metavar="FIELD=VALUE")

    edit = sub.add_parser("edit", help="replace an item's fields")
    edit.add_argument("kind")
    edit.add_argument("id")
    edit.add_argument("--set", dest="assignments", action="append", default=[], metavar="FIELD=VALUE")

    delete = sub.add_parser("delete", help="delete an item")
    delete.add_argument("kind")
    delete.add_argument("id")

    toggle = sub.add_parser("toggle", help="flip a reminder's completed flag")
    toggle.add_argument("id")
    return parser


def _print_items(controller: CollectionController[Any]) -> None:
    if not controller.items:
        print(f"No {controller.adapter.path}.")
        return
    for item in controller.items:
        print(f"{item.id}  {item.summary()}")


def _print_saved(controller: CollectionController[Any], saved: Optional[Resource]) -> None:
    if saved is not None:
        print(f"{saved.id}  {saved.summary()}")
    else:
        print(f"Saved {controller.model.LABEL}.")
    if controller.last_error is not None:
        print(f"Warning: saved, but reloading {controller.adapter.path} failed: {controller.last_error}", file=sys.stderr)


def _run_command(app: Daybook, args: argparse.Namespace) -> None:
    if args.command == "login":
        result = app.auth.login(args.email, args.password)
        print(f"Signed in as {result.user.name or result.user.email}.")
        return
    if args.command == "register":
        result = app.auth.register(args.name, args.email, args.password)
        print(f"Welcome, {result.user.name or 'User'}!")
        return
    if args.command == "logout":
        app.auth.logout()
        print("Signed out.")
        return
    if args.command == "whoami":
        user = app.session.user
        if not app.session.signed_in:
            print("Not signed in.")
        elif user is None:
            print("Signed in.")
        else:
            print(f"{user.name or 'User'} <{user.email}>")
        return

    kind = "reminders" if args.command == "toggle" else args.kind
    controller = app.controller(kind)
    controller.refresh()

    if args.command == "list":
        _print_items(controller)
        return

    if args.command == "delete":
        controller.remove(args.id)
        if controller.last_error is not None:
            print(f"Deleted {controller.model.LABEL} {args.id}.")
            print(f"Warning: reloading {controller.adapter.path} failed: {controller.last_error}", file=sys.stderr)
        else:
            print(controller.status)
        return

    if args.command == "toggle":
        reminder = controller.find(args.id)
        if reminder is None:
            raise ResourceError(404, f"No reminder with id {args.id}.")
        _print_saved(controller, controller.toggle_completed(reminder))
        return

    if args.command == "add":
        controller.open_create()
    else:
        existing = controller.find(args.id)
        if existing is None:
            raise ResourceError(404, f"No {controller.model.LABEL} with id {args.id}.")
        controller.open_edit(existing)
    for name, value in _parse_assignments(args.assignments):
        controller.update_draft_field(name, value)
    _print_saved(controller, controller.submit())


def main(argv: Optional[Sequence[str]] = None, http: Optional[requests.Session] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = Settings.from_env()
    setup_logging("DEBUG" if args.verbose else settings.log_level)
    settings = dataclasses.replace(
        settings,
        target=(args.target or settings.target).lower(),
        api_url=args.api_url or settings.api_url,
        session_file=os.path.expanduser(args.session_file) if args.session_file else settings.session_file,
    )
    app = Daybook(settings, http=http)
    try:
        _run_command(app, args)
    except ResourceError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        if exc.unauthorized:
            if app.session.signed_in:
                app.auth.logout()
            print("Your session is missing or expired; run 'daybook login'.", file=sys.stderr)
        return 1
    except (DaybookError, KeyError, ValueError) as exc:
        message = exc.args[0] if isinstance(exc, KeyError) and exc.args else exc
        print(f"Error: {message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
