# tests/conftest.py

from __future__ import annotations

from pathlib import Path

import pytest
import requests

from daybook_client import Daybook, Settings

from .fakes import FakeApiServer


@pytest.fixture()
def server() -> FakeApiServer:
    return FakeApiServer()


@pytest.fixture()
def http(server: FakeApiServer) -> requests.Session:
    session = requests.Session()
    session.mount("http://", server)
    session.mount("https://", server)
    return session


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at a per-test session file; never touches the real home dir."""
    return Settings(target="desktop", session_file=str(tmp_path / "session.json"))


@pytest.fixture()
def app(settings: Settings, http: requests.Session) -> Daybook:
    return Daybook(settings, http=http)


@pytest.fixture()
def signed_in_app(app: Daybook, server: FakeApiServer) -> Daybook:
    server.add_user("Ada", "ada@example.com", "secret-pass")
    app.auth.login("ada@example.com", "secret-pass")
    server.require_auth = True
    return app
