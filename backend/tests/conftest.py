from __future__ import annotations

import datetime as dt
import os
import tempfile
from pathlib import Path
from typing import Generator

# Keep the module level app created on import away from the working directory.
_IMPORT_DIR = Path(tempfile.mkdtemp(prefix="dailygrind-tests-"))
os.environ.setdefault("DG_SQLITE_PATH", str(_IMPORT_DIR / "import.db"))
os.environ.setdefault("DG_STATE_DIR", str(_IMPORT_DIR / "state"))
os.environ.setdefault("DG_EXPORT_DIR", str(_IMPORT_DIR / "exports"))

import pytest
import requests
from fastapi import FastAPI
from fastapi.testclient import TestClient

from dailygrind.config import Settings
from dailygrind.database import build_engine
from dailygrind.main import create_app
from dailygrind.storage import LocalStore

from fakes import FakeClock, InMemoryRepository, ManualScheduler

UTC = dt.timezone.utc


@pytest.fixture()
def app_settings(tmp_path: Path) -> Settings:
    return Settings(
        sqlite_path=tmp_path / "test.db",
        state_dir=tmp_path / "state",
        export_dir=tmp_path / "exports",
        timezone="UTC",
        token_secret="test-secret",
        summarizer_url="http://summarizer.test/api",
        summarizer_api_key="test-key",
        tick_interval_seconds=1,
    )


@pytest.fixture()
def engine(app_settings: Settings):
    engine = build_engine(f"sqlite:///{app_settings.sqlite_path}")
    yield engine
    engine.dispose()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(dt.datetime(2024, 1, 10, 12, 0, tzinfo=UTC))


@pytest.fixture()
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture()
def summarizer_session() -> requests.Session:
    return requests.Session()


@pytest.fixture()
def app(app_settings, engine, scheduler, clock, summarizer_session) -> FastAPI:
    return create_app(
        app_settings,
        engine,
        scheduler=scheduler,
        clock=clock,
        summarizer_session=summarizer_session,
    )


@pytest.fixture()
def client(app: FastAPI) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c


def register_and_login(client: TestClient, email: str = "ada@example.com", password: str = "secret-pass") -> str:
    response = client.post("/auth/register", json={"email": email, "password": password})
    assert response.status_code == 201, response.text
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["token"]


@pytest.fixture()
def auth_client(client: TestClient) -> TestClient:
    token = register_and_login(client)
    client.headers.update({"Authorization": f"Bearer {token}"})
    return client


@pytest.fixture()
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture()
def store(tmp_path: Path) -> LocalStore:
    return LocalStore(tmp_path / "local")
