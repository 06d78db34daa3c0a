"""
tests/conftest.py
"""
from __future__ import annotations

from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from werkzeug.security import generate_password_hash

# The single-file app lives here:
from linkpage.page import app, init_db  # noqa: WPS433 (importing from a module)

ADMIN_USER = "admin"
ADMIN_PASSWORD = "correct horse battery"
CSRF = "test-token"


@pytest.fixture(scope="session")
def _tmp_root(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp dir for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data")


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_root: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        SITE_STORE="sqlite",
        DATABASE=str(_tmp_root / "test.sqlite3"),
        DATA_FILE=str(_tmp_root / "site.json"),
        UPLOAD_DIR=str(_tmp_root / "uploads"),
        ANALYTICS_LOG_DIR=str(_tmp_root / "clicks"),
        MEDIA_BACKEND="local",
        ADMIN_USER=ADMIN_USER,
        ADMIN_HASH=generate_password_hash(ADMIN_PASSWORD),
    )
    with app.app_context():
        init_db()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture(params=["sqlite", "json"])
def fresh_site(request, tmp_path: Path, monkeypatch) -> str:
    """
    Point the app at an empty store of each kind, so a test starts from
    the default record instead of whatever the session DB holds.
    """
    monkeypatch.setitem(app.config, "SITE_STORE", request.param)
    monkeypatch.setitem(app.config, "DATABASE", str(tmp_path / "site.sqlite3"))
    monkeypatch.setitem(app.config, "DATA_FILE", str(tmp_path / "site.json"))
    monkeypatch.setitem(app.config, "UPLOAD_DIR", str(tmp_path / "uploads"))
    return request.param


@pytest.fixture
def admin(client: FlaskClient) -> dict[str, str]:
    """Mark the client's session as logged in; returns the CSRF header."""
    with client.session_transaction() as s:
        s["logged_in"] = True
        s["csrf"] = CSRF
    return {"X-CSRFToken": CSRF}
