"""
tests/test_clicks.py
"""
from __future__ import annotations

import json
from pathlib import Path

from werkzeug.security import check_password_hash

from linkpage import page
from linkpage.page import app, click_counts, image_id


def test_click_is_logged(client, monkeypatch, tmp_path: Path):
    monkeypatch.setitem(app.config, "ANALYTICS_LOG_DIR", str(tmp_path))

    rv = client.post("/api/click/0f9e8d", headers={"User-Agent": "pytest"})
    assert rv.status_code == 204
    assert rv.data == b""

    files = sorted(tmp_path.glob("clicks-*.log"))
    assert len(files) == 1
    event = json.loads(files[0].read_text().splitlines()[-1])
    assert event["id"] == "0f9e8d"
    assert event["ua"] == "pytest"


def test_click_needs_no_csrf(client, admin, monkeypatch, tmp_path: Path):
    monkeypatch.setitem(app.config, "ANALYTICS_LOG_DIR", str(tmp_path))
    assert client.post("/api/click/abc").status_code == 204


def test_click_bad_id(client, monkeypatch, tmp_path: Path):
    monkeypatch.setitem(app.config, "ANALYTICS_LOG_DIR", str(tmp_path))
    assert client.post("/api/click/%24%24").status_code == 400
    assert not list(tmp_path.glob("clicks-*.log"))


def test_click_counts(client, monkeypatch, tmp_path: Path):
    monkeypatch.setitem(app.config, "ANALYTICS_LOG_DIR", str(tmp_path))
    for img in ("a", "b", "a", "a"):
        client.post(f"/api/click/{img}")
    (tmp_path / "clicks-20000101.log").write_text('{"id": "ancient"}\n')
    (tmp_path / "clicks-junk.log").write_text("nope\n")

    counts = click_counts(days=7)
    assert counts == {"a": 3, "b": 1}


def test_image_id_matches_page_script():
    assert image_id("https://cdn.example.com/gallery/0f9e.jpg") == "0f9e"
    assert image_id("/uploads/abc") == "abc"


# ───────────────────────── CLI ────────────────────────────────────────
def test_cli_clicks(client, monkeypatch, tmp_path: Path):
    monkeypatch.setitem(app.config, "ANALYTICS_LOG_DIR", str(tmp_path))
    runner = app.test_cli_runner()
    assert "No clicks recorded." in runner.invoke(args=["clicks"]).output

    client.post("/api/click/kitten")
    client.post("/api/click/kitten")
    result = runner.invoke(args=["clicks", "--top", "1"])
    assert result.exit_code == 0
    assert "2  kitten" in result.output


def test_cli_init(fresh_site):
    result = app.test_cli_runner().invoke(args=["init"])
    assert result.exit_code == 0
    assert "Site store ready" in result.output
    assert page.DEFAULT_TAGLINE in result.output


def test_cli_hash_password():
    result = app.test_cli_runner().invoke(
        args=["hash-password", "--password", "s3cret"]
    )
    assert result.exit_code == 0
    line = result.output.strip().splitlines()[-1]
    assert line.startswith("ADMIN_HASH=")
    assert check_password_hash(line.removeprefix("ADMIN_HASH="), "s3cret")
