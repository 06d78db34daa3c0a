"""tests/test_smoke.py"""

import pytest


@pytest.mark.parametrize(
    "path",
    [
        "/",                 # public page
        "/admin/login",      # login form
        "/admin/login.html",
        "/api/site-data",
        "/api/images",
        "/api/views",
        "/robots.txt",
    ],
)
def test_public_routes_ok(client, path):
    """Each public endpoint should return a *successful* HTTP status."""
    rv = client.get(path)
    assert rv.status_code == 200


def test_index_renders_record(client, fresh_site, admin):
    client.post(
        "/api/update-site-data",
        json={
            "tagline": "Hello *there*",
            "links": [
                {"name": "Mastodon", "url": "https://example.social/@me",
                 "icon": "🐘", "shortCaption": "toots"},
            ],
        },
        headers=admin,
    )
    html = client.get("/").data.decode()
    assert "Hello <em>there</em>" in html          # tagline is inline markdown
    assert "https://example.social/@me" in html
    assert "toots" in html
    assert 'id="floatingGallery"' in html
    assert '"interval": 4000' in html               # carousel timing injected


def test_security_headers(client):
    rv = client.get("/")
    assert rv.headers["X-Frame-Options"] == "DENY"
    assert rv.headers["X-Content-Type-Options"] == "nosniff"
