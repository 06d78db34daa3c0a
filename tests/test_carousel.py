"""
tests/test_carousel.py
"""
from __future__ import annotations

import pytest

from linkpage.page import (
    CAROUSEL_FADE_MS,
    CAROUSEL_INTERVAL_MS,
    Carousel,
    ManualCarousel,
    ViewCounterClient,
    carousel_config,
)

IMAGES = ["A", "B", "C", "D", "E"]


# ───────────────────────── rotating window ────────────────────────────
def test_initial_window():
    c = Carousel(IMAGES)
    assert list(c.window) == ["A", "B", "C"]
    assert c.cursor == 0
    assert c.candidate() == "D"


def test_one_tick():
    c = Carousel(IMAGES)
    assert c.tick() == ("A", "D")
    assert list(c.window) == ["B", "C", "D"]
    assert c.cursor == 1
    assert c.candidate() == "E"


def test_full_cycle_returns_to_start():
    c = Carousel(IMAGES)
    introduced = [c.tick()[1] for _ in range(5)]
    assert introduced == ["D", "E", "A", "B", "C"]
    assert list(c.window) == ["A", "B", "C"]
    assert c.cursor == 0


@pytest.mark.parametrize("ticks", [1, 4, 13])
def test_window_size_is_constant(ticks):
    c = Carousel(IMAGES)
    for _ in range(ticks):
        c.tick()
        assert len(c.window) == 3


def test_short_sequence():
    c = Carousel(["A", "B"])
    assert list(c.window) == ["A", "B"]
    assert c.tick() == ("A", "B")       # (0 + 3) % 2 == 1
    assert c.cursor == 1


def test_empty_sequence():
    c = Carousel([])
    assert c.empty
    assert c.candidate() is None
    assert c.tick() is None


def test_timing_is_configuration():
    cfg = carousel_config()
    assert cfg == {"window": 3, "interval": CAROUSEL_INTERVAL_MS, "fade": CAROUSEL_FADE_MS}
    assert cfg["fade"] < cfg["interval"]


# ───────────────────────── manual navigation ──────────────────────────
def test_manual_auto_advance():
    m = ManualCarousel(IMAGES, interval=4, now=0)
    assert m.current == "A"
    assert m.tick(3.9) is False
    assert m.tick(4) is True
    assert m.current == "B"


def test_manual_navigation_resets_timer():
    m = ManualCarousel(IMAGES, interval=4, now=0)
    assert m.next(3.5) == "B"
    # the tick that would have fired at t=4 is skipped
    assert m.tick(4) is False
    assert m.current == "B"
    assert m.tick(7.5) is True
    assert m.current == "C"


def test_manual_prev_wraps():
    m = ManualCarousel(IMAGES, interval=4)
    assert m.prev(1) == "E"
    assert m.next(2) == "A"


def test_manual_empty():
    m = ManualCarousel([], interval=4)
    assert m.current is None
    assert m.next(1) is None
    assert m.tick(100) is False


# ───────────────────────── view-once client ───────────────────────────
def test_view_counter_client_counts_once(client):
    fetch = lambda url: client.get(url).get_json()     # noqa: E731
    storage: dict[str, str] = {}
    before = client.get("/api/views").get_json()["views"]

    browser = ViewCounterClient(fetch, storage)
    assert not browser.counted
    assert browser.load() == before + 1
    assert browser.counted
    assert storage["viewCounted"] == "true"

    # reload: same browser only reads
    again = ViewCounterClient(fetch, storage)
    assert again.load() == before + 1
    assert client.get("/api/views").get_json()["views"] == before + 1

    # a second browser counts again
    other = ViewCounterClient(fetch, {})
    assert other.load() == before + 2


def test_view_counter_client_keeps_last_value_on_error():
    calls = []

    def flaky(url):
        calls.append(url)
        if len(calls) > 1:
            raise ConnectionError("offline")
        return {"views": 10}

    storage: dict[str, str] = {}
    browser = ViewCounterClient(flaky, storage)
    assert browser.load() == 10
    assert browser.load() == 10          # error → last good value
    assert calls == ["/api/views?count=true", "/api/views"]


def test_view_counter_client_bad_payload_does_not_mark():
    storage: dict[str, str] = {}
    browser = ViewCounterClient(lambda url: {"error": "Storage failure"}, storage)
    assert browser.load() is None
    assert not browser.counted


def test_page_script_uses_the_same_rotation(client):
    html = client.get("/").data.decode()
    assert '"window": 3' in html
    assert "images[(cursor + CAROUSEL.window) % images.length]" in html
    assert "cursor = (cursor + 1) % images.length" in html
    assert 'const VIEW_MARKER = "viewCounted"' in html
    assert '"/api/views?count=true"' in html
