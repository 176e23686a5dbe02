"""Unit tests for the bounded image cache."""

import pytest

from support_pipeline.cache import image_cache as image_cache_module
from support_pipeline.cache.image_cache import ImageCache, get_image_cache
from support_pipeline.models.mail_models import Attachment


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def png(size: int = 10) -> Attachment:
    return Attachment(filename="foto.png", content_type="image/png", content=b"x" * size)


@pytest.fixture
def clock():
    return FakeClock()


def test_put_keeps_only_images(clock):
    cache = ImageCache(clock=clock)
    pdf = Attachment(filename="nota.pdf", content_type="application/pdf", content=b"%PDF")

    assert cache.put("<a@x>", [png(), pdf]) == 1
    assert cache.get("<a@x>") == [png()]


def test_put_without_images_stores_nothing(clock):
    cache = ImageCache(clock=clock)

    assert cache.put("<a@x>", [Attachment(content_type="text/plain", content=b"hi")]) == 0
    assert len(cache) == 0


def test_oversize_and_empty_images_dropped(clock):
    cache = ImageCache(max_bytes=100, clock=clock)

    assert cache.put("<a@x>", [png(101), png(0), png(100)]) == 1


def test_entries_expire(clock):
    cache = ImageCache(ttl_seconds=60, clock=clock)
    cache.put("<a@x>", [png()])

    clock.now += 59
    assert "<a@x>" in cache

    clock.now += 1
    assert cache.get("<a@x>") is None
    assert len(cache) == 0


def test_least_recently_used_evicted(clock):
    cache = ImageCache(max_entries=2, clock=clock)
    cache.put("<a@x>", [png()])
    cache.put("<b@x>", [png()])
    cache.get("<a@x>")

    cache.put("<c@x>", [png()])

    assert "<a@x>" in cache
    assert "<b@x>" not in cache
    assert "<c@x>" in cache


def test_expired_entries_cleared_before_eviction(clock):
    cache = ImageCache(max_entries=2, ttl_seconds=10, clock=clock)
    cache.put("<old@x>", [png()])
    clock.now += 5
    cache.put("<a@x>", [png()])
    clock.now += 6

    cache.put("<b@x>", [png()])

    assert len(cache) == 2
    assert "<a@x>" in cache


def test_discard(clock):
    cache = ImageCache(clock=clock)
    cache.put("<a@x>", [png()])

    cache.discard("<a@x>")
    cache.discard("<missing@x>")

    assert len(cache) == 0


def test_invalid_size():
    with pytest.raises(ValueError):
        ImageCache(max_entries=0)


def test_process_wide_instance(monkeypatch):
    monkeypatch.setattr(image_cache_module, "_image_cache", None)

    first = get_image_cache(max_entries=5)
    second = get_image_cache(max_entries=50)

    assert first is second
    assert first.max_entries == 5
