from __future__ import annotations

from pathlib import Path

import pytest

from trakt_mediator.backend.information_handlers.cache import ResponseCacheStore


class _Clock:
    def __init__(self) -> None:
        self.now = 1_000_000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def cache_store(tmp_path: Path, clock: _Clock) -> ResponseCacheStore:
    return ResponseCacheStore(cache_dir=tmp_path / "cache", clock=clock)


def test_value_expires_after_ttl(cache_store: ResponseCacheStore, clock: _Clock) -> None:
    cache_store.set("k", b'{"a":1}', 60)
    assert cache_store.get("k") == b'{"a":1}'

    clock.now += 60
    assert cache_store.get("k") is None


def test_non_positive_ttl_is_not_stored(cache_store: ResponseCacheStore) -> None:
    cache_store.set("k", b"1", 0)

    assert cache_store.get("k") is None
    assert list(cache_store.cache_dir.glob("*.json")) == []


def test_disk_tier_survives_a_new_instance(tmp_path: Path, cache_store: ResponseCacheStore, clock: _Clock) -> None:
    cache_store.set("trakt:GET:public:https://api.trakt.tv/genres/movies", b"[1,2]", 300)

    reopened = ResponseCacheStore(cache_dir=tmp_path / "cache", clock=clock)
    assert reopened.get("trakt:GET:public:https://api.trakt.tv/genres/movies") == b"[1,2]"


def test_memory_only_store_writes_nothing(tmp_path: Path, clock: _Clock) -> None:
    memory_only = ResponseCacheStore(cache_dir=tmp_path / "unused", persist=False, clock=clock)
    memory_only.set("k", b"1", 30)

    assert memory_only.get("k") == b"1"
    assert not (tmp_path / "unused").exists()


def test_prune_removes_expired_files(cache_store: ResponseCacheStore, clock: _Clock) -> None:
    cache_store.set("short", b"1", 10)
    cache_store.set("long", b"2", 1000)
    clock.now += 100

    assert cache_store.prune() == 1
    assert cache_store.get("long") == b"2"
    assert len(list(cache_store.cache_dir.glob("*.json"))) == 1


def test_corrupt_disk_entry_is_a_miss(cache_store: ResponseCacheStore) -> None:
    cache_store.set("k", b"1", 60)
    cache_store.clear_memory()
    for file in cache_store.cache_dir.glob("*.json"):
        file.write_text("{not json", encoding="utf-8")

    assert cache_store.get("k") is None


def test_delete_and_clear(cache_store: ResponseCacheStore) -> None:
    cache_store.set("a", b"1", 60)
    cache_store.set("b", b"2", 60)

    cache_store.delete("a")
    assert cache_store.get("a") is None

    cache_store.clear_memory()
    cache_store.clear_disk()
    assert cache_store.get("b") is None
