from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from trakt_mediator.backend.information_handlers.models import (
    HistoryRecord,
    MediaType,
    MovieHistoryItem,
    ShowHistoryItem,
    parse_history,
    parse_history_item,
)


def test_history_items_resolve_to_tagged_union() -> None:
    movie = parse_history_item({"last_watched_at": "2024-02-01T12:00:00.000Z", "movie": {"title": "Heat", "ids": {"imdb": "tt0113277", "tmdb": 949}}})
    show = parse_history_item({"show": {"title": "Dark", "ids": {"tmdb": 70523}}})

    assert isinstance(movie, MovieHistoryItem)
    assert isinstance(show, ShowHistoryItem)
    assert movie.media_type is MediaType.MOVIE
    assert show.media_type is MediaType.SHOW
    assert movie.external_id == "tt0113277"
    assert show.external_id == "tmdb:show:70523"
    assert movie.watched_at == datetime(2024, 2, 1, 12, tzinfo=timezone.utc)
    assert show.watched_at is None


def test_item_without_media_block_is_rejected() -> None:
    with pytest.raises(ValidationError):
        parse_history_item({"episode": {"title": "Pilot"}})


def test_parse_history_skips_unidentifiable_entries() -> None:
    items = parse_history(
        [
            {"movie": {"title": "Kept", "ids": {"imdb": "tt1"}}},
            {"movie": {"title": "No ids", "ids": {"trakt": 5}}},
            {"neither": True},
        ]
    )

    assert [item.title for item in items] == ["Kept"]


def test_parse_history_rejects_non_list_payload() -> None:
    assert parse_history(None) == []
    with pytest.raises(ValueError):
        parse_history({"movie": {}})


def test_history_record_from_item_keeps_both_ids() -> None:
    item = parse_history_item({"movie": {"title": "Heat", "ids": {"imdb": "tt0113277", "tmdb": 949}}})

    record = HistoryRecord.from_item("bob", item)

    assert (record.external_id, record.imdb_id, record.tmdb_id) == ("tt0113277", "tt0113277", "949")
    assert record.media_type is MediaType.MOVIE


@pytest.mark.parametrize(
    ("alias", "expected"),
    [
        ("movie", MediaType.MOVIE),
        ("Movies", MediaType.MOVIE),
        ("series", MediaType.SHOW),
        ("show", MediaType.SHOW),
        ("shows", MediaType.SHOW),
        ("tv", MediaType.SHOW),
        (MediaType.SHOW, MediaType.SHOW),
    ],
)
def test_media_type_aliases(alias: str, expected: MediaType) -> None:
    assert MediaType.from_alias(alias) is expected


def test_media_type_plural_segment() -> None:
    assert MediaType.MOVIE.plural == "movies"
    assert MediaType.SHOW.plural == "shows"
