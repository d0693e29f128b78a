from __future__ import annotations

from datetime import datetime

import pytest

from app.errors import MalformedRecordError
from app.models import Movie


def test_from_source_accepts_common_aliases() -> None:
    movie = Movie.from_source(
        {
            "id": 42,
            "name": "  The Matrix ",
            "release_date": "1999-03-31",
            "genres": "sci-fi, Action, action",
            "vote_average": "8.7",
            "overview": "  A hacker learns the truth.  ",
            "descriptors": ["Simulation", " chosen  one "],
            "updatedAt": "2024-01-01T12:00:00+02:00",
        }
    )

    assert movie.external_id == "42"
    assert movie.title == "The Matrix"
    assert movie.release_year == 1999
    assert movie.genres == ("Action", "Science Fiction")
    assert movie.keywords == ("chosen one", "simulation")
    assert movie.rating == pytest.approx(8.7)
    assert movie.synopsis == "A hacker learns the truth."
    assert movie.updated_at == datetime(2024, 1, 1, 10, 0)


def test_from_source_reads_genre_objects() -> None:
    movie = Movie.from_source(
        {
            "id": "tt1",
            "title": "Heat",
            "genres": [{"id": 80, "name": "Crime"}, {"id": 18, "name": "drama"}],
            "updated_at": "2024-01-01T00:00:00",
        }
    )

    assert movie.genres == ("Crime", "Drama")


def test_from_source_ignores_incoming_mood_labels() -> None:
    movie = Movie.from_source(
        {
            "id": "tt1",
            "title": "Heat",
            "moods": ["Spooky"],
            "updated_at": "2024-01-01T00:00:00",
        }
    )

    assert movie.mood_labels == frozenset()


@pytest.mark.parametrize(
    "payload",
    [
        {"id": "tt1", "updatedAt": "2024-01-01T00:00:00Z"},
        {"id": "tt1", "title": "No Timestamp"},
        {"id": "tt1", "title": "Too Good", "rating": 11, "updatedAt": "2024-01-01T00:00:00Z"},
        {"id": "tt1", "title": "Odd Year", "year": "someday", "updatedAt": "2024-01-01T00:00:00Z"},
        {"id": "tt1", "title": "Numeric Genres", "genres": 5, "updatedAt": "2024-01-01T00:00:00Z"},
        {"id": "tt1", "title": "Object Genres", "genres": {"name": "Comedy"}, "updatedAt": "2024-01-01T00:00:00Z"},
        {"id": "tt1", "title": "Numeric Keywords", "keywords": 42, "updatedAt": "2024-01-01T00:00:00Z"},
    ],
)
def test_from_source_rejects_invalid_records(payload) -> None:
    with pytest.raises(MalformedRecordError) as excinfo:
        Movie.from_source(payload)

    assert excinfo.value.external_id == "tt1"


def test_from_source_rejects_non_objects() -> None:
    with pytest.raises(MalformedRecordError, match="Expected a movie object"):
        Movie.from_source(["tt1", "Heat"])


def test_to_payload_orders_moods_by_declaration() -> None:
    movie = Movie(
        external_id="tt1",
        title="Inception",
        updated_at=datetime(2024, 1, 1),
        mood_labels=frozenset({"Acclaimed", "Thrilling", "Mind-Bending"}),
    )

    payload = movie.to_payload()

    assert payload["moods"] == ["Thrilling", "Mind-Bending", "Acclaimed"]
    assert payload["updatedAt"] == "2024-01-01T00:00:00"
