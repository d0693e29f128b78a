from datetime import datetime, timedelta, timezone

from app.utils import as_naive_utc, normalize_genre, parse_year, slugify


def test_slugify_basic():
    assert slugify("Thought-Provoking!") == "thought-provoking"


def test_normalize_genre_aliases_and_casing():
    assert normalize_genre("sci-fi") == "Science Fiction"
    assert normalize_genre("  film   noir ") == "Film Noir"
    assert normalize_genre("TV movie") == "TV Movie"
    assert normalize_genre("   ") == ""


def test_parse_year_from_dates():
    assert parse_year("2001-05-04") == 2001
    assert parse_year(1999) == 1999
    assert parse_year("unknown") is None
    assert parse_year(None) is None


def test_as_naive_utc_converts_offsets():
    aware = datetime(2024, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    assert as_naive_utc(aware) == datetime(2024, 1, 1, 10, 0)
    naive = datetime(2024, 1, 1, 12, 0)
    assert as_naive_utc(naive) is naive
