"""Utility helpers for the Rasa catalog service."""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any


GENRE_ALIASES: dict[str, str] = {
    "sci-fi": "Science Fiction",
    "scifi": "Science Fiction",
    "sf": "Science Fiction",
    "science-fiction": "Science Fiction",
    "rom-com": "Romance",
    "romcom": "Romance",
    "doc": "Documentary",
    "docs": "Documentary",
    "animated": "Animation",
    "kids": "Family",
}


def slugify(value: str) -> str:
    """Return a URL-friendly slug."""

    value = unicodedata.normalize("NFKD", value)
    value = value.encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value)
    value = value.strip("-")
    value = re.sub(r"-+", "-", value)
    return value.lower()


def normalize_genre(value: str) -> str:
    """Return the canonical spelling of a genre tag."""

    cleaned = " ".join(str(value).split())
    if not cleaned:
        return ""
    alias = GENRE_ALIASES.get(cleaned.casefold())
    if alias:
        return alias
    return " ".join(
        word if word.isupper() and len(word) > 1 else word.capitalize()
        for word in cleaned.split(" ")
    )


def parse_year(value: Any) -> int | None:
    """Extract a plausible release year from ints or date-like strings."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if not value:
        return None
    match = re.search(r"(18|19|20|21)\d{2}", str(value))
    if not match:
        return None
    return int(match.group(0))


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, as stored in SQLite."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Convert aware datetimes to naive UTC; naive values are assumed UTC."""

    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
