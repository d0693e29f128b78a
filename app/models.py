"""Pydantic models describing catalog movies."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from .errors import MalformedRecordError
from .moods import order_buckets
from .utils import as_naive_utc, normalize_genre, parse_year


def _split_tags(value: object) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return value.split(",")
    if isinstance(value, (list, tuple, set, frozenset)):
        tags: list[str] = []
        for entry in value:
            if isinstance(entry, dict):
                entry = entry.get("name")
            if entry is None:
                continue
            tags.append(str(entry))
        return tags
    raise ValueError("Expected a comma separated string or a list of strings")


class Movie(BaseModel):
    """A movie as stored in the catalog."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    external_id: str = Field(
        min_length=1,
        max_length=128,
        validation_alias=AliasChoices("external_id", "externalId", "id"),
    )
    title: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("title", "name"),
    )
    release_year: int | None = Field(
        default=None,
        ge=1870,
        le=2100,
        validation_alias=AliasChoices(
            "release_year", "releaseYear", "year", "release_date", "releaseDate"
        ),
    )
    genres: tuple[str, ...] = ()
    keywords: tuple[str, ...] = Field(
        default=(),
        validation_alias=AliasChoices("keywords", "descriptors", "tags"),
    )
    rating: float | None = Field(
        default=None,
        ge=0.0,
        le=10.0,
        validation_alias=AliasChoices("rating", "vote_average", "voteAverage"),
    )
    synopsis: str | None = Field(
        default=None,
        validation_alias=AliasChoices("synopsis", "overview", "description"),
    )
    updated_at: datetime = Field(
        validation_alias=AliasChoices(
            "updated_at", "updatedAt", "last_updated", "lastUpdated"
        ),
    )
    mood_labels: frozenset[str] = Field(
        default=frozenset(),
        validation_alias=AliasChoices("mood_labels", "moods"),
    )

    @field_validator("external_id", mode="before")
    @classmethod
    def _coerce_identifier(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("release_year", mode="before")
    @classmethod
    def _parse_release_year(cls, value: object) -> object:
        if value is None or value == "":
            return None
        year = parse_year(value)
        if year is None:
            raise ValueError("Release year could not be parsed")
        return year

    @field_validator("genres", mode="before")
    @classmethod
    def _normalise_genres(cls, value: object) -> tuple[str, ...]:
        cleaned = {normalize_genre(tag) for tag in _split_tags(value)}
        return tuple(sorted(tag for tag in cleaned if tag))

    @field_validator("keywords", mode="before")
    @classmethod
    def _normalise_keywords(cls, value: object) -> tuple[str, ...]:
        cleaned = {" ".join(tag.split()).lower() for tag in _split_tags(value)}
        return tuple(sorted(tag for tag in cleaned if tag))

    @field_validator("synopsis", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    @field_validator("updated_at")
    @classmethod
    def _to_naive_utc(cls, value: datetime) -> datetime:
        return as_naive_utc(value)

    @classmethod
    def from_source(cls, payload: Any) -> "Movie":
        """Validate a raw source record, raising :class:`MalformedRecordError`."""

        if not isinstance(payload, dict):
            raise MalformedRecordError(
                f"Expected a movie object, got {type(payload).__name__}"
            )
        external_id = payload.get("id") or payload.get("externalId") or payload.get("external_id")
        record = {key: value for key, value in payload.items() if key not in {"moods", "mood_labels"}}
        try:
            return cls.model_validate(record)
        except ValidationError as exc:
            fields = ", ".join(
                ".".join(str(part) for part in error["loc"]) or "record"
                for error in exc.errors()
            )
            raise MalformedRecordError(
                f"Invalid movie record ({fields})",
                external_id=str(external_id) if external_id else None,
            ) from exc

    def classification_key(self) -> tuple[object, ...]:
        """Fields the mood classifier reads."""

        return (self.genres, self.keywords, self.rating, self.synopsis)

    def content_key(self) -> tuple[object, ...]:
        """Every source-provided field, used to detect no-op upserts."""

        return (
            self.title,
            self.release_year,
            self.updated_at,
            *self.classification_key(),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.external_id,
            "title": self.title,
            "year": self.release_year,
            "genres": list(self.genres),
            "keywords": list(self.keywords),
            "rating": self.rating,
            "synopsis": self.synopsis,
            "moods": order_buckets(self.mood_labels),
            "updatedAt": self.updated_at.isoformat(),
        }
