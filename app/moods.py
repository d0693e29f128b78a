"""Mood bucket definitions and the rule table used to classify movies."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Sequence

from .errors import ClassificationError
from .utils import slugify

if TYPE_CHECKING:
    from .models import Movie


RULESET_VERSION = 1
DEFAULT_BUCKET = "Unclassified"


@dataclass(frozen=True)
class MoodBucket:
    """Describes a mood bucket exposed by the moods endpoint."""

    name: str
    description: str

    @property
    def slug(self) -> str:
        return slugify(self.name)


@dataclass(frozen=True)
class MoodRule:
    """Assigns ``bucket`` when every declared constraint holds.

    ``genres`` and ``keywords`` match when at least one entry overlaps with
    the movie; an empty collection means the constraint is not declared.
    """

    bucket: str
    genres: frozenset[str] = frozenset()
    min_rating: float | None = None
    keywords: frozenset[str] = frozenset()

    def matches(self, movie: "Movie") -> bool:
        if self.genres:
            movie_genres = {genre.casefold() for genre in movie.genres}
            if not movie_genres & {genre.casefold() for genre in self.genres}:
                return False
        if self.min_rating is not None:
            if movie.rating is None or movie.rating < self.min_rating:
                return False
        if self.keywords:
            if not _descriptor_words(movie) & {word.casefold() for word in self.keywords}:
                return False
        return True


MOOD_BUCKETS: tuple[MoodBucket, ...] = (
    MoodBucket("Uplifting", "Light, funny and feel-good picks that leave you smiling."),
    MoodBucket("Heartfelt", "Romances and dramas with real emotional weight."),
    MoodBucket("Thrilling", "Tense action, crime and thrillers for edge-of-seat nights."),
    MoodBucket("Spooky", "Horror worth turning the lights off for."),
    MoodBucket("Mind-Bending", "Science fiction and mysteries that reward attention."),
    MoodBucket("Adventurous", "Big journeys through fantasy worlds and open frontiers."),
    MoodBucket("Thought-Provoking", "Documentaries and history that stay with you."),
    MoodBucket("Cozy", "Warm, gentle stories for a blanket and a hot drink."),
    MoodBucket("Acclaimed", "The very highest rated titles in the catalog."),
    MoodBucket(DEFAULT_BUCKET, "Everything that does not fit another mood yet."),
)

MOOD_RULES: tuple[MoodRule, ...] = (
    MoodRule(
        "Uplifting",
        genres=frozenset({"Comedy", "Family", "Animation", "Musical"}),
        min_rating=6.0,
    ),
    MoodRule("Heartfelt", genres=frozenset({"Romance", "Drama"}), min_rating=6.5),
    MoodRule(
        "Thrilling",
        genres=frozenset({"Thriller", "Action", "Crime"}),
        min_rating=6.0,
    ),
    MoodRule("Spooky", genres=frozenset({"Horror"}), min_rating=5.0),
    MoodRule(
        "Mind-Bending",
        genres=frozenset({"Science Fiction", "Mystery"}),
        min_rating=6.5,
    ),
    MoodRule(
        "Adventurous",
        genres=frozenset({"Adventure", "Fantasy", "Western"}),
        min_rating=6.0,
    ),
    MoodRule(
        "Thought-Provoking",
        genres=frozenset({"Documentary", "History", "War"}),
        min_rating=6.5,
    ),
    MoodRule(
        "Cozy",
        min_rating=5.0,
        keywords=frozenset({"heartwarming", "cozy", "friendship", "holiday", "christmas"}),
    ),
    MoodRule("Acclaimed", min_rating=8.5),
)

BUCKET_NAMES: tuple[str, ...] = tuple(bucket.name for bucket in MOOD_BUCKETS)

_WORD_RE = re.compile(r"[\w']+")


def _descriptor_words(movie: "Movie") -> set[str]:
    words = {word.casefold() for word in _WORD_RE.findall(movie.synopsis or "")}
    for keyword in movie.keywords:
        words.add(keyword.casefold())
        words.update(word.casefold() for word in _WORD_RE.findall(keyword))
    return words


def classify(movie: "Movie", rules: Sequence[MoodRule] = MOOD_RULES) -> frozenset[str]:
    """Return the mood buckets for ``movie``; never empty."""

    labels = frozenset(rule.bucket for rule in rules if rule.matches(movie))
    return labels or frozenset({DEFAULT_BUCKET})


def validate_rules(
    rules: Sequence[MoodRule],
    buckets: Sequence[MoodBucket] = MOOD_BUCKETS,
) -> None:
    """Raise :class:`ClassificationError` when the rule table is unusable."""

    names = [bucket.name for bucket in buckets]
    if DEFAULT_BUCKET not in names:
        raise ClassificationError(f"The {DEFAULT_BUCKET!r} bucket must be defined")
    if len(set(names)) != len(names):
        raise ClassificationError("Mood bucket names must be unique")
    if not rules:
        raise ClassificationError("The mood rule table is empty")
    for index, rule in enumerate(rules):
        if rule.bucket not in names:
            raise ClassificationError(
                f"Rule {index} targets unknown mood bucket {rule.bucket!r}"
            )
        if rule.bucket == DEFAULT_BUCKET:
            raise ClassificationError(
                f"Rule {index} targets the catch-all bucket {DEFAULT_BUCKET!r}"
            )
        if not (rule.genres or rule.keywords or rule.min_rating is not None):
            raise ClassificationError(f"Rule {index} ({rule.bucket}) has no constraints")
        if rule.min_rating is not None and not 0 <= rule.min_rating <= 10:
            raise ClassificationError(
                f"Rule {index} ({rule.bucket}) has rating threshold outside 0-10"
            )


def order_buckets(labels: Iterable[str]) -> list[str]:
    """Sort labels in the order buckets are declared."""

    positions = {name: index for index, name in enumerate(BUCKET_NAMES)}
    return sorted(set(labels), key=lambda name: (positions.get(name, len(positions)), name))


def find_bucket(name: str) -> MoodBucket | None:
    """Resolve a bucket by exact name, case-insensitive name or slug."""

    for bucket in MOOD_BUCKETS:
        if name == bucket.name or name.casefold() == bucket.name.casefold():
            return bucket
    slug = slugify(name)
    for bucket in MOOD_BUCKETS:
        if slug and slug == bucket.slug:
            return bucket
    return None
