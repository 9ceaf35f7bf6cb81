"""Nearest-person matching of face feature vectors with ambiguity detection."""

import os
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

import numpy as np
from pydantic import BaseModel, Field

DEFAULT_MATCH_THRESHOLD = float(os.getenv("MATCH_THRESHOLD", "1.0"))
DEFAULT_AMBIGUITY_RATIO = float(os.getenv("AMBIGUITY_RATIO", "0.1"))
DEFAULT_AMBIGUITY_FLOOR = float(os.getenv("AMBIGUITY_FLOOR", "0.1"))
DEFAULT_AGE_WINDOW_YEARS = float(os.getenv("FACE_AGE_WINDOW_YEARS", "10"))
DAYS_PER_YEAR = 365.25


class MatchSettings(BaseModel):
    """Tunable parameters of the match engine."""

    threshold: float = Field(default=DEFAULT_MATCH_THRESHOLD, gt=0)
    ambiguity_ratio: float = Field(default=DEFAULT_AMBIGUITY_RATIO, ge=0)
    ambiguity_floor: float = Field(default=DEFAULT_AMBIGUITY_FLOOR, ge=0)
    age_window_years: float = Field(default=DEFAULT_AGE_WINDOW_YEARS, gt=0)
    max_candidates: int = Field(default=3, ge=2)

    @property
    def age_window(self) -> timedelta:
        return timedelta(days=self.age_window_years * DAYS_PER_YEAR)


@dataclass(frozen=True)
class NoMatch:
    """Nobody in the store is close enough."""


@dataclass(frozen=True)
class Confident:
    """A single person clearly matches."""

    name: str
    distance: float


@dataclass(frozen=True)
class Ambiguous:
    """Two or more people match with distances too close to tell apart."""

    candidates: tuple[tuple[str, float], ...]
    best_distance: float

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.candidates]


MatchOutcome = NoMatch | Confident | Ambiguous


class ComparableSample(Protocol):
    person_name: str
    sample_date: datetime | None

    @property
    def vector(self) -> np.ndarray: ...


def feature_distance(a: np.ndarray, b: np.ndarray) -> float:
    """Euclidean distance between two feature vectors."""
    return float(np.linalg.norm(a - b))


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None) if value.tzinfo is not None else value


def within_age_window(
    target_date: datetime | None,
    sample_date: datetime | None,
    window: timedelta,
) -> bool:
    """
    Return False only when both dates are known and further apart than the window.

    Examples:
        >>> within_age_window(datetime(2020, 1, 1), None, timedelta(days=1))
        True
        >>> within_age_window(datetime(2020, 1, 1), datetime(2000, 1, 1), timedelta(days=3653))
        False

    """
    if target_date is None or sample_date is None:
        return True
    return abs(_naive(target_date) - _naive(sample_date)) <= window


def best_distance_per_person(
    query: np.ndarray,
    samples: Iterable[ComparableSample],
    target_date: datetime | None,
    settings: MatchSettings,
) -> dict[str, float]:
    """Reduce every comparable sample to the minimum distance per person name."""
    window = settings.age_window
    best: dict[str, float] = {}
    for sample in samples:
        if not within_age_window(target_date, sample.sample_date, window):
            continue
        vector = sample.vector
        if vector.shape != query.shape:
            continue
        distance = feature_distance(query, vector)
        current = best.get(sample.person_name)
        if current is None or distance < current:
            best[sample.person_name] = distance
    return best


def match(
    query: np.ndarray,
    samples: Iterable[ComparableSample],
    target_date: datetime | None = None,
    settings: MatchSettings | None = None,
) -> MatchOutcome:
    """
    Find the person a query feature vector belongs to.

    Args:
        query: Feature vector of the detected face
        samples: Known samples to search (usually a store snapshot)
        target_date: Date the query photo was taken, if known
        settings: Threshold, ambiguity margin and age window

    Returns:
        NoMatch when nobody is within the threshold; Confident when a single person remains
        or the runner-up trails by more than max(best * ratio, floor); Ambiguous with the
        closest candidates otherwise.

    """
    settings = settings or MatchSettings()
    query = np.asarray(query, dtype=np.float32).ravel()
    per_person = best_distance_per_person(query, samples, target_date, settings)

    ranked = sorted(
        ((name, distance) for name, distance in per_person.items() if distance <= settings.threshold),
        key=lambda pair: (pair[1], pair[0]),
    )
    if not ranked:
        return NoMatch()

    best_name, best = ranked[0]
    if len(ranked) == 1:
        return Confident(best_name, best)

    margin = max(best * settings.ambiguity_ratio, settings.ambiguity_floor)
    if ranked[1][1] - best > margin:
        return Confident(best_name, best)

    return Ambiguous(tuple(ranked[: settings.max_candidates]), best)
