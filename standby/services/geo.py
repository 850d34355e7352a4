"""
GeoMatcher — pure eligibility predicate and compatibility score between a
booking and a candidate provider.

No I/O happens here.  The score is monotone by construction: every term
is a non-increasing function of distance and a non-decreasing function of
rating and category experience, and the final clamp preserves ordering.
"""

from __future__ import annotations

import math
from collections.abc import Collection
from dataclasses import dataclass, field

from standby.services.policy import MatchingPolicy

EARTH_RADIUS_KM = 6371.0088


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class BookingRequirement:
    """What a substitute has to satisfy for one booking."""

    booking_id: int
    category: str
    location: Location


@dataclass(frozen=True)
class Candidate:
    """A provider as seen by the matcher (directory snapshot)."""

    provider_id: int
    location: Location
    radius_km: float
    categories: frozenset[str] = field(default_factory=frozenset)
    category_experience: int = 0
    average_rating: float | None = None
    is_approved: bool = True
    is_active: bool = True
    is_available: bool = True


def haversine_km(a: Location, b: Location) -> float:
    """Great-circle distance between two coordinates, in kilometres."""
    lat1, lon1 = math.radians(a.latitude), math.radians(a.longitude)
    lat2, lon2 = math.radians(b.latitude), math.radians(b.longitude)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


class GeoMatcher:
    def __init__(self, policy: MatchingPolicy | None = None) -> None:
        self.policy = policy or MatchingPolicy()

    def distance_km(self, requirement: BookingRequirement, candidate: Candidate) -> float:
        return haversine_km(requirement.location, candidate.location)

    def is_eligible(
        self,
        requirement: BookingRequirement,
        candidate: Candidate,
        excluded: Collection[int] = (),
    ) -> bool:
        """Static eligibility: status flags, category, and radius coverage."""
        if candidate.provider_id in excluded:
            return False
        if not (candidate.is_approved and candidate.is_active and candidate.is_available):
            return False
        if requirement.category not in candidate.categories:
            return False
        return self.distance_km(requirement, candidate) <= candidate.radius_km

    def score(self, requirement: BookingRequirement, candidate: Candidate) -> float:
        """Compatibility score in ``[0, 100]``, rounded to two decimals.

        100, minus a distance penalty proportional to ``distance / radius``
        (capped), minus a flat penalty below the experience threshold, plus a
        capped bonus for rating above the platform average.
        """
        p = self.policy
        distance = self.distance_km(requirement, candidate)
        if candidate.radius_km > 0:
            ratio = min(distance / candidate.radius_km, 1.0)
        else:
            ratio = 1.0 if distance > 0 else 0.0
        distance_penalty = p.distance_penalty_max * ratio

        inexperience_penalty = 0.0
        if candidate.category_experience < p.inexperience_threshold:
            inexperience_penalty = p.inexperience_penalty

        rating_bonus = 0.0
        if candidate.average_rating is not None:
            above = candidate.average_rating - p.platform_average_rating
            if above > 0:
                rating_bonus = min(p.rating_bonus_max, above * p.rating_bonus_per_point)

        raw = 100.0 - distance_penalty - inexperience_penalty + rating_bonus
        return round(max(0.0, min(100.0, raw)), 2)
