"""Tests for the pure GeoMatcher: eligibility and score monotonicity."""

import pytest

from standby.services.geo import (
    BookingRequirement,
    Candidate,
    GeoMatcher,
    Location,
    haversine_km,
)
from standby.services.policy import MatchingPolicy

PARIS = Location(48.8566, 2.3522)
REQ = BookingRequirement(booking_id=1, category="cleaning", location=PARIS)


def _candidate(provider_id=1, lat=48.8566, lon=2.3522, **kw) -> Candidate:
    kw.setdefault("radius_km", 20.0)
    kw.setdefault("categories", frozenset({"cleaning"}))
    kw.setdefault("category_experience", 10)
    kw.setdefault("average_rating", 4.0)
    return Candidate(provider_id=provider_id, location=Location(lat, lon), **kw)


def test_haversine_known_distance():
    """Paris to London is roughly 344 km."""
    london = Location(51.5074, -0.1278)
    assert haversine_km(PARIS, london) == pytest.approx(343.5, abs=2.0)
    assert haversine_km(PARIS, PARIS) == 0.0


def test_eligible_candidate():
    assert GeoMatcher().is_eligible(REQ, _candidate())


@pytest.mark.parametrize(
    "overrides",
    [
        {"categories": frozenset({"plumbing"})},
        {"is_approved": False},
        {"is_active": False},
        {"is_available": False},
        {"lat": 49.5, "radius_km": 20.0},  # ~70 km away
    ],
)
def test_ineligible_candidates(overrides):
    assert not GeoMatcher().is_eligible(REQ, _candidate(**overrides))


def test_excluded_provider_is_ineligible():
    assert not GeoMatcher().is_eligible(REQ, _candidate(provider_id=7), excluded={7})


def test_perfect_candidate_scores_full_marks():
    assert GeoMatcher().score(REQ, _candidate()) == 100.0


def test_closer_candidate_scores_at_least_as_high():
    matcher = GeoMatcher()
    near = _candidate(lat=48.86, lon=2.36)
    far = _candidate(lat=48.95, lon=2.45)
    assert matcher.distance_km(REQ, near) < matcher.distance_km(REQ, far)
    assert matcher.score(REQ, near) >= matcher.score(REQ, far)


def test_higher_rated_candidate_scores_at_least_as_high():
    matcher = GeoMatcher()
    for low, high in [(3.0, 4.0), (4.0, 4.5), (4.5, 5.0), (4.9, 5.0)]:
        assert matcher.score(REQ, _candidate(average_rating=high)) >= matcher.score(
            REQ, _candidate(average_rating=low)
        )


def test_experienced_candidate_scores_at_least_as_high():
    matcher = GeoMatcher()
    novice = _candidate(category_experience=0)
    veteran = _candidate(category_experience=50)
    assert matcher.score(REQ, veteran) > matcher.score(REQ, novice)


def test_all_else_equal_monotonicity_grid():
    """Closer + better rated + more experienced never loses."""
    matcher = GeoMatcher()
    best = _candidate(lat=48.86, average_rating=4.8, category_experience=20)
    worst = _candidate(lat=48.96, average_rating=3.5, category_experience=1)
    assert matcher.score(REQ, best) >= matcher.score(REQ, worst)


def test_score_is_clamped_and_policy_driven():
    policy = MatchingPolicy(distance_penalty_max=150.0, inexperience_penalty=0.0)
    far = _candidate(lat=49.0, radius_km=20.0)
    assert GeoMatcher(policy).score(REQ, far) == 0.0

    generous = MatchingPolicy(rating_bonus_per_point=50.0, rating_bonus_max=30.0)
    top = _candidate(average_rating=5.0)
    # capped at 100 even with a bonus
    assert GeoMatcher(generous).score(REQ, top) == 100.0


def test_rating_bonus_is_capped():
    policy = MatchingPolicy(distance_penalty_max=40.0, rating_bonus_per_point=5.0, rating_bonus_max=10.0)
    matcher = GeoMatcher(policy)
    # 10 km out of 20 km radius -> 20 point penalty
    base = _candidate(lat=48.8566 + 10 / 111.2, average_rating=4.0)
    boosted = _candidate(lat=48.8566 + 10 / 111.2, average_rating=5.0)
    assert matcher.score(REQ, boosted) - matcher.score(REQ, base) == pytest.approx(5.0, abs=0.01)
