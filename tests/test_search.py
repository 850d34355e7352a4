"""Tests for ReplacementSearch: ranking, availability filtering, bounded attempts."""

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from conftest import TODAY
from standby.models.absence import Absence
from standby.models.booking import Booking, BookingStatus
from standby.models.replacement import NO_CANDIDATE_REASON, Replacement, ReplacementStatus
from standby.services.engine import build_engine
from standby.services.stores import SqlProviderDirectory

S = ReplacementStatus
SLOT = datetime(2024, 6, 11, 10, 0, tzinfo=timezone.utc)
KM_NORTH = 1 / 111.2  # degrees of latitude per km


async def _absence_with_replacement(workflow, seed, approver_id, **booking_kw):
    absent = await seed.provider("Absent")
    booking = await seed.booking(absent.id, **booking_kw)
    absence = await workflow.declare_absence(absent.id, date(2024, 6, 10), date(2024, 6, 12), "illness")
    await workflow.approve(absence.id, approver_id)
    detail = await workflow.get_absence_detail(absence.id)
    return absent, booking, absence, detail.replacements[0]


# ── Ranking ─────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_find_candidates_filters_and_orders(engine, workflow, seed, admin):
    absent = await seed.provider("Absent")
    booking = await seed.booking(absent.id)

    best = await seed.provider("Best")
    farther = await seed.provider("Farther", latitude=48.8566 + 10 * KM_NORTH)
    await seed.provider("Wrong category", categories={"plumbing": 30})
    await seed.provider("Out of radius", latitude=48.8566 + 30 * KM_NORTH)
    await seed.provider("Unapproved", is_approved=False)
    await seed.provider("Paused", is_available=False)
    busy = await seed.provider("Busy")
    await seed.booking(busy.id, scheduled_at=SLOT + timedelta(hours=1))
    away = await seed.provider("Away")
    away_absence = await workflow.declare_absence(away.id, date(2024, 6, 11), date(2024, 6, 11), "leave")
    await workflow.approve(away_absence.id, admin.id)

    ranked = await engine.search.find_candidates(booking.id, absent.id)

    assert [c.provider_id for c in ranked] == [best.id, farther.id]
    assert ranked[0].score == 100.0
    assert ranked[0].score > ranked[1].score
    assert ranked[1].distance_km == pytest.approx(10.0, abs=0.1)


@pytest.mark.asyncio
async def test_ties_break_on_rating_then_weekly_load(engine, seed):
    absent = await seed.provider("Absent")
    booking = await seed.booking(absent.id)

    loaded = await seed.provider("Loaded", average_rating=3.8)
    idle = await seed.provider("Idle", average_rating=3.8)
    rated = await seed.provider("Rated", average_rating=3.9)
    # Same week, no overlap with the slot.
    await seed.booking(loaded.id, scheduled_at=SLOT + timedelta(days=1))
    await seed.booking(loaded.id, scheduled_at=SLOT + timedelta(days=2))

    ranked = await engine.search.find_candidates(booking.id, absent.id)

    assert {c.score for c in ranked} == {100.0}
    assert [c.provider_id for c in ranked] == [rated.id, idle.id, loaded.id]
    assert ranked[2].weekly_load == 2


@pytest.mark.asyncio
async def test_find_candidates_respects_max_results(engine, seed):
    absent = await seed.provider("Absent")
    booking = await seed.booking(absent.id)
    for i in range(4):
        await seed.provider(f"Sub {i}")

    ranked = await engine.search.find_candidates(booking.id, absent.id, max_results=2)
    assert len(ranked) == 2


@pytest.mark.asyncio
async def test_provider_held_by_other_proposal_is_unavailable(engine, workflow, seed, admin):
    """A substitute proposed for an overlapping booking is not offered twice."""
    substitute = await seed.provider("Only substitute")
    _, _, _, first = await _absence_with_replacement(workflow, seed, admin.id)
    assert (await workflow.get_replacement(first.id)).replacement_provider_id == substitute.id

    other = await seed.provider("Absent 2")
    booking = await seed.booking(other.id, scheduled_at=SLOT + timedelta(minutes=30))
    ranked = await engine.search.find_candidates(booking.id, other.id)
    assert ranked == []


@pytest.mark.asyncio
async def test_long_booking_started_the_day_before_blocks_candidate(engine, seed):
    absent = await seed.provider("Absent")
    booking = await seed.booking(absent.id)
    overnight = await seed.provider("Overnight")
    # 16h shift from 20:00 the evening before, still running at 10:00.
    await seed.booking(
        overnight.id, scheduled_at=datetime(2024, 6, 10, 20, 0, tzinfo=timezone.utc), duration_minutes=16 * 60
    )

    assert await engine.search.find_candidates(booking.id, absent.id) == []


@pytest.mark.asyncio
async def test_long_held_booking_blocks_candidate(engine, workflow, seed, admin):
    substitute = await seed.provider("Only substitute")
    _, _, _, first = await _absence_with_replacement(
        workflow,
        seed,
        admin.id,
        scheduled_at=datetime(2024, 6, 10, 16, 0, tzinfo=timezone.utc),
        duration_minutes=20 * 60,
    )
    assert (await workflow.get_replacement(first.id)).replacement_provider_id == substitute.id

    other = await seed.provider("Absent 2")
    booking = await seed.booking(other.id)
    assert await engine.search.find_candidates(booking.id, other.id) == []


# ── attempt_assignment ──────────────────────────────────────────────
@pytest.mark.asyncio
async def test_attempt_proposes_top_candidate(workflow, seed, dispatcher, engine, admin):
    substitute = await seed.provider("Substitute")
    _, booking, _, replacement = await _absence_with_replacement(workflow, seed, admin.id)
    await engine.publisher.drain()

    assert replacement.status == S.PROPOSED.value
    assert replacement.replacement_provider_id == substitute.id
    assert replacement.matching_score == 100.0
    assert replacement.search_attempts == 1
    assert replacement.proposal_expires_at is not None
    assert dispatcher.kinds() == ["replacement_proposed"]
    assert dispatcher.sent[0][0] == booking.client_id


@pytest.mark.asyncio
async def test_attempt_is_noop_once_proposed(workflow, seed, dispatcher, engine, admin):
    await seed.provider("Substitute")
    _, _, _, replacement = await _absence_with_replacement(workflow, seed, admin.id)

    again = await workflow.run_search(replacement.id)
    await engine.publisher.drain()

    assert again.status == S.PROPOSED.value
    assert again.matching_score == replacement.matching_score
    assert again.search_attempts == replacement.search_attempts
    assert again.version == replacement.version
    assert dispatcher.kinds().count("replacement_proposed") == 1


@pytest.mark.asyncio
async def test_no_candidate_gives_up_after_cap(workflow, seed, dispatcher, engine, admin):
    """No substitute anywhere: five attempts, then cancelled/no_candidate."""
    _, booking, absence, replacement = await _absence_with_replacement(workflow, seed, admin.id)
    assert replacement.status == S.SEARCHING.value
    assert replacement.search_attempts == 1

    for expected in (2, 3, 4):
        replacement = await workflow.run_search(replacement.id)
        assert replacement.status == S.SEARCHING.value
        assert replacement.search_attempts == expected

    replacement = await workflow.run_search(replacement.id)
    assert replacement.status == S.CANCELLED.value
    assert replacement.cancel_reason == NO_CANDIDATE_REASON
    assert replacement.search_attempts == 5

    # Further attempts change nothing.
    replacement = await workflow.run_search(replacement.id)
    assert replacement.search_attempts == 5

    refreshed = await seed.get(Absence, absence.id)
    assert refreshed.replacements_found_count == 0
    restored = await seed.get(Booking, booking.id)
    assert restored.status == BookingStatus.CONFIRMED.value
    await engine.publisher.drain()
    assert dispatcher.kinds() == ["replacement_cancelled"]


@pytest.mark.asyncio
async def test_concurrent_attempts_propose_once(session_factory, dispatcher, seed, admin):
    engine = build_engine(session_factory, dispatcher, search_on_approval=False, today=lambda: TODAY)
    workflow = engine.workflow
    await seed.provider("Substitute A")
    await seed.provider("Substitute B", latitude=48.8566 + 2 * KM_NORTH)
    _, _, _, replacement = await _absence_with_replacement(workflow, seed, admin.id)
    assert replacement.status == S.PENDING.value

    results = await asyncio.gather(*(engine.search.attempt_assignment(replacement.id) for _ in range(4)))
    await engine.publisher.drain()

    assert sum(1 for r in results if r.target == S.PROPOSED.value and r.changed) == 1
    final = await seed.get(Replacement, replacement.id)
    assert final.status == S.PROPOSED.value
    assert final.search_attempts == 1
    assert dispatcher.kinds() == ["replacement_proposed"]


class _HookedDirectory(SqlProviderDirectory):
    """Runs a one-shot coroutine right before the candidate query."""

    def __init__(self, session, hooks):
        super().__init__(session)
        self.hooks = hooks

    async def find_eligible(self, *args, **kwargs):
        if self.hooks:
            await self.hooks.pop()()
        return await super().find_eligible(*args, **kwargs)


@pytest.mark.asyncio
async def test_result_discarded_when_absence_cancelled_mid_search(session_factory, dispatcher, seed, admin):
    hooks = []
    engine = build_engine(
        session_factory,
        dispatcher,
        directory_factory=lambda session: _HookedDirectory(session, hooks),
        search_on_approval=False,
        today=lambda: TODAY,
    )
    workflow = engine.workflow
    await seed.provider("Substitute")
    _, booking, absence, replacement = await _absence_with_replacement(workflow, seed, admin.id)

    hooks.append(lambda: workflow.cancel(absence.id, "back to work"))
    result = await engine.search.attempt_assignment(replacement.id)
    await engine.publisher.drain()

    assert not result.changed
    final = await seed.get(Replacement, replacement.id)
    assert final.status == S.CANCELLED.value
    assert final.replacement_provider_id is None
    assert final.matching_score is None
    assert "replacement_proposed" not in dispatcher.kinds()
    restored = await seed.get(Booking, booking.id)
    assert restored.status == BookingStatus.CONFIRMED.value
    assert restored.provider_id == booking.provider_id
