"""HTTP-level tests: routing, permissions, and the JSON error contract."""

import pytest

from standby.api.v1.deps import get_current_user
from standby.main import app

API = "/api/v1"
WINDOW = {"start_date": "2024-06-10", "end_date": "2024-06-12"}


def _act_as(user):
    async def _override():
        return user

    app.dependency_overrides[get_current_user] = _override


async def _declare(client, provider_id, **fields):
    body = {"provider_id": provider_id, "type": "illness", **WINDOW, **fields}
    return await client.post(f"{API}/absences", json=body)


# ── Absence + replacement flow ──────────────────────────────────────
@pytest.mark.asyncio
async def test_declare_approve_accept_confirm(async_client, seed):
    absent = await seed.provider("Absent")
    substitute = await seed.provider("Substitute")
    booking = await seed.booking(absent.id)

    resp = await _declare(async_client, absent.id, reason="flu")
    assert resp.status_code == 201
    absence = resp.json()
    assert absence["status"] == "pending"
    assert absence["days_count"] == 3

    resp = await async_client.get(f"{API}/absences/{absence['id']}")
    assert [b["id"] for b in resp.json()["affected_bookings"]] == [booking.id]

    resp = await async_client.post(f"{API}/absences/{absence['id']}/approve")
    assert resp.status_code == 200
    assert resp.json()["affected_bookings_count"] == 1

    detail = (await async_client.get(f"{API}/absences/{absence['id']}")).json()
    [replacement] = detail["replacements"]
    assert replacement["status"] == "proposed"
    assert replacement["replacement_provider_id"] == substitute.id

    resp = await async_client.post(f"{API}/replacements/{replacement['id']}/accept")
    assert resp.json()["status"] == "accepted"
    resp = await async_client.post(f"{API}/replacements/{replacement['id']}/confirm")
    assert resp.json()["status"] == "confirmed"

    absence = (await async_client.get(f"{API}/absences/{absence['id']}")).json()["absence"]
    assert absence["replacements_found_count"] == 1


@pytest.mark.asyncio
async def test_preview_and_candidates(async_client, seed):
    absent = await seed.provider("Absent")
    substitute = await seed.provider("Substitute")
    booking = await seed.booking(absent.id)

    resp = await async_client.post(f"{API}/absences/preview", json={"provider_id": absent.id, **WINDOW})
    assert resp.status_code == 200
    assert resp.json()["has_conflicts"] is True
    assert resp.json()["affected_bookings"][0]["reference"] == booking.reference

    resp = await async_client.get(f"{API}/bookings/{booking.id}/candidates")
    assert resp.status_code == 200
    assert [c["provider_id"] for c in resp.json()] == [substitute.id]


@pytest.mark.asyncio
async def test_manual_sweep(async_client):
    resp = await async_client.post(f"{API}/sweep")
    assert resp.status_code == 200
    assert resp.json()["errors"] == 0


# ── Error contract ──────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_domain_errors_map_to_status_and_code(async_client, seed):
    provider = await seed.provider()

    resp = await _declare(async_client, provider.id, type="sabbatical")
    assert resp.status_code == 422
    body = resp.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["success"] is False
    assert "sabbatical" not in body["detail"]
    assert "leave" in body["detail"]

    assert (await _declare(async_client, provider.id)).status_code == 201
    resp = await _declare(async_client, provider.id)
    assert resp.status_code == 409
    assert resp.json()["code"] == "CONFLICT"

    resp = await async_client.get(f"{API}/absences/999")
    assert resp.status_code == 404
    assert resp.json()["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_invalid_transition_is_409(async_client, seed):
    absent = await seed.provider("Absent")
    await seed.provider("Substitute")
    await seed.booking(absent.id)
    absence = (await _declare(async_client, absent.id)).json()
    await async_client.post(f"{API}/absences/{absence['id']}/approve")
    [replacement] = (await async_client.get(f"{API}/replacements", params={"absence_id": absence["id"]})).json()

    resp = await async_client.post(f"{API}/replacements/{replacement['id']}/complete")
    assert resp.status_code == 409
    assert resp.json()["code"] == "INVALID_TRANSITION"

    resp = await async_client.post(f"{API}/absences/{absence['id']}/approve")
    assert resp.status_code == 409
    assert resp.json()["code"] == "INVALID_STATE"


@pytest.mark.asyncio
async def test_staff_must_name_provider(async_client):
    resp = await async_client.post(f"{API}/absences", json={"type": "leave", **WINDOW})
    assert resp.status_code == 422
    assert resp.json()["success"] is False


# ── Permissions ─────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_provider_manages_only_own_absences(async_client, seed):
    own = await seed.provider("Own")
    other = await seed.provider("Other")
    account = await seed.user("own@standby.test", role="provider", provider_id=own.id)
    await _declare(async_client, other.id)

    _act_as(account)
    resp = await async_client.post(f"{API}/absences", json={"type": "leave", **WINDOW})
    assert resp.status_code == 201
    mine = resp.json()
    assert mine["provider_id"] == own.id

    resp = await _declare(async_client, other.id)
    assert resp.status_code == 403
    assert resp.json()["code"] == "PERMISSION_DENIED"

    listed = (await async_client.get(f"{API}/absences")).json()
    assert [a["id"] for a in listed] == [mine["id"]]

    resp = await async_client.post(f"{API}/absences/{mine['id']}/approve")
    assert resp.status_code == 403
    assert resp.json() == {"detail": "Staff privileges required", "success": False}

    resp = await async_client.post(f"{API}/absences/{mine['id']}/cancel", json={"reason": "better"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"


@pytest.mark.asyncio
async def test_only_the_substitute_confirms(async_client, seed):
    absent = await seed.provider("Absent")
    substitute = await seed.provider("Substitute")
    bystander = await seed.provider("Bystander", categories={"plumbing": 5})
    await seed.booking(absent.id)
    absence = (await _declare(async_client, absent.id)).json()
    await async_client.post(f"{API}/absences/{absence['id']}/approve")
    [replacement] = (await async_client.get(f"{API}/absences/{absence['id']}")).json()["replacements"]
    await async_client.post(f"{API}/replacements/{replacement['id']}/accept")

    _act_as(await seed.user("bystander@standby.test", role="provider", provider_id=bystander.id))
    resp = await async_client.post(f"{API}/replacements/{replacement['id']}/confirm")
    assert resp.status_code == 403

    _act_as(await seed.user("sub@standby.test", role="provider", provider_id=substitute.id))
    resp = await async_client.post(f"{API}/replacements/{replacement['id']}/confirm")
    assert resp.status_code == 200
    assert resp.json()["status"] == "confirmed"


@pytest.mark.asyncio
async def test_settings_round_trip(async_client, seed):
    resp = await async_client.get(f"{API}/settings")
    assert resp.status_code == 200
    assert resp.json()["max_search_attempts"] == 5

    resp = await async_client.put(f"{API}/settings", json={"max_search_attempts": 3, "proposal_timeout_hours": 12})
    assert resp.status_code == 200
    assert resp.json()["max_search_attempts"] == 3
    assert resp.json()["proposal_timeout_hours"] == 12

    resp = await async_client.put(f"{API}/settings", json={"max_search_attempts": 0})
    assert resp.status_code == 422

    _act_as(await seed.user("manager@standby.test", role="manager"))
    assert (await async_client.get(f"{API}/settings")).status_code == 403


# ── Auth + health ───────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_login_then_me(async_client, seed):
    await seed.user("login@standby.test", role="manager", password="s3cret-pass")
    app.dependency_overrides.pop(get_current_user)

    resp = await async_client.post(
        f"{API}/auth/login", data={"username": "login@standby.test", "password": "wrong-pass"}
    )
    assert resp.status_code == 401

    resp = await async_client.post(
        f"{API}/auth/login", data={"username": "Login@standby.test", "password": "s3cret-pass"}
    )
    assert resp.status_code == 200
    token = resp.json()["access_token"]

    resp = await async_client.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200
    assert resp.json()["email"] == "login@standby.test"
    assert resp.json()["role"] == "manager"


@pytest.mark.asyncio
async def test_unauthenticated_requests_are_rejected(async_client):
    app.dependency_overrides.pop(get_current_user)
    async_client.cookies.clear()
    resp = await async_client.get(f"{API}/absences")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_health(async_client):
    resp = await async_client.get(f"{API}/health")
    assert resp.status_code == 200
    assert resp.json() == {"db": True, "sweep": False}
