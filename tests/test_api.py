import uuid

import pytest

from gigops.auth.security import create_access_token


def gig_payload(world, **overrides):
    payload = {
        "title": "Riverside Festival",
        "start": "2025-07-15T14:00:00Z",
        "end": "2025-07-15T23:00:00Z",
        "timezone": "Europe/London",
        "participants": [{"organization_id": str(world.production), "role": "Production"}],
        "staff_slots": [
            {
                "role": "Stage Manager",
                "organization_id": str(world.production),
                "required_count": 1,
                "assignments": [{"user_id": str(world.users["crew"])}],
            },
            {"role": "Rigger", "organization_id": str(world.production), "required_count": 4},
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def created(client, world, auth_headers):
    res = client.post("/gigs", json=gig_payload(world), headers=auth_headers("admin"))
    assert res.status_code == 201, res.text
    return res.json()


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"


def test_request_id_is_echoed(client):
    res = client.get("/health", headers={"X-Request-ID": "abc-123"})
    assert res.headers["X-Request-ID"] == "abc-123"


def test_create_and_read(client, world, auth_headers, created):
    assert created["version"] == 1
    assert created["start"].startswith("2025-07-15T14:00:00")
    assert sorted(s["role"] for s in created["staff_slots"]) == ["Rigger", "Stage Manager"]

    res = client.get(f"/gigs/{created['id']}", headers=auth_headers("viewer"))
    assert res.status_code == 200
    assert res.json()["title"] == "Riverside Festival"


def test_update_round_trip_is_idempotent(client, world, auth_headers, created):
    body = {
        "version": created["version"],
        "participants": created["participants"],
        "staff_slots": created["staff_slots"],
    }
    res = client.put(f"/gigs/{created['id']}", json=body, headers=auth_headers("manager"))
    assert res.status_code == 200, res.text
    assert res.json()["version"] == created["version"]
    assert {s["id"] for s in res.json()["staff_slots"]} == {s["id"] for s in created["staff_slots"]}


def test_update_replaces_slots(client, world, auth_headers, created):
    keep = next(s for s in created["staff_slots"] if s["role"] == "Stage Manager")
    body = {
        "version": created["version"],
        "title": "Riverside Festival (Sunday)",
        "staff_slots": [
            {"id": keep["id"], "role": "Stage Manager", "required_count": 2},
            {"role": "Runner", "organization_id": str(world.production)},
        ],
    }
    res = client.put(f"/gigs/{created['id']}", json=body, headers=auth_headers("admin"))
    assert res.status_code == 200, res.text
    data = res.json()
    assert data["title"] == "Riverside Festival (Sunday)"
    assert data["version"] == created["version"] + 1
    roles = {s["role"]: s for s in data["staff_slots"]}
    assert set(roles) == {"Stage Manager", "Runner"}
    assert roles["Stage Manager"]["id"] == keep["id"]
    assert roles["Stage Manager"]["required_count"] == 2
    # Omitted assignments are left alone
    assert len(roles["Stage Manager"]["assignments"]) == 1


def test_stale_version_is_409(client, world, auth_headers, created):
    res = client.put(
        f"/gigs/{created['id']}",
        json={"version": created["version"] + 1, "staff_slots": []},
        headers=auth_headers("admin"),
    )
    assert res.status_code == 409
    assert res.json()["code"] == "write_conflict"
    assert res.json()["retryable"] is True


def test_validation_failure_is_422(client, world, auth_headers, created):
    body = {"staff_slots": [{"role": "Runner", "organization_id": str(world.production), "required_count": 0}]}
    res = client.put(f"/gigs/{created['id']}", json=body, headers=auth_headers("admin"))
    assert res.status_code == 422
    assert res.json()["code"] == "validation_error"


def test_missing_token_is_401(client, created):
    res = client.get(f"/gigs/{created['id']}")
    assert res.status_code == 401
    assert res.json()["code"] == "not_authenticated"


def test_bad_token_is_401(client, created):
    res = client.get(f"/gigs/{created['id']}", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401


def test_expired_token_is_401(client, world, created):
    token = create_access_token(str(world.users["admin"]), ttl_seconds=-60)
    res = client.get(f"/gigs/{created['id']}", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Token expired"


def test_unknown_gig_is_404(client, auth_headers, world):
    res = client.get(f"/gigs/{uuid.uuid4()}", headers=auth_headers("admin"))
    assert res.status_code == 404


def test_viewer_cannot_update_but_can_check_conflicts(client, world, auth_headers, created):
    res = client.put(f"/gigs/{created['id']}", json={"staff_slots": []}, headers=auth_headers("viewer"))
    assert res.status_code == 403
    assert res.json()["code"] == "access_denied"

    res = client.get(
        f"/kits/{world.kits['K1']}/conflicts",
        params={"start": "2025-07-15T20:00:00Z", "end": "2025-07-16T02:00:00Z", "exclude_gig_id": created["id"]},
        headers=auth_headers("viewer"),
    )
    assert res.status_code == 200, res.text
    assert res.json() == {"kit_id": str(world.kits["K1"]), "has_conflicts": False, "conflicts": []}


def test_kit_booking_flow(client, world, auth_headers, created):
    headers = auth_headers("admin")
    res = client.post(
        f"/gigs/{created['id']}/kits",
        json={"kit_id": str(world.kits["K1"]), "organization_id": str(world.production)},
        headers=headers,
    )
    assert res.status_code == 201, res.text
    assignment_id = res.json()["id"]

    res = client.get(
        f"/kits/{world.kits['K1']}/conflicts",
        params={"start": "2025-07-15T20:00:00Z", "end": "2025-07-16T02:00:00Z"},
        headers=auth_headers("rentals_admin"),
    )
    body = res.json()
    assert body["has_conflicts"] is True
    assert body["conflicts"][0]["gig_id"] == created["id"]
    assert sorted(body["conflicts"][0]["conflicting_asset_ids"]) == sorted(
        [str(world.assets["A1"]), str(world.assets["A2"])]
    )

    # A second gig overlapping the first cannot take the same kit
    other = client.post(
        "/gigs",
        json=gig_payload(world, title="Afterparty", start="2025-07-15T22:00:00Z", end="2025-07-16T03:00:00Z", staff_slots=[]),
        headers=headers,
    ).json()
    res = client.post(
        f"/gigs/{other['id']}/kits",
        json={"kit_id": str(world.kits["K1"]), "organization_id": str(world.production)},
        headers=headers,
    )
    assert res.status_code == 409
    assert res.json()["code"] == "conflict_detected"
    assert res.json()["conflicts"][0]["gig_id"] == created["id"]

    res = client.get(f"/gigs/{created['id']}/kits", headers=auth_headers("viewer"))
    assert [a["id"] for a in res.json()] == [assignment_id]

    res = client.delete(f"/gigs/{created['id']}/kits/{assignment_id}", headers=headers)
    assert res.status_code == 204
    assert client.get(f"/gigs/{created['id']}/kits", headers=headers).json() == []


def test_conflicts_need_kit_or_gig_access(client, world, auth_headers, created):
    res = client.get(
        f"/kits/{world.kits['K1']}/conflicts",
        params={"start": "2025-07-15T20:00:00Z", "end": "2025-07-16T02:00:00Z"},
        headers=auth_headers("outsider"),
    )
    assert res.status_code == 403


def test_delete_gig(client, world, auth_headers, created):
    res = client.delete(f"/gigs/{created['id']}", headers=auth_headers("manager"))
    assert res.status_code == 403
    res = client.delete(f"/gigs/{created['id']}", headers=auth_headers("admin"))
    assert res.status_code == 204
    assert client.get(f"/gigs/{created['id']}", headers=auth_headers("admin")).status_code == 404


def test_kit_management(client, world, auth_headers, created):
    rentals = auth_headers("rentals_admin")
    res = client.post(
        "/kits",
        json={
            "organization_id": str(world.rentals),
            "name": "Monitor world",
            "assets": [{"asset_id": str(world.assets["A3"]), "quantity": 2}],
        },
        headers=rentals,
    )
    assert res.status_code == 201, res.text
    assert [(a["asset_id"], a["quantity"]) for a in res.json()["kit_assets"]] == [(str(world.assets["A3"]), 2)]
    assert client.post("/kits", json={"organization_id": str(world.rentals), "name": "x"}, headers=auth_headers("admin")).status_code == 403

    names = [k["name"] for k in client.get("/kits", params={"organization_id": str(world.rentals)}, headers=rentals).json()]
    assert names == ["Empty case", "FOH kit", "Lighting kit", "Monitor world"]

    # K1 sits on the created gig; K2 goes on an overlapping one and may not pick up A1
    admin = auth_headers("admin")
    client.post(f"/gigs/{created['id']}/kits", json={"kit_id": str(world.kits["K1"]), "organization_id": str(world.production)}, headers=admin)
    other = client.post(
        "/gigs",
        json=gig_payload(world, title="Afterparty", start="2025-07-15T22:00:00Z", end="2025-07-16T03:00:00Z", staff_slots=[]),
        headers=admin,
    ).json()
    res = client.post(f"/gigs/{other['id']}/kits", json={"kit_id": str(world.kits["K2"]), "organization_id": str(world.production)}, headers=admin)
    assert res.status_code == 201, res.text

    k2 = client.get(f"/kits/{world.kits['K2']}", headers=rentals).json()
    res = client.put(
        f"/kits/{world.kits['K2']}",
        json={"assets": k2["kit_assets"] + [{"asset_id": str(world.assets["A1"])}]},
        headers=rentals,
    )
    assert res.status_code == 409
    assert res.json()["code"] == "conflict_detected"
    assert res.json()["conflicts"][0]["gig_id"] == created["id"]

    res = client.put(f"/kits/{world.kits['K2']}", json={"name": "Lighting kit B"}, headers=rentals)
    assert res.status_code == 200, res.text
    assert res.json()["name"] == "Lighting kit B"
    assert len(res.json()["kit_assets"]) == 1

    res = client.post(f"/kits/{world.kits['K1']}/duplicate", json={}, headers=rentals)
    assert res.status_code == 201
    assert res.json()["name"] == "FOH kit (Copy)"
    assert client.delete(f"/kits/{res.json()['id']}", headers=rentals).status_code == 204


def test_gigs_listed_by_organization(client, world, auth_headers, created):
    res = client.get("/gigs", params={"organization_id": str(world.production)}, headers=auth_headers("viewer"))
    assert res.status_code == 200
    assert [g["id"] for g in res.json()] == [created["id"]]
    res = client.get("/gigs", params={"organization_id": str(world.production)}, headers=auth_headers("outsider"))
    assert res.status_code == 403
