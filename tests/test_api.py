from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from openpotluck import api, crud, database
from openpotluck.models import Claim, Event, Item, Participant
from openpotluck.utils import utcnow


@pytest.fixture()
def client(monkeypatch):
    """FastAPI test client with the scheduler disabled."""

    monkeypatch.setattr(api, "init_db", lambda: None)
    monkeypatch.setattr(api, "start_scheduler", lambda: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    with TestClient(api.app) as test_client:
        yield test_client


def _count(model) -> int:
    session = database.SessionLocal()
    try:
        return session.scalar(select(func.count()).select_from(model))
    finally:
        session.close()


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _create(client, **overrides):
    payload = {
        "name": "Block Party",
        "date": (utcnow() + timedelta(days=3)).replace(microsecond=0).isoformat(),
        "admin_email": "host@example.com",
        "admin_name": "Host",
        "items": [
            {"name": "Chips", "quantity": 2},
            {"name": "Salsa", "quantity": 1},
        ],
    }
    payload.update(overrides)
    response = client.post("/api/v1/potlucks", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_potluck_returns_code_and_token(client):
    body = _create(client)
    assert len(body["event_code"]) == 9
    assert len(body["admin_token"]) == 64
    assert len(body["event"]["items"]) == 2
    assert _count(Event) == 1
    assert _count(Item) == 2


def test_create_potluck_rejects_bad_date(client):
    response = client.post(
        "/api/v1/potlucks",
        json={"name": "Bad", "date": "next tuesday", "admin_email": "a@b.co"},
    )
    assert response.status_code == 400
    assert _count(Event) == 0


def test_create_potluck_with_empty_generators_still_returns_values(client, monkeypatch):
    monkeypatch.setattr(crud, "generate_event_code", lambda: "")
    monkeypatch.setattr(crud, "generate_secure_token", lambda *_: "")
    body = _create(client)
    assert body["event_code"]
    assert body["admin_token"]


def test_public_view_resolves_sloppy_codes(client):
    body = _create(client)
    sloppy = body["event_code"].replace("-", "").lower()
    response = client.get(f"/api/v1/potlucks/{sloppy}")
    assert response.status_code == 200
    event = response.json()["event"]
    assert event["event_code"] == body["event_code"]
    assert "admin_email" not in event
    assert "participants" not in event


def test_unknown_potluck_is_404(client):
    assert client.get("/api/v1/potlucks/ZZZZ-ZZZZ").status_code == 404


def test_admin_view_requires_token(client):
    body = _create(client)
    code = body["event_code"]
    assert client.get(f"/api/v1/potlucks/{code}/admin").status_code == 401
    assert (
        client.get(f"/api/v1/potlucks/{code}/admin", headers=_auth("wrong")).status_code
        == 403
    )
    response = client.get(
        f"/api/v1/potlucks/{code}/admin", headers=_auth(body["admin_token"])
    )
    assert response.status_code == 200
    assert response.json()["event"]["admin_email"] == "host@example.com"
    query_response = client.get(
        f"/api/v1/potlucks/{code}/admin", params={"token": body["admin_token"]}
    )
    assert query_response.status_code == 200


def test_signup_upsert_flow(client):
    body = _create(client)
    code = body["event_code"]
    chips = body["event"]["items"][0]

    first = client.post(
        f"/api/v1/potlucks/{code}/signups",
        json={"item_id": chips["id"], "email": "pat@example.com", "name": "Pat"},
    )
    assert first.status_code == 201, first.text
    token = first.json()["participant_token"]
    assert first.json()["item"]["available_quantity"] == 1

    second = client.post(
        f"/api/v1/potlucks/{code.lower()}/signups",
        json={"item_id": chips["id"], "email": "PAT@example.com", "quantity": 2},
    )
    assert second.status_code == 201
    assert second.json()["claim"]["id"] == first.json()["claim"]["id"]
    assert second.json()["claim"]["quantity"] == 2
    assert second.json()["participant_token"] is None
    assert _count(Claim) == 1
    assert _count(Participant) == 1

    own = client.get(f"/api/v1/potlucks/{code}/participants/self", headers=_auth(token))
    assert own.status_code == 200
    claims = own.json()["participant"]["claims"]
    assert [(c["item_name"], c["quantity"]) for c in claims] == [("Chips", 2)]


def test_signup_with_known_email_does_not_leak_token(client):
    body = _create(client)
    code = body["event_code"]
    chips, salsa = body["event"]["items"]
    original = client.post(
        f"/api/v1/potlucks/{code}/signups",
        json={"item_id": chips["id"], "email": "victim@example.com"},
    ).json()
    token = original["participant_token"]
    assert token

    other = client.post(
        f"/api/v1/potlucks/{code}/signups",
        json={"item_id": salsa["id"], "email": "victim@example.com"},
    )
    assert other.status_code == 201
    assert other.json()["participant_token"] is None
    assert token not in other.text

    wrong = client.post(
        f"/api/v1/potlucks/{code}/signups",
        json={"item_id": salsa["id"], "email": "victim@example.com"},
        headers=_auth("guess"),
    )
    assert wrong.json()["participant_token"] is None

    returning = client.post(
        f"/api/v1/potlucks/{code}/signups",
        json={"item_id": salsa["id"], "email": "victim@example.com"},
        headers=_auth(token),
    )
    assert returning.status_code == 201
    assert returning.json()["participant_token"] == token


def test_admin_view_hides_participant_tokens(client):
    body = _create(client)
    code = body["event_code"]
    signup = client.post(
        f"/api/v1/potlucks/{code}/signups",
        json={"item_id": body["event"]["items"][0]["id"], "email": "a@example.com"},
    ).json()

    response = client.get(
        f"/api/v1/potlucks/{code}/admin", headers=_auth(body["admin_token"])
    )

    participants = response.json()["event"]["participants"]
    assert [p["email"] for p in participants] == ["a@example.com"]
    assert "token" not in participants[0]
    assert signup["participant_token"] not in response.text


def test_signup_over_capacity_is_conflict(client):
    body = _create(client)
    code = body["event_code"]
    salsa = body["event"]["items"][1]
    ok = client.post(
        f"/api/v1/potlucks/{code}/signups",
        json={"item_id": salsa["id"], "email": "a@example.com"},
    )
    assert ok.status_code == 201
    full = client.post(
        f"/api/v1/potlucks/{code}/signups",
        json={"item_id": salsa["id"], "email": "b@example.com"},
    )
    assert full.status_code == 409
    assert full.json()["error"] == "ItemFull"
    assert full.json()["available_quantity"] == 0
    assert _count(Participant) == 1


def test_signup_validation(client):
    body = _create(client)
    code = body["event_code"]
    chips = body["event"]["items"][0]
    zero = client.post(
        f"/api/v1/potlucks/{code}/signups",
        json={"item_id": chips["id"], "email": "a@example.com", "quantity": 0},
    )
    assert zero.status_code == 422
    missing = client.post(
        f"/api/v1/potlucks/{code}/signups",
        json={"item_id": "nope", "email": "a@example.com"},
    )
    assert missing.status_code == 404


def test_admin_item_management(client):
    body = _create(client)
    code = body["event_code"]
    headers = _auth(body["admin_token"])

    added = client.post(
        f"/api/v1/potlucks/{code}/items",
        json={"name": "Cups", "quantity": 3},
        headers=headers,
    )
    assert added.status_code == 201
    item_id = added.json()["item"]["id"]

    client.post(
        f"/api/v1/potlucks/{code}/signups",
        json={"item_id": item_id, "email": "a@example.com", "quantity": 2},
    )
    too_low = client.patch(
        f"/api/v1/potlucks/{code}/items/{item_id}",
        json={"quantity": 1},
        headers=headers,
    )
    assert too_low.status_code == 400
    renamed = client.patch(
        f"/api/v1/potlucks/{code}/items/{item_id}",
        json={"name": "Paper Cups", "quantity": 5},
        headers=headers,
    )
    assert renamed.status_code == 200
    assert renamed.json()["item"]["name"] == "Paper Cups"
    assert renamed.json()["item"]["available_quantity"] == 3

    removed = client.delete(f"/api/v1/potlucks/{code}/items/{item_id}", headers=headers)
    assert removed.status_code == 204
    assert _count(Item) == 2
    assert _count(Claim) == 0
    assert (
        client.delete(
            f"/api/v1/potlucks/{code}/items/{item_id}", headers=headers
        ).status_code
        == 404
    )


def test_item_routes_require_admin(client):
    body = _create(client)
    code = body["event_code"]
    response = client.post(
        f"/api/v1/potlucks/{code}/items", json={"name": "Cups", "quantity": 3}
    )
    assert response.status_code == 401


def test_notifications_toggle_and_message(client, caplog):
    body = _create(client)
    code = body["event_code"]
    headers = _auth(body["admin_token"])
    signup = client.post(
        f"/api/v1/potlucks/{code}/signups",
        json={"item_id": body["event"]["items"][0]["id"], "email": "a@example.com"},
    ).json()
    participant_id = signup["claim"]["participant_id"]

    toggled = client.patch(
        f"/api/v1/potlucks/{code}/notifications",
        json={"enabled": False},
        headers=headers,
    )
    assert toggled.status_code == 200
    assert toggled.json() == {"notifications_enabled": False}

    with caplog.at_level("INFO", logger="uvicorn.error"):
        sent = client.post(
            f"/api/v1/potlucks/{code}/participants/{participant_id}/messages",
            json={"message": "Please bring tongs"},
            headers=headers,
        )
    assert sent.status_code == 202
    assert "a@example.com" in caplog.text

    missing = client.post(
        f"/api/v1/potlucks/{code}/participants/unknown/messages",
        json={"message": "hi"},
        headers=headers,
    )
    assert missing.status_code == 404


def test_update_and_delete_potluck(client):
    body = _create(client)
    code = body["event_code"]
    headers = _auth(body["admin_token"])
    updated = client.patch(
        f"/api/v1/potlucks/{code}",
        json={"name": "Renamed Party", "location": "Park"},
        headers=headers,
    )
    assert updated.status_code == 200
    assert updated.json()["event"]["name"] == "Renamed Party"
    assert updated.json()["event"]["location"] == "Park"

    client.post(
        f"/api/v1/potlucks/{code}/signups",
        json={"item_id": body["event"]["items"][0]["id"], "email": "a@example.com"},
    )
    deleted = client.delete(f"/api/v1/potlucks/{code}", headers=headers)
    assert deleted.status_code == 204
    for model in (Event, Item, Participant, Claim):
        assert _count(model) == 0


def test_participant_withdraws_claim(client):
    body = _create(client)
    code = body["event_code"]
    signup = client.post(
        f"/api/v1/potlucks/{code}/signups",
        json={"item_id": body["event"]["items"][0]["id"], "email": "a@example.com"},
    ).json()
    token = signup["participant_token"]
    claim_id = signup["claim"]["id"]

    assert (
        client.delete(
            f"/api/v1/potlucks/{code}/participants/self/claims/{claim_id}",
            headers=_auth("bogus"),
        ).status_code
        == 403
    )
    response = client.delete(
        f"/api/v1/potlucks/{code}/participants/self/claims/{claim_id}",
        headers=_auth(token),
    )
    assert response.status_code == 204
    assert _count(Claim) == 0
