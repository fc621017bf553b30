"""
Интеграционные тесты HTTP API: подарки, сборы, события, друзья, уведомления.
"""
from datetime import datetime, timedelta, timezone

import pytest


@pytest.fixture
def alice(login):
    return login(first_name="Alice", language_code="en")


@pytest.fixture
def bob(login):
    return login(first_name="Bob")


@pytest.fixture
def carol(login):
    return login(first_name="Carol")


def create_gift(client, **kwargs) -> dict:
    payload = {"name": "Test Gift", **kwargs}
    res = client.post("/gifts", json=payload)
    assert res.status_code == 201, res.text
    return res.json()


class TestErrorMapping:
    """Доменные ошибки превращаются в HTTP статусы."""

    def test_not_found(self, alice):
        client, _ = alice
        res = client.get("/gifts/999999")
        assert res.status_code == 404
        assert res.json() == {"detail": "Gift not found"}

    def test_forbidden(self, alice):
        client, _ = alice
        gift = create_gift(client)
        res = client.patch(f"/gifts/{gift['id']}/reserve")
        assert res.status_code == 403

    def test_conflict(self, alice, bob, carol):
        alice_client, _ = alice
        bob_client, _ = bob
        carol_client, _ = carol
        gift = create_gift(alice_client)
        assert bob_client.patch(f"/gifts/{gift['id']}/reserve").status_code == 200
        res = carol_client.patch(f"/gifts/{gift['id']}/reserve")
        # Carol is not the reserver, so the toggle tries to release and is refused
        assert res.status_code == 403

        res = alice_client.post("/events", json={"name": "Party"})
        event_id = res.json()["id"]
        assert bob_client.post(f"/events/{event_id}/join").status_code == 200
        assert bob_client.post(f"/events/{event_id}/join").status_code == 409

    def test_validation(self, alice):
        client, _ = alice
        gift = create_gift(client, price="100")
        res = client.post("/gifts/donation", json={"gift_id": gift["id"], "amount": "-5"})
        assert res.status_code == 400
        assert client.post("/friends/requests/respond", json={"request_id": 1, "action": "maybe"}).status_code == 400

    def test_body_errors_stay_422(self, alice):
        client, _ = alice
        assert client.post("/gifts", json={"name": ""}).status_code == 422
        gift = create_gift(client, price="100")
        res = client.post("/gifts/donation", json={"gift_id": gift["id"], "amount": "99.999"})
        assert res.status_code == 422


class TestGiftFlow:
    """Полный путь подарка через API."""

    def test_reserve_give_thank(self, alice, bob):
        alice_client, alice_user = alice
        bob_client, bob_user = bob
        gift = create_gift(alice_client, name="Headphones", price="150.00")

        wishlist = bob_client.get(f"/gifts/wishlist/{alice_user['telegram_id']}")
        assert [g["id"] for g in wishlist.json()] == [gift["id"]]

        reserved = bob_client.patch(f"/gifts/{gift['id']}/reserve").json()
        assert reserved["is_reserved"] is True
        assert reserved["reserved_by"] == bob_user["telegram_id"]

        given = alice_client.patch(f"/gifts/{gift['id']}/mark-given").json()
        assert given["is_given"] is True

        thankable = alice_client.get("/thanks/gifts").json()
        assert [item["gift"]["id"] for item in thankable] == [gift["id"]]
        assert thankable[0]["reserver"]["telegram_id"] == bob_user["telegram_id"]

        thanked = alice_client.post(f"/thanks/gifts/{gift['id']}", json={"message": "Thanks!"})
        assert thanked.status_code == 200
        assert thanked.json()["is_thanked"] is True
        assert alice_client.post(f"/thanks/gifts/{gift['id']}").status_code == 409

        notes = bob_client.get("/notifications").json()
        assert [n["type"] for n in notes] == ["GIFT_THANK_YOU_NOTE"]
        assert notes[0]["description"] == "Thanks!"

    def test_reserved_by_listing(self, alice, bob):
        alice_client, _ = alice
        bob_client, bob_user = bob
        gift = create_gift(alice_client)
        bob_client.patch(f"/gifts/{gift['id']}/reserve")
        res = alice_client.get(f"/gifts/reserved-by/{bob_user['telegram_id']}")
        assert [g["id"] for g in res.json()] == [gift["id"]]

    def test_crowdfunding(self, alice, bob, carol):
        alice_client, alice_user = alice
        bob_client, _ = bob
        carol_client, _ = carol
        gift = create_gift(alice_client, name="Bike", price="100")

        first = bob_client.post("/gifts/donation", json={"gift_id": gift["id"], "amount": "60"})
        assert first.status_code == 201, first.text
        assert first.json()["funding_opened"] is True
        second = carol_client.post("/gifts/donation", json={"gift_id": gift["id"], "amount": "50"}).json()
        assert second["funding_closed"] is True
        assert second["total_after"] == 110.0
        assert second["gift"]["donation"]["donors_count"] == 2

        donors = alice_client.get(f"/gifts/{gift['id']}/donors").json()
        assert donors["total"] == 110.0
        assert len(donors["donors"]) == 2

        assert carol_client.delete(f"/gifts/donation/{gift['id']}").status_code == 403
        withdrawn = alice_client.delete(f"/gifts/donation/{gift['id']}")
        assert withdrawn.status_code == 200
        assert withdrawn.json()["donation"] is None

    def test_edit_gift(self, alice, bob, carol):
        alice_client, _ = alice
        bob_client, bob_user = bob
        carol_client, _ = carol
        gift = create_gift(alice_client, name="Lamp", price="40")

        res = alice_client.put(
            f"/gifts/{gift['id']}",
            json={"name": "Desk lamp", "price": "55.50", "viewers": [bob_user["telegram_id"]]},
        )
        assert res.status_code == 200, res.text
        assert res.json()["name"] == "Desk lamp"
        assert res.json()["price"] == 55.5
        assert bob_client.get(f"/gifts/{gift['id']}").status_code == 200
        assert carol_client.get(f"/gifts/{gift['id']}").status_code == 404

        assert bob_client.put(f"/gifts/{gift['id']}", json={"name": "Mine"}).status_code == 403
        assert alice_client.put(f"/gifts/{gift['id']}", json={"name": None}).status_code == 400
        assert alice_client.put(f"/gifts/{gift['id']}", json={"price": "1.999"}).status_code == 422

    def test_delete_gift(self, alice, bob):
        alice_client, _ = alice
        bob_client, _ = bob
        gift = create_gift(alice_client)
        assert bob_client.delete(f"/gifts/{gift['id']}").status_code == 403
        assert alice_client.delete(f"/gifts/{gift['id']}").status_code == 204
        assert alice_client.get(f"/gifts/{gift['id']}").status_code == 404


class TestEventsApi:
    """События через API."""

    def test_event_lifecycle(self, alice, bob):
        alice_client, alice_user = alice
        bob_client, bob_user = bob
        gift = create_gift(alice_client, name="Cake")
        start = datetime.now(timezone.utc) + timedelta(days=2)
        res = alice_client.post(
            "/events",
            json={
                "name": "Birthday",
                "start_date": start.isoformat(),
                "end_date": (start + timedelta(hours=4)).isoformat(),
                "is_anonymous": True,
                "gift_ids": [gift["id"]],
            },
        )
        assert res.status_code == 201, res.text
        event = res.json()
        assert event["is_anonymous"] is True

        joined = bob_client.post(f"/events/{event['id']}/join").json()
        assert bob_user["telegram_id"] in [m["telegram_id"] for m in joined["members"]]
        bob_client.patch(f"/gifts/{gift['id']}/reserve")

        # Until the reveal the owner does not learn who reserved the gift
        owner_view = alice_client.get(f"/events/{event['id']}").json()
        assert owner_view["gifts"][0]["is_reserved"] is True
        assert owner_view["gifts"][0]["reserved_by"] is None
        assert alice_client.get(f"/gifts/{gift['id']}").json()["reserved_by"] is None
        assert alice_client.get(f"/gifts/reserved-by/{bob_user['telegram_id']}").json() == []
        reserved_notes = [n for n in alice_client.get("/notifications").json() if n["type"] == "GIFT_RESERVED"]
        assert [n["sender"] for n in reserved_notes] == [None]

        my = bob_client.get(f"/events/{event['id']}/my-gifts").json()
        assert [g["id"] for g in my["given"]] == [gift["id"]]

        listed = bob_client.get("/events/list", params={"author": "all"}).json()
        assert [e["id"] for e in listed] == [event["id"]]
        assert bob_client.get("/events/list", params={"author": "nobody"}).status_code == 400
        assert [e["id"] for e in bob_client.get(f"/events/list/{alice_user['telegram_id']}").json()] == [event["id"]]

        updated = alice_client.put(f"/events/{event['id']}", json={"name": "Big birthday"})
        assert updated.json()["name"] == "Big birthday"
        assert bob_client.put(f"/events/{event['id']}", json={"name": "Mine"}).status_code == 403
        assert alice_client.put(f"/events/{event['id']}", json={"name": None}).status_code == 400
        assert alice_client.put(f"/events/{event['id']}", json={"is_anonymous": None}).status_code == 400

        sent = alice_client.post(f"/thanks/events/{event['id']}", json={"message": "Спасибо!"})
        assert sent.json() == {"sent": 1}

        assert bob_client.post(f"/events/{event['id']}/leave").status_code == 200
        assert alice_client.delete(f"/events/{event['id']}").status_code == 204

    def test_add_gifts(self, alice, bob):
        alice_client, _ = alice
        bob_client, _ = bob
        event = alice_client.post("/events", json={"name": "Party"}).json()
        first = create_gift(alice_client, name="One")
        second = create_gift(alice_client, name="Two")

        res = alice_client.post(f"/events/{event['id']}/gifts/{first['id']}")
        assert res.status_code == 200
        assert alice_client.post(f"/events/{event['id']}/gifts/{first['id']}").status_code == 409
        res = alice_client.post(f"/events/{event['id']}/gifts", json={"gift_ids": [first["id"], second["id"]]})
        assert {g["id"] for g in res.json()["gifts"]} == {first["id"], second["id"]}
        assert bob_client.post(f"/events/{event['id']}/gifts/{first['id']}").status_code == 403


class TestFriendsApi:
    """Друзья и блокировки через API."""

    def test_request_accept_block(self, alice, bob):
        alice_client, alice_user = alice
        bob_client, bob_user = bob

        res = alice_client.post("/friends/requests", json={"telegram_id": bob_user["telegram_id"]})
        assert res.status_code == 201
        request_id = res.json()["request_id"]
        assert alice_client.post("/friends/requests", json={"telegram_id": bob_user["telegram_id"]}).status_code == 409

        incoming = bob_client.get("/friends/requests/incoming").json()
        assert [item["id"] for item in incoming] == [request_id]
        assert incoming[0]["requester"]["telegram_id"] == alice_user["telegram_id"]
        assert len(alice_client.get("/friends/requests/outgoing").json()) == 1

        res = bob_client.post("/friends/requests/respond", json={"request_id": request_id, "action": "accept"})
        assert res.json() == {"request_id": request_id, "status": "accepted"}
        assert [f["telegram_id"] for f in alice_client.get("/friends").json()] == [bob_user["telegram_id"]]

        assert alice_client.post(f"/friends/block/{bob_user['telegram_id']}").status_code == 200
        assert alice_client.get("/friends").json() == []
        assert [u["telegram_id"] for u in alice_client.get("/friends/blocked").json()] == [bob_user["telegram_id"]]
        assert alice_client.delete(f"/friends/block/{bob_user['telegram_id']}").status_code == 200
        assert alice_client.delete(f"/friends/block/{bob_user['telegram_id']}").status_code == 404

    def test_cancel_and_remove(self, alice, bob):
        alice_client, _ = alice
        bob_client, bob_user = bob
        alice_client.post("/friends/requests", json={"telegram_id": bob_user["telegram_id"]})
        assert alice_client.delete(f"/friends/requests/{bob_user['telegram_id']}").status_code == 204
        assert alice_client.delete(f"/friends/requests/{bob_user['telegram_id']}").status_code == 404
        assert alice_client.delete(f"/friends/{bob_user['telegram_id']}").status_code == 404
        assert alice_client.post("/friends/requests", json={"telegram_id": 1}).status_code == 404


class TestNotificationsApi:
    """Уведомления через API."""

    def test_localized_list_and_read(self, alice, bob):
        alice_client, alice_user = alice
        bob_client, _ = bob
        gift = create_gift(alice_client, name="Lamp")
        bob_client.patch(f"/gifts/{gift['id']}/reserve")

        # Alice signed in with an English client
        items = alice_client.get("/notifications").json()
        assert len(items) == 1
        assert items[0]["message"] == "Bob reserved Lamp"
        assert items[0]["sender"]["first_name"] == "Bob"
        assert items[0]["entity_model"] == "Gift"

        unread = alice_client.get("/notifications/unread").json()
        assert len(unread) == 1
        read = alice_client.patch(f"/notifications/{items[0]['id']}/read")
        assert read.json()["is_read"] is True
        assert alice_client.get("/notifications/unread").json() == []
        assert bob_client.patch(f"/notifications/{items[0]['id']}/read").status_code == 404
        assert alice_client.post("/notifications/read-all").json() == {"updated": 0}


class TestUsersApi:
    """Профили и настройки."""

    def test_settings_and_profile(self, alice, bob, carol):
        alice_client, alice_user = alice
        bob_client, bob_user = bob
        carol_client, _ = carol

        res = alice_client.patch("/users/settings", json={"currency": "EUR", "viewers": [bob_user["telegram_id"]]})
        assert res.status_code == 200, res.text
        assert res.json()["currency"] == "EUR"
        assert [v["telegram_id"] for v in res.json()["viewers"]] == [bob_user["telegram_id"]]
        assert alice_client.patch("/users/settings", json={}).status_code == 400

        profile = bob_client.get(f"/users/{alice_user['telegram_id']}")
        assert profile.status_code == 200
        assert profile.json()["gifts_count"] == 0
        assert carol_client.get(f"/users/{alice_user['telegram_id']}").status_code == 404
        assert alice_user["telegram_id"] not in [u["telegram_id"] for u in carol_client.get("/users").json()]

