import pytest


def _register(client, name, email, role, **extra):
    payload = {"name": name, "email": email, "password": "Passw0rdOK", "role": role, **extra}
    response = client.post("/auth/register", json=payload)
    assert response.status_code == 201, response.text
    body = response.json()
    return body["user"], {"Authorization": f"Bearer {body['token']}"}


@pytest.fixture
def club(client):
    return _register(client, "Riverside Rovers", "rovers@example.com", "club")


@pytest.fixture
def business(client):
    return _register(client, "Corner Cafe", "cafe@example.com", "business")


@pytest.fixture
def admin(client):
    return _register(client, "Ops Team", "ops@example.com", "admin", admin_key="let-me-in")


@pytest.fixture
def sponsorship(client, club):
    _, headers = club
    response = client.post(
        "/sponsorships",
        json={"title": "New kit", "description": "Shirts for the under 12s", "category": "equipment", "amount": 1000, "location": "Leeds"},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_root_reports_demo_mode(client):
    body = client.get("/").json()
    assert body["storage"] == "local"
    assert body["payments"] == "mock"
    assert body["demo_mode"] is True


def test_auth_flow(client, club):
    user, headers = club
    assert user["email"] == "rovers@example.com"
    assert client.get("/auth/me", headers=headers).json()["id"] == user["id"]

    assert client.get("/auth/me").status_code == 401
    assert client.post("/auth/login", json={"email": "rovers@example.com", "password": "nope"}).status_code == 401
    assert client.post("/auth/login", json={"email": "rovers@example.com", "password": "Passw0rdOK"}).status_code == 200

    assert client.post("/auth/logout", headers=headers).status_code == 200
    assert client.get("/auth/me", headers=headers).status_code == 401


def test_register_rejects_duplicates_and_admin_without_key(client, club):
    response = client.post("/auth/register", json={"name": "X", "email": "rovers@example.com", "password": "Passw0rdOK", "role": "club"})
    assert response.status_code == 409
    response = client.post("/auth/register", json={"name": "X", "email": "x@example.com", "password": "Passw0rdOK", "role": "admin"})
    assert response.status_code == 403


def test_profile_update_marks_completed(client, club, business):
    club_user, headers = club
    response = client.put("/users/me", json={"location": "Leeds", "sport": "Football", "phone": "0113 234 5678"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["profile_completed"] is True

    _, business_headers = business
    public = client.get(f"/users/{club_user['id']}", headers=business_headers).json()
    assert public["sport"] == "Football"
    assert "phone" not in public and "email" not in public


@pytest.mark.parametrize(
    "body",
    [
        {"name": "y" * 150},
        {"name": "   "},
        {"phone": "12345"},
        {"postcode": "NOT A CODE"},
        {"location": "L" * 101},
    ],
)
def test_invalid_profile_updates_are_rejected_and_not_stored(client, club, body):
    user, headers = club
    response = client.put("/users/me", json=body, headers=headers)
    assert response.status_code in (400, 422)

    me = client.get("/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["name"] == user["name"]
    assert me.json()["profile_completed"] is user["profile_completed"]


def test_profile_accepts_uk_contact_details(client, club):
    _, headers = club
    response = client.put("/users/me", json={"phone": "+447700900123", "postcode": "ls1 4ap"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["phone"] == "+447700900123"
    assert response.json()["postcode"] == "LS1 4AP"


def test_overlong_sponsorship_title_is_a_bad_request(client, club):
    _, headers = club
    response = client.post(
        "/sponsorships",
        json={"title": "x" * 201, "description": "Shirts for the under 12s", "category": "equipment", "amount": 100},
        headers=headers,
    )
    assert response.status_code == 400
    assert client.get("/sponsorships/mine", headers=headers).json() == []


def test_create_browse_and_view(client, club, business, sponsorship):
    _, business_headers = business
    _, club_headers = club

    assert client.post("/sponsorships", json={"title": "x", "description": "y", "category": "event", "amount": 10},
                       headers=business_headers).status_code == 403
    bad = client.post("/sponsorships", json={"title": "x", "description": "y", "category": "event", "amount": -1},
                      headers=club_headers)
    assert bad.status_code == 400

    listed = client.get("/sponsorships", params={"location": "leeds", "sort": "amount_desc"}).json()
    assert [s["id"] for s in listed] == [sponsorship["id"]]
    assert client.get("/sponsorships", params={"sort": "random"}).status_code == 400

    client.get(f"/sponsorships/{sponsorship['id']}", headers=club_headers)
    viewed = client.get(f"/sponsorships/{sponsorship['id']}", headers=business_headers).json()
    assert viewed["view_count"] == 1

    interest = client.post(f"/sponsorships/{sponsorship['id']}/interest", headers=business_headers).json()
    assert interest["interested"] is True
    assert client.post(f"/sponsorships/{sponsorship['id']}/interest", headers=club_headers).status_code == 403

    assert client.get("/sponsorships/000000000000000000000000").status_code == 404


def test_create_payment_intent_contract(client, business, sponsorship):
    business_user, _ = business

    response = client.post("/create-payment-intent", json={"sponsorshipId": sponsorship["id"]})
    assert response.status_code == 400
    assert response.json() == {"error": "Missing required fields"}

    response = client.post("/create-payment-intent", json={"sponsorshipId": "000000000000000000000000", "businessId": business_user["id"]})
    assert response.status_code == 404
    assert "error" in response.json()

    response = client.post("/create-payment-intent", json={"sponsorshipId": sponsorship["id"], "businessId": business_user["id"]})
    assert response.status_code == 200
    body = response.json()
    assert body["clientSecret"].startswith(body["paymentIntentId"])
    assert body["amount"] == 1000.0
    assert body["platformFee"] == 50.0
    assert body["clubAmount"] == 950.0


def test_fund_end_to_end(client, club, business, sponsorship):
    business_user, business_headers = business
    club_user, club_headers = club
    intent = client.post("/create-payment-intent", json={"sponsorshipId": sponsorship["id"], "businessId": business_user["id"]}).json()

    response = client.post(
        "/payments/confirm",
        json={"sponsorship_id": sponsorship["id"], "payment_intent_id": intent["paymentIntentId"], "payment_method": "pm_card_visa"},
        headers=business_headers,
    )
    assert response.status_code == 200, response.text
    agreement = response.json()
    assert agreement["club_amount"] == 950.0
    assert agreement["club_id"] == club_user["id"]

    found = client.get(f"/agreements/by-payment/{intent['paymentIntentId']}", headers=business_headers).json()
    assert found["id"] == agreement["id"]
    assert [a["id"] for a in client.get("/agreements", headers=club_headers).json()] == [agreement["id"]]

    assert client.get("/sponsorships").json() == []
    assert client.get("/sponsorships/mine", headers=club_headers).json()[0]["status"] == "funded"

    late = _register(client, "Late Bakery", "late@example.com", "business")[0]
    response = client.post("/create-payment-intent", json={"sponsorshipId": sponsorship["id"], "businessId": late["id"]})
    assert response.status_code == 400


def test_declined_card_returns_402(client, business, sponsorship):
    business_user, headers = business
    intent = client.post("/create-payment-intent", json={"sponsorshipId": sponsorship["id"], "businessId": business_user["id"]}).json()

    response = client.post(
        "/payments/confirm",
        json={"sponsorship_id": sponsorship["id"], "payment_intent_id": intent["paymentIntentId"], "payment_method": "pm_card_chargeDeclined"},
        headers=headers,
    )
    assert response.status_code == 402
    assert response.json()["detail"] == "Your card was declined."
    assert client.get("/sponsorships").json()[0]["status"] == "active"


def test_status_changes(client, club, business, sponsorship):
    _, club_headers = club
    _, business_headers = business
    url = f"/sponsorships/{sponsorship['id']}/status"

    assert client.patch(url, json={"status": "paused"}, headers=business_headers).status_code == 403
    assert client.patch(url, json={"status": "funded"}, headers=club_headers).status_code == 400
    assert client.patch(url, json={"status": "paused"}, headers=club_headers).json()["status"] == "paused"
    assert client.get("/sponsorships").json() == []

    assert client.delete(f"/sponsorships/{sponsorship['id']}", headers=club_headers).json()["deleted"] is True
    assert client.get("/sponsorships/mine", headers=club_headers).json() == []


def test_messaging_endpoints(client, club, business):
    club_user, club_headers = club
    business_user, business_headers = business

    recipients = client.get("/users", params={"role": "club"}, headers=business_headers).json()
    assert [u["id"] for u in recipients] == [club_user["id"]]

    response = client.post("/conversations", json={"recipient_id": club_user["id"], "text": "Can we help?"}, headers=business_headers)
    assert response.status_code == 201
    conversation = response.json()

    reply = client.post(f"/conversations/{conversation['id']}/messages", json={"text": "Yes please"}, headers=club_headers)
    assert reply.status_code == 201
    assert client.post(f"/conversations/{conversation['id']}/messages", json={"text": ""}, headers=club_headers).status_code == 400

    texts = [m["text"] for m in client.get(f"/conversations/{conversation['id']}/messages", headers=business_headers).json()]
    assert texts == ["Can we help?", "Yes please"]
    assert client.get("/conversations", headers=club_headers).json()[0]["last_message"] == "Yes please"

    assert client.get("/messages/unread-count", headers=club_headers).json() == {"unread": 1}
    assert client.post(f"/conversations/{conversation['id']}/read", headers=club_headers).json() == {"marked_read": 1}
    assert client.get("/messages/unread-count", headers=club_headers).json() == {"unread": 0}

    outsider = _register(client, "Other Club", "other@example.com", "club")[1]
    assert client.get(f"/conversations/{conversation['id']}/messages", headers=outsider).status_code == 403


def test_admin_endpoints(client, admin, club, business, sponsorship):
    admin_user, admin_headers = admin
    club_user, club_headers = club

    assert client.get("/admin/overview", headers=club_headers).status_code == 403

    overview = client.get("/admin/overview", headers=admin_headers).json()
    assert overview["users"]["clubs"] == 1
    assert overview["users"]["admins"] == 1
    assert overview["sponsorships"]["active"] == 1
    assert overview["payments"]["total_payments"] == 0

    users = client.get("/admin/users", params={"role": "business"}, headers=admin_headers).json()
    assert [u["name"] for u in users["users"]] == ["Corner Cafe"]

    assert client.patch(f"/admin/users/{admin_user['id']}/active", json={"is_active": False}, headers=admin_headers).status_code == 400
    response = client.patch(f"/admin/users/{club_user['id']}/active", json={"is_active": False}, headers=admin_headers)
    assert response.json()["is_active"] is False
    assert client.get("/auth/me", headers=club_headers).status_code == 401

    listed = client.get("/admin/sponsorships", params={"status": "active"}, headers=admin_headers).json()
    assert [s["id"] for s in listed["sponsorships"]] == [sponsorship["id"]]
    paused = client.patch(f"/sponsorships/{sponsorship['id']}/status", json={"status": "expired"}, headers=admin_headers)
    assert paused.json()["status"] == "expired"


def test_seed_is_idempotent(client):
    assert client.post("/seed").json() == {"message": "Sponsorships seeded"}
    assert len(client.get("/sponsorships").json()) == 4
    assert client.post("/seed").json() == {"message": "Seed data already exists"}
