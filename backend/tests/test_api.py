import pytest
from fastapi.testclient import TestClient
from jose import jwt

from qrpay.exceptions import OrderNotFoundError
from qrpay.main import create_app
from qrpay.mocks.order_store import InMemoryOrderStore
from qrpay.services.order_store import OrderStore

from conftest import OTHER_USER_ID, TEST_JWT_SECRET, USER_ID, FlakyOrderStore

GENERIC_FAILURE = {
    "error_code": "payment:verification_failed",
    "message": "verification failed",
    "details": {},
}


def auth_headers(user_id=USER_ID, secret=TEST_JWT_SECRET):
    token = jwt.encode({"sub": user_id}, secret, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def callback_body(qr):
    return {
        "qr_id": qr["qr_id"],
        "nonce": qr["nonce"],
        "amount": qr["amount"],
        "signature": qr["signature"],
    }


@pytest.fixture
def client(settings, order_store):
    app = create_app(settings=settings, order_store=order_store, start_scheduler=False)
    with TestClient(app) as c:
        yield c


def create_sample(client, user_id=USER_ID):
    response = client.post("/api/payments/sample-order", headers=auth_headers(user_id))
    assert response.status_code == 201
    return response.json()["data"]


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["qr_ttl_minutes"] == 10


@pytest.mark.parametrize("headers", [
    {},
    {"Authorization": "Bearer not-a-jwt"},
    {"Authorization": "Basic dXNlcjpwYXNz"},
])
def test_missing_or_bad_token(client, headers):
    response = client.post("/api/payments/qr", json={"order_id": "O1"}, headers=headers)

    assert response.status_code == 401


def test_token_signed_with_other_secret(client):
    response = client.get("/api/payments/qr", headers=auth_headers(secret="wrong-secret"))

    assert response.status_code == 401


def test_sample_order_issues_qr(client, order_store):
    data = create_sample(client)

    order = data["order"]
    assert order["total_amount"] == "2248.00"
    assert order["currency"] == "USD"
    assert order["status"] == "pending"
    assert [item["price"] for item in order["items"]] == ["1999.00", "249.00"]

    qr = data["qr"]
    assert qr["order_id"] == order["order_id"]
    assert qr["qr_id"].startswith("qr_")
    assert len(qr["signature"]) == 64
    assert qr["qr_image"].startswith("data:image/png;base64,")


def test_issue_qr_for_existing_order(client):
    order_id = create_sample(client)["order"]["order_id"]

    response = client.post(
        "/api/payments/qr", json={"order_id": order_id}, headers=auth_headers()
    )

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["data"]["order_id"] == order_id
    assert "10 minutes" in body["message"]


def test_issue_qr_unknown_order(client):
    response = client.post(
        "/api/payments/qr", json={"order_id": "missing"}, headers=auth_headers()
    )

    assert response.status_code == 404
    assert response.json()["error_code"] == "payment:order:not_found"


def test_issue_qr_other_users_order(client):
    order_id = create_sample(client)["order"]["order_id"]

    response = client.post(
        "/api/payments/qr", json={"order_id": order_id}, headers=auth_headers(OTHER_USER_ID)
    )

    assert response.status_code == 404


def test_verify_settles_and_replays(client, order_store):
    data = create_sample(client)
    qr = data["qr"]

    first = client.post("/api/payments/verify", json=callback_body(qr))
    assert first.status_code == 200
    result = first.json()["data"]
    assert result["status"] == "verified"
    assert result["settlement_reference"] == qr["qr_id"]
    assert order_store.get_order(qr["order_id"]).status == "paid"

    replay = client.post("/api/payments/verify", json=callback_body(qr))
    assert replay.status_code == 200
    assert replay.json()["data"] == result

    status = client.get(f"/api/payments/qr/{qr['qr_id']}/status", headers=auth_headers())
    assert status.json()["data"]["status"] == "verified"

    reissue = client.post(
        "/api/payments/qr", json={"order_id": qr["order_id"]}, headers=auth_headers()
    )
    assert reissue.status_code == 409
    assert reissue.json()["error_code"] == "payment:order:not_payable"


@pytest.mark.parametrize("field,value", [
    ("signature", "0" * 64),
    ("nonce", "guessed-nonce"),
    ("amount", "2248.01"),
])
def test_rejected_callback_is_generic(client, order_store, field, value):
    qr = create_sample(client)["qr"]
    body = callback_body(qr)
    body[field] = value

    response = client.post("/api/payments/verify", json=body)

    assert response.status_code == 400
    assert response.json() == GENERIC_FAILURE
    assert order_store.get_order(qr["order_id"]).status == "pending"

    status = client.get(f"/api/payments/qr/{qr['qr_id']}/status", headers=auth_headers())
    assert status.json()["data"]["status"] == "failed"

    # The correct callback no longer settles a failed QR
    retry = client.post("/api/payments/verify", json=callback_body(qr))
    assert retry.status_code == 400
    assert retry.json() == GENERIC_FAILURE


def test_unknown_qr_callback_is_generic(client):
    response = client.post("/api/payments/verify", json={
        "qr_id": "qr_00000000000000000000000000000000",
        "nonce": "nonce",
        "amount": "10.00",
        "signature": "0" * 64,
    })

    assert response.status_code == 400
    assert response.json() == GENERIC_FAILURE


@pytest.mark.parametrize("amount", ["-1", "0", "abc"])
def test_callback_with_invalid_amount(client, amount):
    response = client.post("/api/payments/verify", json={
        "qr_id": "qr_00000000000000000000000000000000",
        "nonce": "nonce",
        "amount": amount,
        "signature": "0" * 64,
    })

    assert response.status_code == 422


def test_callback_missing_fields(client):
    response = client.post("/api/payments/verify", json={"qr_id": "qr_x"})

    assert response.status_code == 422


def test_settlement_failure_is_retryable(settings):
    store = FlakyOrderStore(failures=1)
    app = create_app(settings=settings, order_store=store, start_scheduler=False)

    with TestClient(app) as client:
        qr = create_sample(client)["qr"]

        failed = client.post("/api/payments/verify", json=callback_body(qr))
        assert failed.status_code == 503
        assert failed.json()["error_code"] == "payment:settlement:failed"
        assert failed.json()["details"] == {"retryable": True}

        status = client.get(f"/api/payments/qr/{qr['qr_id']}/status", headers=auth_headers())
        assert status.json()["data"]["status"] == "pending"

        retried = client.post("/api/payments/verify", json=callback_body(qr))
        assert retried.status_code == 200
        assert store.settle_calls == 2


def test_status_is_owner_only(client):
    qr = create_sample(client)["qr"]

    own = client.get(f"/api/payments/qr/{qr['qr_id']}/status", headers=auth_headers())
    other = client.get(
        f"/api/payments/qr/{qr['qr_id']}/status", headers=auth_headers(OTHER_USER_ID)
    )

    assert own.status_code == 200
    assert own.json()["data"]["status"] == "pending"
    assert other.status_code == 403
    assert other.json()["error_code"] == "payment:qr:forbidden"


def test_status_unknown_qr(client):
    response = client.get("/api/payments/qr/qr_missing/status", headers=auth_headers())

    assert response.status_code == 404
    assert response.json()["error_code"] == "payment:qr:not_found"


def test_qr_detail(client):
    qr = create_sample(client)["qr"]

    response = client.get(f"/api/payments/qr/{qr['qr_id']}", headers=auth_headers())

    assert response.status_code == 200
    detail = response.json()["data"]
    assert detail["status"] == "pending"
    assert 0 < detail["seconds_left"] <= 600
    assert detail["qr_image"].startswith("data:image/png;base64,")


def test_active_qr_for_order(client):
    data = create_sample(client)
    order_id = data["order"]["order_id"]

    active = client.get(f"/api/payments/orders/{order_id}/active-qr", headers=auth_headers())
    assert active.json()["data"]["qr_id"] == data["qr"]["qr_id"]

    client.post("/api/payments/verify", json=callback_body(data["qr"]))

    settled = client.get(f"/api/payments/orders/{order_id}/active-qr", headers=auth_headers())
    assert settled.status_code == 200
    assert settled.json()["data"] is None


def test_history(client):
    first = create_sample(client)["qr"]
    second = create_sample(client)["qr"]
    create_sample(client, OTHER_USER_ID)
    client.post("/api/payments/verify", json=callback_body(first))

    everything = client.get("/api/payments/qr", headers=auth_headers()).json()
    assert everything["success"] is True
    assert everything["total"] == 2
    assert {item["qr_id"] for item in everything["data"]} == {first["qr_id"], second["qr_id"]}

    verified = client.get(
        "/api/payments/qr", params={"status": "verified"}, headers=auth_headers()
    ).json()
    assert [item["qr_id"] for item in verified["data"]] == [first["qr_id"]]

    paged = client.get(
        "/api/payments/qr", params={"skip": 1, "limit": 1}, headers=auth_headers()
    ).json()
    assert paged["total"] == 2
    assert len(paged["data"]) == 1


@pytest.mark.parametrize("params", [
    {"status": "settled"},
    {"limit": 0},
    {"limit": 101},
    {"skip": -1},
])
def test_history_rejects_bad_query(client, params):
    response = client.get("/api/payments/qr", params=params, headers=auth_headers())

    assert response.status_code == 422


class ExternalOrderStore(OrderStore):
    async def get_payable_order(self, order_id, user_id):
        raise OrderNotFoundError(f"Order {order_id} not found")

    async def mark_order_paid(self, order_id, settlement_ref):
        return None


def test_sample_order_needs_in_memory_store(settings):
    app = create_app(settings=settings, order_store=ExternalOrderStore(), start_scheduler=False)

    with TestClient(app) as client:
        response = client.post("/api/payments/sample-order", headers=auth_headers())

    assert response.status_code == 404


def test_sample_order_hidden_outside_demo_mode(settings):
    settings.demo_mode = False
    app = create_app(settings=settings, order_store=InMemoryOrderStore(), start_scheduler=False)

    with TestClient(app) as client:
        response = client.post("/api/payments/sample-order", headers=auth_headers())

    assert response.status_code == 404
