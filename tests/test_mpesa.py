import base64
import json

import httpx
import pytest

from isp_crm.main import app, get_mpesa_client
from isp_crm.mpesa import MpesaClient, MpesaError, MpesaNotConfigured, normalize_phone, stk_password

BASE_URL = "https://sandbox.safaricom.co.ke"
STK_OK = {
    "MerchantRequestID": "29115-34620561-1",
    "CheckoutRequestID": "ws_CO_191220191020363925",
    "ResponseCode": "0",
    "ResponseDescription": "Success. Request accepted for processing",
    "CustomerMessage": "Success. Request accepted for processing",
}


class FakeDaraja:
    def __init__(self, stk_status=200, stk_body=None):
        self.stk_status = stk_status
        self.stk_body = stk_body or STK_OK
        self.token_requests = 0
        self.posts = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/v1/generate":
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": f"token-{self.token_requests}", "expires_in": "3599"})
        self.posts.append((request.url.path, request.headers["Authorization"], json.loads(request.content)))
        if request.url.path == "/mpesa/c2b/v1/simulate":
            return httpx.Response(200, json={"ConversationID": "AG_2025_1", "ResponseCode": "0", "ResponseDescription": "Accepted"})
        return httpx.Response(self.stk_status, json=self.stk_body)


def _client(daraja, clock=None, **overrides) -> MpesaClient:
    kwargs = {
        "consumer_key": "key",
        "consumer_secret": "secret",
        "short_code": "174379",
        "passkey": "passkey",
        "base_url": BASE_URL,
        "callback_url": "https://crm.example.com/api/mpesa/callback",
        "client": httpx.Client(transport=httpx.MockTransport(daraja)),
    }
    if clock is not None:
        kwargs["clock"] = clock
    kwargs.update(overrides)
    return MpesaClient(**kwargs)


def test_normalize_phone() -> None:
    assert normalize_phone("0712345678") == "254712345678"
    assert normalize_phone("0712 345 678") == "254712345678"
    assert normalize_phone("+254712345678") == "254712345678"
    assert normalize_phone("254712345678") == "254712345678"


def test_stk_password() -> None:
    password = stk_password("174379", "passkey", "20250101120000")
    assert base64.b64decode(password).decode() == "174379passkey20250101120000"


def test_stk_push_sends_daraja_payload() -> None:
    daraja = FakeDaraja()
    data = _client(daraja).stk_push("0712345678", "1740.60", "ACC-1001", "Internet")
    assert data["CheckoutRequestID"] == STK_OK["CheckoutRequestID"]

    path, auth, payload = daraja.posts[0]
    assert path == "/mpesa/stkpush/v1/processrequest"
    assert auth == "Bearer token-1"
    assert payload["Amount"] == 1741
    assert payload["PartyA"] == payload["PhoneNumber"] == "254712345678"
    assert payload["TransactionType"] == "CustomerPayBillOnline"
    assert payload["AccountReference"] == "ACC-1001"
    assert base64.b64decode(payload["Password"]).decode() == f"174379passkey{payload['Timestamp']}"


def test_access_token_is_cached_until_near_expiry() -> None:
    daraja = FakeDaraja()
    ticks = iter([0.0, 100.0, 3550.0])
    client = _client(daraja, clock=lambda: next(ticks))
    assert client.access_token() == "token-1"
    assert client.access_token() == "token-1"
    assert client.access_token() == "token-2"
    assert daraja.token_requests == 2


def test_rejected_request_raises() -> None:
    daraja = FakeDaraja(stk_status=400, stk_body={"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid PhoneNumber"})
    with pytest.raises(MpesaError, match="Invalid PhoneNumber"):
        _client(daraja).stk_push("0712345678", 10, "ACC-1001", "Internet")


def test_unconfigured_client_raises() -> None:
    client = _client(FakeDaraja())
    client.consumer_key = None
    assert client.configured is False
    with pytest.raises(MpesaNotConfigured):
        client.stk_push("0712345678", 10, "ACC-1001", "Internet")


def _use(daraja) -> None:
    mpesa = _client(daraja)
    app.dependency_overrides[get_mpesa_client] = lambda: mpesa


def _callback(checkout_id, result_code=0, amount=1740, receipt="QK12ABC345"):
    callback = {"MerchantRequestID": "29115-34620561-1", "CheckoutRequestID": checkout_id, "ResultCode": result_code, "ResultDesc": "done"}
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}


def test_stk_push_and_successful_callback_settle_account(client) -> None:
    _use(FakeDaraja())
    client.get("/api/mikrotik/plans")
    account = client.post(
        "/api/mikrotik/accounts", json={"customer_name": "Peter", "customer_phone": "0712345678", "plan_id": 1}
    ).json()["account"]

    pushed = client.post(
        "/api/mpesa/stk-push",
        json={"phone_number": "0712345678", "amount": 1740, "account_reference": account["account_number"]},
    )
    assert pushed.status_code == 200
    txn = pushed.json()["transaction"]
    assert txn["status"] == "pending"
    assert txn["phone_number"] == "254712345678"
    assert pushed.json()["checkout_request_id"] == STK_OK["CheckoutRequestID"]

    ack = client.post("/api/mpesa/callback", json=_callback(STK_OK["CheckoutRequestID"]))
    assert ack.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

    completed = client.get(f"/api/mpesa/transactions/{txn['id']}").json()["transaction"]
    assert completed["status"] == "completed"
    assert completed["mpesa_receipt_number"] == "QK12ABC345"
    assert completed["payment_id"] is not None

    refreshed = client.get(f"/api/mikrotik/accounts/{account['id']}").json()["account"]
    assert refreshed["outstanding_balance"] == 260.0
    assert refreshed["total_paid"] == 1740.0

    client.post("/api/mpesa/callback", json=_callback(STK_OK["CheckoutRequestID"]))
    payments = client.get(f"/api/mikrotik/accounts/{account['id']}/payments").json()["payments"]
    assert len(payments) == 1
    assert payments[0]["payment_method"] == "mpesa"


def test_cancelled_callback(client) -> None:
    _use(FakeDaraja())
    txn = client.post(
        "/api/mpesa/stk-push", json={"phone_number": "0712345678", "amount": 100, "account_reference": "ACC-9999"}
    ).json()["transaction"]
    client.post("/api/mpesa/callback", json=_callback(STK_OK["CheckoutRequestID"], result_code=1032))
    assert client.get(f"/api/mpesa/transactions/{txn['id']}").json()["transaction"]["status"] == "cancelled"


def test_unknown_and_malformed_callbacks(client) -> None:
    assert client.post("/api/mpesa/callback", json=_callback("ws_CO_unknown")).json()["ResultCode"] == 0
    malformed = client.post("/api/mpesa/callback", json={"Body": {}})
    assert malformed.status_code == 400
    assert malformed.json() == {"ResultCode": 1, "ResultDesc": "Malformed callback"}
    assert client.post("/api/mpesa/validation", json={"TransID": "X"}).json()["ResultCode"] == 0


def test_upstream_failure_returns_502(client) -> None:
    _use(FakeDaraja(stk_status=500, stk_body={"errorMessage": "Internal Server Error"}))
    resp = client.post("/api/mpesa/stk-push", json={"phone_number": "0712345678", "amount": 100, "account_reference": "ACC-1001"})
    assert resp.status_code == 502
    assert resp.json()["success"] is False
    assert client.get("/api/mpesa/transactions").json()["transactions"] == []


def test_c2b_simulation_records_transaction(client) -> None:
    _use(FakeDaraja())
    resp = client.post("/api/mpesa/c2b", json={"phone_number": "0712345678", "amount": 500, "account_reference": "ACC-1001"})
    assert resp.status_code == 200
    assert resp.json()["transaction"]["transaction_type"] == "C2B"
    assert resp.json()["transaction"]["checkout_request_id"] == "AG_2025_1"


def test_missing_configuration_returns_400(client) -> None:
    mpesa = _client(FakeDaraja())
    mpesa.passkey = None
    app.dependency_overrides[get_mpesa_client] = lambda: mpesa
    resp = client.post("/api/mpesa/stk-push", json={"phone_number": "0712345678", "amount": 100, "account_reference": "ACC-1001"})
    assert resp.status_code == 400
