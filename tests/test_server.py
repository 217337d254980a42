import threading

import pytest
import requests

from bsc_payments import config
from bsc_payments import orders
from bsc_payments.scheduler import ScanScheduler
from bsc_payments.server import make_server

from conftest import ONECOP, PAYER, ONE_TOKEN, tx


@pytest.fixture
def api(scanner):
    scheduler = ScanScheduler(scanner, interval=3600, jitter=0)
    server = make_server(scanner, scheduler, host="127.0.0.1", port=0)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_port}"
    server.shutdown()
    server.server_close()


def create(api, **body):
    body = {"token": "ONECOP", "amount_wei": ONE_TOKEN, **body}
    resp = requests.post(f"{api}/payments/create", json=body, timeout=5)
    assert resp.status_code == 201, resp.text
    return resp.json()


# ============================================================
# Public routes
# ============================================================

def test_health(api):
    resp = requests.get(f"{api}/health", timeout=5)
    assert resp.status_code == 200
    data = resp.json()
    assert data["ok"] is True
    assert data["service"] == "bsc-payments"
    assert data["chain"]["healthy"] is True
    assert data["scheduler"]["running"] is False


def test_create_and_status(api):
    order = create(api, from_address=PAYER)
    assert order["ok"] is True
    assert order["token_contract"] == ONECOP
    assert order["amount_wei"] == ONE_TOKEN

    resp = requests.get(f"{api}/payments/{order['order_id']}/status", timeout=5)
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "order_id": order["order_id"], "status": "pending",
                           "confirmations": 0, "tx_hash": None}


def test_create_accepts_camel_case(api):
    resp = requests.post(f"{api}/payments/create",
                         json={"token": "USDT", "amountWei": "42", "fromAddress": PAYER}, timeout=5)
    assert resp.status_code == 201
    assert resp.json()["amount_wei"] == "42"


@pytest.mark.parametrize("body", [
    {"token": "ONECOP", "amount_wei": "0"},
    {"token": "ONECOP", "amount_wei": 1.5},
    {"token": "ONECOP"},
    {"token": "BTC", "amount_wei": ONE_TOKEN},
    {"token": "ONECOP", "amount_wei": ONE_TOKEN, "from_address": "0xnope"},
])
def test_create_validation_errors(api, body):
    resp = requests.post(f"{api}/payments/create", json=body, timeout=5)
    assert resp.status_code == 400
    data = resp.json()
    assert data["ok"] is False
    assert data["status"] == 400
    assert data["error"]


def test_invalid_json_body(api):
    resp = requests.post(f"{api}/payments/create", data="{not json",
                         headers={"Content-Type": "application/json"}, timeout=5)
    assert resp.status_code == 400


def test_submit_pays_confirmed_transfer(api, chain):
    chain.add_transfer(tx(1), 990, ONE_TOKEN)
    order = create(api)
    resp = requests.post(f"{api}/payments/submit-tx",
                         json={"orderId": order["order_id"], "txHash": tx(1)}, timeout=5)
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "order_id": order["order_id"], "status": "paid",
                           "confirmations": 11, "tx_hash": tx(1)}


def test_submit_errors(api, chain):
    order = create(api)
    url = f"{api}/payments/submit-tx"

    resp = requests.post(url, json={"order_id": order["order_id"], "tx_hash": "0x123"}, timeout=5)
    assert resp.status_code == 400

    resp = requests.post(url, json={"order_id": "missing", "tx_hash": tx(1)}, timeout=5)
    assert resp.status_code == 404

    resp = requests.post(url, json={"order_id": order["order_id"]}, timeout=5)
    assert resp.status_code == 400

    other = create(api)
    assert requests.post(url, json={"order_id": other["order_id"], "tx_hash": tx(5)}, timeout=5).ok
    resp = requests.post(url, json={"order_id": order["order_id"], "tx_hash": tx(5)}, timeout=5)
    assert resp.status_code == 409


def test_submit_of_transfer_that_does_not_pay_is_409(api, chain):
    chain.add_transfer(tx(2), 990, str(10 ** 17))
    order = create(api)
    resp = requests.post(f"{api}/payments/submit-tx",
                         json={"order_id": order["order_id"], "tx_hash": tx(2)}, timeout=5)
    assert resp.status_code == 409
    assert "does not transfer" in resp.json()["error"]
    status = requests.get(f"{api}/payments/{order['order_id']}/status", timeout=5).json()
    assert status["status"] == "pending"
    assert status["tx_hash"] is None


def test_submit_with_rpc_down_keeps_order_pollable(api, chain):
    order = create(api)
    chain.fail_block_number = True
    resp = requests.post(f"{api}/payments/submit-tx",
                         json={"order_id": order["order_id"], "tx_hash": tx(1)}, timeout=5)
    assert resp.status_code == 200
    assert resp.json()["status"] == "processing"
    stored = orders.get_order(order["order_id"])
    assert "timed out" in stored["metadata"]["last_error"]


def test_unknown_route(api):
    resp = requests.get(f"{api}/nope", timeout=5)
    assert resp.status_code == 404
    assert resp.json()["ok"] is False
    assert requests.get(f"{api}/payments/missing/status", timeout=5).status_code == 404


# ============================================================
# Cron
# ============================================================

def test_cron_check_runs_cycle(api, chain):
    chain.add_transfer(tx(1), 999, ONE_TOKEN)
    order = create(api)
    resp = requests.get(f"{api}/cron/check-payments", timeout=5)
    assert resp.status_code == 200
    report = resp.json()
    assert report["ok"] is True
    assert report["scanned"] == 1
    assert report["to_block"] == 1000
    assert orders.get_order(order["order_id"])["tx_hash"] == tx(1)


def test_cron_secret(api, monkeypatch):
    monkeypatch.setattr(config, "CRON_SECRET", "s3cret")
    assert requests.post(f"{api}/cron/check-payments", timeout=5).status_code == 401
    assert requests.post(f"{api}/cron/payments?token=wrong", timeout=5).status_code == 401
    assert requests.post(f"{api}/cron/payments?token=s3cret", timeout=5).status_code == 200
    resp = requests.get(f"{api}/cron/check-payments",
                        headers={"Authorization": "Bearer s3cret"}, timeout=5)
    assert resp.status_code == 200


def test_cron_rpc_failure_is_502(api, chain):
    chain.fail_block_number = True
    resp = requests.get(f"{api}/cron/check-payments", timeout=5)
    assert resp.status_code == 502
    assert resp.json()["ok"] is False


def test_cron_health(api):
    create(api)
    requests.get(f"{api}/cron/check-payments", timeout=5)
    data = requests.get(f"{api}/cron/health", timeout=5).json()
    assert data["orders"] == {"pending": 1}
    assert data["scanner"]["min_confirmations"] == 3
    assert data["scheduler"]["cycles_run"] == 1


# ============================================================
# Admin
# ============================================================

def test_admin_requires_key(api, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_API_KEY", "admin-key")
    assert requests.get(f"{api}/admin/payments", timeout=5).status_code == 401
    resp = requests.get(f"{api}/admin/payments", headers={"Authorization": "Bearer nope"}, timeout=5)
    assert resp.status_code == 401
    resp = requests.get(f"{api}/admin/payments", headers={"Authorization": "Bearer admin-key"}, timeout=5)
    assert resp.status_code == 200
    # public routes stay open
    assert requests.get(f"{api}/health", timeout=5).status_code == 200


def test_admin_list_and_get(api):
    a = create(api)
    create(api, kind="BONUS")
    data = requests.get(f"{api}/admin/payments?kind=BONUS", timeout=5).json()
    assert len(data["orders"]) == 1
    assert data["counts"] == {"pending": 2}

    resp = requests.get(f"{api}/admin/payments/{a['order_id']}", timeout=5)
    assert resp.json()["order"]["status"] == "pending"
    assert requests.get(f"{api}/admin/payments?limit=x", timeout=5).status_code == 400


def test_admin_cancel_note_audit(api):
    order = create(api)
    base = f"{api}/admin/payments/{order['order_id']}"

    resp = requests.post(f"{base}/note", json={"note": "called the customer"}, timeout=5)
    assert resp.json()["order"]["metadata"]["note"] == "called the customer"
    assert requests.post(f"{base}/note", json={}, timeout=5).status_code == 400

    resp = requests.post(f"{base}/cancel", json={"reason": "duplicate"}, timeout=5)
    assert resp.json()["order"]["status"] == "cancelled"
    assert requests.post(f"{base}/cancel", json={}, timeout=5).status_code == 409

    trail = requests.get(f"{base}/audit", timeout=5).json()
    assert [e["event"] for e in trail["events"]] == ["created", "note", "cancelled"]
    assert requests.get(f"{api}/admin/payments/missing/audit", timeout=5).status_code == 404


def test_admin_rescan(api, chain):
    order = create(api)
    chain.add_transfer(tx(3), 995, ONE_TOKEN)
    resp = requests.post(f"{api}/admin/payments/{order['order_id']}/rescan", timeout=5)
    assert resp.status_code == 200
    assert resp.json()["order"]["status"] == "paid"


def test_admin_tx_and_balance(api, chain):
    chain.add_transfer(tx(4), 995, ONE_TOKEN)
    chain.balances[ONECOP] = 10 ** 18
    audit = requests.get(f"{api}/admin/tx/{tx(4)}", timeout=5).json()
    assert audit["found"] is True
    assert audit["transfers"][0]["value_wei"] == ONE_TOKEN
    assert requests.get(f"{api}/admin/tx/0xbad", timeout=5).status_code == 400

    chain.fail_receipts.add(tx(4))
    assert requests.get(f"{api}/admin/tx/{tx(4)}", timeout=5).status_code == 502

    balances = requests.get(f"{api}/admin/balance", timeout=5).json()
    assert balances["balances"]["ONECOP"]["balance"] == "1"

    balances = requests.get(f"{api}/admin/balance", params={"wallet": PAYER}, timeout=5)
    assert balances.status_code == 200
    assert balances.json()["wallet"] == PAYER
    assert balances.json()["is_treasury"] is False
    assert requests.get(f"{api}/admin/balance?wallet=0xbad", timeout=5).status_code == 400
