import os
import tempfile
import threading

# The store initialises itself on import; keep it out of the project data dir.
os.environ.setdefault("PAYMENTS_DATA_DIR", tempfile.mkdtemp(prefix="bsc-payments-tests-"))

import pytest

from bsc_payments import config
from bsc_payments import db
from bsc_payments.chain import TransientChainError
from bsc_payments.matcher import TRANSFER_TOPIC, address_to_topic

TREASURY = "0x" + "ab" * 20
ONECOP = "0x" + "c0" * 20
USDT = "0x55d398326f99059ff775485246999027b3197955"
PAYER = "0x" + "11" * 20
OTHER_PAYER = "0x" + "22" * 20
ONE_TOKEN = "1000000000000000000"


def tx(n):
    """Deterministic 32-byte transaction hash."""
    return "0x" + format(n, "064x")


def transfer_log(tx_hash, block, value, contract=ONECOP, sender=PAYER, to=TREASURY, log_index=0):
    """A normalised Transfer log, as ChainClient returns it."""
    return {
        "address": contract,
        "topics": [TRANSFER_TOPIC, address_to_topic(sender), address_to_topic(to)],
        "data": "0x" + format(int(value), "064x"),
        "tx_hash": tx_hash,
        "block_number": block,
        "log_index": log_index,
    }


class FakeChain:
    """In-memory stand-in for ChainClient: a block height, receipts and logs."""

    def __init__(self, height=1000):
        self.height = height
        self.receipts = {}
        self.logs = []
        self.balances = {}
        self.calls = []
        self.fail_block_number = False
        self.fail_receipts = set()
        self.healthy = True
        self.ready = True
        # set to a threading.Event to hold callers inside get_receipt until it is set
        self.gate = None
        self.entered = threading.Semaphore(0)

    def add_transfer(self, tx_hash, block, value, status=1, contract=ONECOP, sender=PAYER,
                     to=TREASURY, log_index=0):
        log = transfer_log(tx_hash, block, value, contract, sender, to, log_index)
        if status == 1:
            self.logs.append(log)
        self.receipts[tx_hash] = {
            "tx_hash": tx_hash,
            "status": status,
            "block_number": block,
            "from": sender,
            "to": contract,
            "gas_used": 51000,
            "logs": [log] if status == 1 else [],
        }
        return log

    def block_number(self):
        self.calls.append(("block_number",))
        if self.fail_block_number:
            raise TransientChainError("eth_blockNumber: read timed out")
        return self.height

    def get_receipt(self, tx_hash):
        self.calls.append(("get_receipt", tx_hash))
        if self.gate is not None:
            self.entered.release()
            self.gate.wait(5)
        if tx_hash in self.fail_receipts:
            raise TransientChainError("eth_getTransactionReceipt: read timed out")
        receipt = self.receipts.get(tx_hash)
        if receipt is None or receipt["block_number"] > self.height:
            return None
        return receipt

    def get_logs(self, from_block, to_block, address, topics):
        self.calls.append(("get_logs", from_block, to_block))
        found = []
        for lg in self.logs:
            if lg["address"] != address.lower():
                continue
            if not from_block <= lg["block_number"] <= to_block:
                continue
            if any(t is not None and t != lg["topics"][i] for i, t in enumerate(topics)):
                continue
            found.append(lg)
        return found

    def token_balance(self, contract, wallet):
        self.calls.append(("token_balance", contract, wallet))
        return self.balances.get(contract, 0)

    def wait_until_ready(self, max_retries=None, base_delay=1.0, max_delay=30.0):
        self.calls.append(("wait_until_ready",))
        if self.ready:
            self.healthy = True
        return self.ready

    def health(self):
        return {"rpc": "fake", "healthy": self.healthy, "last_block_height": self.height}

    def count(self, method):
        return sum(1 for c in self.calls if c[0] == method)


@pytest.fixture(autouse=True)
def store(tmp_path, monkeypatch):
    """Fresh SQLite file and a known token/treasury configuration per test."""
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "payments.db"))
    db.init_db()
    monkeypatch.setattr(config, "TOKENS", {
        "ONECOP": {"contract": ONECOP, "decimals": 18},
        "USDT": {"contract": USDT, "decimals": 18},
    })
    monkeypatch.setattr(config, "TREASURY_WALLET", TREASURY)
    monkeypatch.setattr(config, "CRON_SECRET", "")
    monkeypatch.setattr(config, "ADMIN_API_KEY", "")
    return db.DB_PATH


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def scanner(chain):
    from bsc_payments.reconcile import ReconciliationScanner
    return ReconciliationScanner(chain, min_confirmations=3, lookback_blocks=800, batch_size=50)
