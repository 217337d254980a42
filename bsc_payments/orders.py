#!/usr/bin/env python3
"""
BSC Payments - Payment Orders
Create orders, accept user-submitted transaction hashes, report status.
Admin actions: list, cancel, annotate, audit trail.

Inputs are validated here, before anything touches the chain or the store.
"""

import re
import sys
import json
import uuid
import sqlite3
import argparse
import logging

from web3 import Web3

from . import config
from . import db

logger = logging.getLogger(__name__)

TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
AMOUNT_RE = re.compile(r"^[0-9]+$")


class OrderNotFound(LookupError):
    pass


class OrderConflict(ValueError):
    """The request is well-formed but conflicts with the order's current state."""


class TransferMismatch(OrderConflict):
    """The submitted transaction is mined but does not pay this order."""


# ============================================================
# Validation
# ============================================================

def validate_tx_hash(tx_hash):
    if not isinstance(tx_hash, str) or not TX_HASH_RE.match(tx_hash.strip()):
        raise ValueError(f"Invalid transaction hash: {tx_hash!r}")
    return tx_hash.strip().lower()


def validate_address(address, field="address"):
    if not isinstance(address, str) or not Web3.is_address(address.strip()):
        raise ValueError(f"Invalid {field}: {address!r}")
    return address.strip().lower()


def validate_amount_wei(amount_wei):
    """
    Positive integer amount in wei, returned as a decimal string.
    Floats are rejected outright: 18-decimal amounts do not survive them.
    """
    if isinstance(amount_wei, bool) or isinstance(amount_wei, float):
        raise ValueError(f"amount_wei must be an integer string, got {amount_wei!r}")
    if isinstance(amount_wei, int):
        value = amount_wei
    elif isinstance(amount_wei, str) and AMOUNT_RE.match(amount_wei.strip()):
        value = int(amount_wei.strip())
    else:
        raise ValueError(f"amount_wei must be an integer string, got {amount_wei!r}")
    if value <= 0:
        raise ValueError(f"amount_wei must be positive, got {amount_wei!r}")
    return str(value)


# ============================================================
# Order Operations
# ============================================================

def create_order(token, amount_wei, from_address=None, kind="TIP", note="", source="api"):
    """
    Create a new pending order. No chain interaction.
    Returns what the payer needs: order id, token contract, treasury, amount.
    """
    symbol = (token or "").strip().upper()
    contract = config.token_contract(symbol)
    treasury = config.TREASURY_WALLET
    if not treasury:
        raise ValueError("TREASURY_WALLET is not configured")
    amount = validate_amount_wei(amount_wei)
    payer = validate_address(from_address, "from_address") if from_address else ""
    kind = (kind or "TIP").upper()
    if kind not in config.ORDER_KINDS:
        raise ValueError(f"Invalid kind: {kind!r} (expected one of {', '.join(config.ORDER_KINDS)})")

    now = db.utcnow()
    order = {
        "order_id": str(uuid.uuid4()),
        "token": symbol,
        "token_contract": contract,
        "treasury": treasury,
        "amount_wei": amount,
        "from_address": payer,
        "kind": kind,
        "status": "pending",
        "tx_hash": "",
        "tx_block_number": None,
        "seen_confirmations": 0,
        "metadata": {"note": note or "", "source": source},
        "created_at": now,
        "updated_at": now,
    }
    db.insert_order(order)
    db.add_event(order["order_id"], "created", None, "pending",
                 {"token": symbol, "amount_wei": amount, "from_address": payer, "source": source})
    logger.info("Created order %s: %s wei %s", order["order_id"], amount, symbol)

    return {
        "order_id": order["order_id"],
        "token": symbol,
        "token_contract": contract,
        "treasury": treasury,
        "amount_wei": amount,
    }


def get_order(order_id):
    order = db.get_order(order_id)
    if not order:
        raise OrderNotFound(f"Order {order_id} not found")
    return order


def status_view(order):
    """Public projection of an order."""
    return {
        "order_id": order["order_id"],
        "status": order["status"],
        "confirmations": order.get("seen_confirmations") or 0,
        "tx_hash": order.get("tx_hash") or None,
    }


def get_status(order_id):
    return status_view(get_order(order_id))


def submit_transaction(order_id, tx_hash, scanner):
    """
    Bind a user-asserted tx hash to an order and reconcile it right away.

    A paid order returns its status unchanged. A failed or cancelled order
    cannot take a new hash. A hash already bound to another order is refused.
    A processing order that is not paid yet may have its hash replaced.
    A mined transaction that does not pay this order is refused and never bound.
    """
    tx_hash = validate_tx_hash(tx_hash)
    order = get_order(order_id)

    if order["status"] == "paid":
        return status_view(order)
    if order["status"] in ("failed", "cancelled"):
        raise OrderConflict(f"Order {order_id} is {order['status']}")

    owner = db.get_order_by_tx_hash(tx_hash)
    if owner and owner["order_id"] != order_id:
        raise OrderConflict(f"Transaction {tx_hash} is already bound to another order")

    if order["tx_hash"] != tx_hash:
        scanner.verify_submission(order, tx_hash)
        metadata = dict(order["metadata"])
        metadata["tx_explorer"] = config.explorer_tx_url(tx_hash)
        metadata["source"] = "submit"
        try:
            db.update_order(order_id, {
                "tx_hash": tx_hash,
                "tx_block_number": None,
                "seen_confirmations": 0,
                "status": "processing",
                "metadata": metadata,
            }, expected_updated_at=order["updated_at"],
                event=("tx_submitted", order["status"], "processing",
                       {"tx_hash": tx_hash, "replaced": order["tx_hash"] or None}))
        except sqlite3.IntegrityError:
            raise OrderConflict(f"Transaction {tx_hash} is already bound to another order")

    updated = scanner.reconcile_order(order_id)
    return status_view(updated)


def list_orders(status=None, token=None, kind=None, limit=50, offset=0):
    return db.list_orders(status=status, token=token, kind=kind, limit=limit, offset=offset)


def cancel_order(order_id, reason="", actor="admin"):
    """Cancel an order that has not reached a terminal state."""
    order = get_order(order_id)
    if order["status"] in db.TERMINAL_STATUSES:
        raise OrderConflict(f"Cannot cancel {order_id}: already {order['status']}")

    metadata = dict(order["metadata"])
    metadata["reason"] = reason or "cancelled"
    metadata["admin_action_by"] = actor
    return db.update_order(order_id, {
        "status": "cancelled",
        "metadata": metadata,
    }, expected_updated_at=order["updated_at"],
        event=("cancelled", order["status"], "cancelled", {"reason": reason, "actor": actor}))


def add_note(order_id, note, actor="admin"):
    order = get_order(order_id)
    metadata = dict(order["metadata"])
    metadata["note"] = note
    metadata["admin_action_by"] = actor
    return db.update_order(order_id, {"metadata": metadata},
                           expected_updated_at=order["updated_at"],
                           event=("note", order["status"], order["status"], {"note": note, "actor": actor}))


def get_order_audit_trail(order_id):
    """
    Full audit trail for an order:
    Order -> events (created, tx bound, confirmations, terminal state) -> explorer link
    """
    order = get_order(order_id)
    return {
        "order_id": order["order_id"],
        "token": order["token"],
        "token_contract": order["token_contract"],
        "treasury": order["treasury"],
        "amount_wei": order["amount_wei"],
        "from_address": order["from_address"] or None,
        "kind": order["kind"],
        "status": order["status"],
        "tx_hash": order["tx_hash"] or None,
        "tx_block_number": order["tx_block_number"],
        "confirmations": order["seen_confirmations"],
        "tx_explorer": order["metadata"].get("tx_explorer"),
        "created_at": order["created_at"],
        "updated_at": order["updated_at"],
        "events": db.get_events(order_id),
    }


# ============================================================
# CLI
# ============================================================

def main(argv=None):
    from .chain import ChainClient
    from .reconcile import ReconciliationScanner

    parser = argparse.ArgumentParser(description="BSC Payment Orders")
    sub = parser.add_subparsers(dest="command")

    create = sub.add_parser("create", help="Create a payment order")
    create.add_argument("token", choices=list(config.TOKENS.keys()))
    create.add_argument("amount_wei", help="Exact amount in wei (integer)")
    create.add_argument("--from", dest="from_address")
    create.add_argument("--kind", default="TIP", choices=list(config.ORDER_KINDS))
    create.add_argument("--note", default="")

    submit = sub.add_parser("submit", help="Submit a transaction hash for an order")
    submit.add_argument("order_id")
    submit.add_argument("tx_hash")

    status = sub.add_parser("status", help="Order status")
    status.add_argument("order_id")

    ls = sub.add_parser("list", help="List orders")
    ls.add_argument("--status", choices=list(db.ACTIVE_STATUSES + db.TERMINAL_STATUSES))
    ls.add_argument("--token", choices=list(config.TOKENS.keys()))
    ls.add_argument("--kind", choices=list(config.ORDER_KINDS))
    ls.add_argument("--limit", type=int, default=50)

    cancel = sub.add_parser("cancel", help="Cancel an order")
    cancel.add_argument("order_id")
    cancel.add_argument("--reason", default="")

    audit = sub.add_parser("audit", help="Order audit trail")
    audit.add_argument("order_id")

    args = parser.parse_args(argv)
    config.configure_logging()

    if args.command == "create":
        result = create_order(args.token, args.amount_wei, args.from_address,
                              kind=args.kind, note=args.note, source="cli")
    elif args.command == "submit":
        scanner = ReconciliationScanner(ChainClient())
        result = submit_transaction(args.order_id, args.tx_hash, scanner)
    elif args.command == "status":
        result = get_status(args.order_id)
    elif args.command == "list":
        result = list_orders(args.status, args.token, args.kind, args.limit)
    elif args.command == "cancel":
        result = cancel_order(args.order_id, args.reason, actor="cli")
    elif args.command == "audit":
        result = get_order_audit_trail(args.order_id)
    else:
        parser.print_help()
        return 0

    print(json.dumps(result, indent=2, default=str))
    return 0


def cli():
    try:
        sys.exit(main())
    except (ValueError, LookupError) as e:
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(json.dumps({"error": f"Unexpected error: {e}"}), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    cli()
