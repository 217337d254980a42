#!/usr/bin/env python3
"""
BSC Payments - Reconciliation Engine
Match pending orders with on-chain ERC-20 transfers to the treasury, count
confirmations and move orders to paid or failed.

Order lifecycle (scanner side):
    pending -> processing -> paid | failed
cancelled is set only by an explicit admin action.
"""

import sys
import json
import time
import argparse
import logging
import sqlite3
import threading
from decimal import Decimal

from . import config
from . import db
from .chain import ChainClient, ChainError, transfer_topics
from .matcher import TRANSFER_TOPIC, find_transfer, select_candidate, parse_value, topic_to_address, normalize
from .orders import OrderNotFound, TransferMismatch, validate_address, validate_tx_hash

logger = logging.getLogger(__name__)


class ReconciliationScanner:
    """
    Advances payment orders using a shared ChainClient.

    The scanner keeps no order state between cycles: everything it needs is
    read from and written back to the store, so a crashed scan simply resumes.
    """

    def __init__(self, client, min_confirmations=None, lookback_blocks=None, batch_size=None):
        self.client = client
        self.min_confirmations = config.MIN_CONFIRMATIONS if min_confirmations is None else min_confirmations
        self.lookback_blocks = config.LOOKBACK_BLOCKS if lookback_blocks is None else lookback_blocks
        self.batch_size = config.SCAN_BATCH_SIZE if batch_size is None else batch_size
        self.last_block_height = None
        self._locks = {}
        self._locks_guard = threading.Lock()

    # ============================================================
    # Per-order locking
    # ============================================================

    def _order_lock(self, order_id):
        with self._locks_guard:
            lock = self._locks.get(order_id)
            if lock is None:
                lock = self._locks[order_id] = threading.Lock()
            return lock

    def _forget_lock(self, order_id):
        with self._locks_guard:
            self._locks.pop(order_id, None)

    # ============================================================
    # Single order
    # ============================================================

    def reconcile_order(self, order_id, current_height=None, logs_cache=None):
        """Evaluate one order once and return it as stored afterwards."""
        order, _ = self._reconcile(order_id, current_height, logs_cache)
        return order

    def _reconcile(self, order_id, current_height=None, logs_cache=None):
        """Returns (order, error). error is the per-order exception recorded, if any."""
        with self._order_lock(order_id):
            order = db.get_order(order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found")
            if order["status"] not in db.ACTIVE_STATUSES:
                return order, None

            try:
                height = self.client.block_number() if current_height is None else current_height
                if order["tx_hash"]:
                    updates, meta = self._check_bound_tx(order, height)
                else:
                    updates, meta = self._search_window(
                        order, height, {} if logs_cache is None else logs_cache)
                result = self._apply(order, updates, meta)
            except db.StaleOrderError:
                logger.info("Order %s changed while being reconciled; leaving it for the next pass", order_id)
                return db.get_order(order_id), None
            except (ChainError, ValueError, sqlite3.IntegrityError) as e:
                logger.warning("Order %s: %s", order_id, e)
                return self._record_error(order, e), e

        if result["status"] in db.TERMINAL_STATUSES:
            self._forget_lock(order_id)
        return result, None

    def _check_bound_tx(self, order, height):
        """The order has a tx hash: verify its receipt and count confirmations."""
        receipt = self.client.get_receipt(order["tx_hash"])
        if receipt is None or receipt.get("block_number") is None:
            return {"status": "processing"}, {"note_scan": "awaiting receipt"}

        if receipt["status"] != 1:
            return {"status": "failed"}, {"reason": "transaction failed on-chain"}

        transfer = find_transfer(receipt, order["token_contract"], order["treasury"], order["amount_wei"])
        if transfer is None:
            # unbind so the hash stays available to the order it actually pays
            return {"tx_hash": "", "tx_block_number": None, "seen_confirmations": 0, "status": "pending"}, {
                "rejected_tx_hash": order["tx_hash"],
                "rejected_reason": "transaction does not transfer the required amount to the treasury",
            }

        return self._confirmations(order, receipt["block_number"], height), {}

    def verify_submission(self, order, tx_hash):
        """
        Refuse a user-submitted hash that is mined and successful but does not
        pay this order. Unmined and reverted transactions pass and are settled
        by reconcile_order; a chain error defers the check to the scan.
        """
        try:
            receipt = self.client.get_receipt(tx_hash)
        except ChainError as e:
            logger.warning("Order %s: cannot pre-check %s, leaving it to the scanner: %s",
                           order["order_id"], tx_hash, e)
            return
        if receipt is None or receipt.get("block_number") is None or receipt["status"] != 1:
            return
        if find_transfer(receipt, order["token_contract"], order["treasury"], order["amount_wei"]) is None:
            raise TransferMismatch(
                f"Transaction {tx_hash} does not transfer {order['amount_wei']} wei of "
                f"{order['token']} to the treasury")

    def _search_window(self, order, height, logs_cache):
        """No tx hash yet: look for a qualifying transfer in the lookback window."""
        from_block = max(0, height - self.lookback_blocks)
        payer = order["from_address"] or None
        key = (order["token_contract"], order["treasury"], payer, from_block, height)
        logs = logs_cache.get(key)
        if logs is None:
            logs = self.client.get_logs(
                from_block, height, order["token_contract"], transfer_topics(order["treasury"], payer))
            logs_cache[key] = logs

        taken = db.bound_tx_hashes(exclude_order_id=order["order_id"])
        candidate = select_candidate(
            logs, order["token_contract"], order["treasury"], order["amount_wei"], exclude_hashes=taken)
        if candidate is None:
            return {}, {}

        receipt = self.client.get_receipt(candidate["tx_hash"])
        if receipt is None or receipt["status"] != 1:
            return {}, {"note_scan": f"candidate {candidate['tx_hash']} not verified"}
        if find_transfer(receipt, order["token_contract"], order["treasury"], order["amount_wei"]) is None:
            return {}, {"note_scan": f"candidate {candidate['tx_hash']} receipt has no qualifying transfer"}

        if not payer:
            logger.warning("Order %s matched %s without a payer hint (from %s)",
                           order["order_id"], candidate["tx_hash"], candidate["from"])

        updates = {"tx_hash": candidate["tx_hash"]}
        updates.update(self._confirmations(order, receipt["block_number"], height))
        return updates, {"tx_explorer": config.explorer_tx_url(candidate["tx_hash"]),
                         "source": "scanner"}

    def _confirmations(self, order, tx_block, height):
        """Confirmation count and resulting status; never decreases for the same block."""
        seen = max(0, height - tx_block + 1)
        if order["tx_block_number"] == tx_block:
            seen = max(seen, order["seen_confirmations"] or 0)
        elif order["tx_block_number"] is not None:
            logger.warning("Order %s: tx moved from block %s to %s (reorg?)",
                           order["order_id"], order["tx_block_number"], tx_block)
        status = "paid" if seen >= self.min_confirmations else "processing"
        return {"tx_block_number": tx_block, "seen_confirmations": seen, "status": status}

    def _apply(self, order, updates, meta):
        now = db.utcnow()
        metadata = dict(order["metadata"])
        metadata.update(meta)
        metadata.pop("last_error", None)
        if "note_scan" not in meta:
            metadata.pop("note_scan", None)
        metadata["last_scan_at"] = now
        if updates.get("tx_hash") == "":
            metadata.pop("tx_explorer", None)

        old_status = order["status"]
        new_status = updates.get("status", old_status)
        new_hash = updates.get("tx_hash", order["tx_hash"])

        event = None
        detail = {
            "tx_hash": new_hash or None,
            "confirmations": updates.get("seen_confirmations", order["seen_confirmations"]),
        }
        if new_status == "paid":
            metadata["verified_by"] = "scanner"
            metadata["verification_date"] = now
            event = ("paid", old_status, new_status, detail)
        elif new_status == "failed":
            detail["reason"] = metadata.get("reason")
            event = ("failed", old_status, new_status, detail)
        elif new_hash != order["tx_hash"] and not new_hash:
            detail["rejected"] = order["tx_hash"]
            detail["reason"] = metadata.get("rejected_reason")
            event = ("tx_rejected", old_status, new_status, detail)
        elif new_hash != order["tx_hash"]:
            event = ("tx_detected", old_status, new_status, detail)
        elif new_status != old_status:
            event = ("status", old_status, new_status, detail)

        result = db.update_order(order["order_id"], {**updates, "metadata": metadata},
                                 expected_updated_at=order["updated_at"], event=event)
        if event:
            logger.info("Order %s: %s -> %s (%s, %s confirmations)", order["order_id"], old_status,
                        new_status, new_hash or "no tx", result["seen_confirmations"])
        return result

    def _record_error(self, order, error):
        """Keep the status, remember the error for the admin and the next cycle."""
        metadata = dict(order["metadata"])
        metadata["last_error"] = f"{type(error).__name__}: {error}"
        metadata["last_error_at"] = db.utcnow()
        try:
            return db.update_order(order["order_id"], {"metadata": metadata},
                                   expected_updated_at=order["updated_at"])
        except db.StaleOrderError:
            return db.get_order(order["order_id"])

    # ============================================================
    # Batch cycle
    # ============================================================

    def run_cycle(self, should_stop=None):
        """
        Reconcile up to batch_size active orders, least recently updated first.
        A failure to read the block height aborts only this cycle.
        """
        started = time.monotonic()
        report = {
            "ok": True,
            "timestamp": db.utcnow(),
            "scanned": 0,
            "updated": 0,
            "paid": 0,
            "failed": 0,
            "errors": 0,
            "from_block": None,
            "to_block": None,
            "orders": [],
        }

        try:
            height = self.client.block_number()
        except ChainError as e:
            logger.error("Scan cycle aborted, cannot read block height: %s", e)
            report["ok"] = False
            report["error"] = str(e)
            return self._finish_cycle(report, started)

        self.last_block_height = height
        report["from_block"] = max(0, height - self.lookback_blocks)
        report["to_block"] = height

        logs_cache = {}
        for order in db.orders_due_for_scan(self.batch_size):
            if should_stop is not None and should_stop():
                report["stopped"] = True
                break
            report["scanned"] += 1
            order_id = order["order_id"]
            try:
                after, error = self._reconcile(order_id, current_height=height, logs_cache=logs_cache)
            except Exception as e:
                # isolate the batch from unexpected per-order failures
                logger.exception("Order %s: unexpected error during reconciliation", order_id)
                after, error = None, e

            entry = {"order_id": order_id, "before": order["status"]}
            if after is not None:
                entry["after"] = after["status"]
                entry["confirmations"] = after["seen_confirmations"]
                if (after["status"], after["seen_confirmations"], after["tx_hash"]) != \
                        (order["status"], order["seen_confirmations"], order["tx_hash"]):
                    report["updated"] += 1
                if after["status"] == "paid":
                    report["paid"] += 1
                elif after["status"] == "failed":
                    report["failed"] += 1
            if error is not None:
                entry["error"] = str(error)
                report["errors"] += 1
            report["orders"].append(entry)

        db.set_scan_state("last_block_height", height)
        return self._finish_cycle(report, started)

    def _finish_cycle(self, report, started):
        report["took_ms"] = int((time.monotonic() - started) * 1000)
        summary = {k: v for k, v in report.items() if k != "orders"}
        db.set_scan_state("last_cycle_report", summary)
        if report["scanned"] or not report["ok"]:
            logger.info("Scan cycle: scanned %d, updated %d, paid %d, failed %d, errors %d (%dms)",
                        report["scanned"], report["updated"], report["paid"], report["failed"],
                        report["errors"], report["took_ms"])
        return report

    # ============================================================
    # Transaction audit & balances
    # ============================================================

    def audit_transaction(self, tx_hash):
        """Receipt summary for a transaction, with its ERC-20 transfers and owning order."""
        tx_hash = validate_tx_hash(tx_hash)
        receipt = self.client.get_receipt(tx_hash)
        owner = db.get_order_by_tx_hash(tx_hash)
        result = {
            "tx_hash": tx_hash,
            "found": receipt is not None,
            "order_id": owner["order_id"] if owner else None,
            "explorer": config.explorer_tx_url(tx_hash),
        }
        if receipt is None:
            return result

        height = self.client.block_number()
        transfers = []
        for lg in receipt["logs"]:
            topics = lg["topics"]
            if len(topics) < 3 or normalize(topics[0]) != TRANSFER_TOPIC:
                continue
            transfers.append({
                "token_contract": lg["address"],
                "from": topic_to_address(topics[1]),
                "to": topic_to_address(topics[2]),
                "value_wei": str(parse_value(lg["data"])),
            })

        result.update({
            "status": "success" if receipt["status"] == 1 else "failed",
            "block_number": receipt["block_number"],
            "confirmations": max(0, height - receipt["block_number"] + 1),
            "from": receipt["from"],
            "to": receipt["to"],
            "gas_used": receipt["gas_used"],
            "transfers": transfers,
        })
        return result

    def treasury_balances(self, wallet=None):
        """Token balances of a wallet (default: the treasury), raw wei and human-readable."""
        wallet = validate_address(wallet, "wallet") if wallet else config.TREASURY_WALLET
        balances = {}
        for symbol, cfg in config.TOKENS.items():
            if not cfg["contract"]:
                continue
            try:
                raw = self.client.token_balance(cfg["contract"], wallet)
            except ChainError as e:
                balances[symbol] = {"error": str(e)}
                continue
            balances[symbol] = {
                "raw": str(raw),
                "balance": format((Decimal(raw) / Decimal(10 ** cfg["decimals"])).normalize(), "f"),
            }
        return {"wallet": wallet, "is_treasury": wallet == config.TREASURY_WALLET, "balances": balances}

    def health(self):
        return {
            "min_confirmations": self.min_confirmations,
            "lookback_blocks": self.lookback_blocks,
            "batch_size": self.batch_size,
            "last_block_height": self.last_block_height,
            "last_cycle": db.get_scan_state("last_cycle_report"),
        }


# ============================================================
# CLI
# ============================================================

def main(argv=None):
    parser = argparse.ArgumentParser(description="BSC Payments Reconciliation Engine")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("cycle", help="Run one reconciliation cycle")

    one = sub.add_parser("order", help="Reconcile a single order")
    one.add_argument("order_id")

    tx = sub.add_parser("tx", help="Audit a transaction")
    tx.add_argument("tx_hash")

    balance = sub.add_parser("balance", help="Token balances (treasury by default)")
    balance.add_argument("--wallet")

    watch = sub.add_parser("watch", help="Run scheduled cycles in the foreground")
    watch.add_argument("--interval", type=float, default=config.SCAN_INTERVAL_SECONDS)
    watch.add_argument("--jitter", type=float, default=config.SCAN_JITTER_SECONDS)

    args = parser.parse_args(argv)
    config.configure_logging()

    if args.command is None:
        parser.print_help()
        return 0

    scanner = ReconciliationScanner(ChainClient())

    if args.command == "cycle":
        result = scanner.run_cycle()
    elif args.command == "order":
        result = scanner.reconcile_order(args.order_id)
    elif args.command == "tx":
        result = scanner.audit_transaction(args.tx_hash)
    elif args.command == "balance":
        result = scanner.treasury_balances(args.wallet)
    else:
        from .scheduler import ScanScheduler
        ScanScheduler(scanner, interval=args.interval, jitter=args.jitter).run_forever()
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
