#!/usr/bin/env python3
"""
BSC Payments - REST API Server

A lightweight HTTP server for creating payment orders, submitting transaction
hashes and polling status, plus an authenticated cron trigger and admin routes.

Usage:
    # Start the server (scheduled scans on)
    SCAN_ENABLED=1 PAYMENTS_ADMIN_KEY=secret python -m bsc_payments.server --port 4000

Environment Variables:
    PAYMENTS_CRON_SECRET - shared secret for /cron/check-payments (Bearer or ?token=)
    PAYMENTS_ADMIN_KEY   - Bearer token for /admin routes (open in dev mode when unset)
    PAYMENTS_PORT        - Port to listen on (default: 4000)
"""

import sys
import json
import hmac
import argparse
import logging
from http.server import HTTPServer, BaseHTTPRequestHandler
from urllib.parse import urlparse, parse_qs
from datetime import datetime, timezone

from . import __version__
from . import config
from . import db
from . import orders
from .chain import ChainClient, ChainError
from .reconcile import ReconciliationScanner
from .scheduler import ScanScheduler

logger = logging.getLogger(__name__)


class HTTPError(Exception):
    def __init__(self, status, message):
        super().__init__(message)
        self.status = status


# ============================================================
# Auth
# ============================================================

def _bearer(handler):
    auth = handler.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[len("Bearer "):].strip()
    return ""


def _matches(secret, candidate):
    return bool(candidate) and hmac.compare_digest(secret.encode(), candidate.encode())


def check_cron_auth(handler, qs):
    """Cron secret as Bearer token or ?token= (schedulers that cannot set headers)."""
    secret = config.CRON_SECRET
    if not secret:
        return
    token = (qs.get("token") or [""])[0]
    if _matches(secret, _bearer(handler)) or _matches(secret, token):
        return
    raise HTTPError(401, "Unauthorized: invalid or missing cron secret")


def check_admin_auth(handler):
    """Verify Bearer token if PAYMENTS_ADMIN_KEY is set."""
    key = config.ADMIN_API_KEY
    if not key:
        return
    if not _matches(key, _bearer(handler)):
        raise HTTPError(401, "Unauthorized: invalid or missing Bearer token")


def _field(body, *names, default=None):
    """First present key among snake_case and camelCase spellings."""
    for name in names:
        if body.get(name) is not None:
            return body[name]
    return default


def _qs_int(qs, name, default):
    raw = (qs.get(name) or [None])[0]
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


# ============================================================
# Request Handler
# ============================================================

class PaymentsHandler(BaseHTTPRequestHandler):
    """HTTP handler for payment API endpoints."""

    server_version = f"bsc-payments/{__version__}"

    def log_message(self, format, *args):
        logger.info("%s %s", self.address_string(), format % args)

    @property
    def scanner(self):
        return self.server.scanner

    @property
    def scheduler(self):
        return self.server.scheduler

    def send_json(self, data, status=200):
        """Send a JSON response."""
        body = json.dumps(data, indent=2, default=str).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Access-Control-Allow-Origin", "*")
        self.end_headers()
        self.wfile.write(body)

    def send_error_json(self, status, message):
        """Send a JSON error response."""
        self.send_json({"ok": False, "error": message, "status": status}, status)

    def read_body(self):
        """Read and parse JSON request body."""
        length = int(self.headers.get("Content-Length", 0) or 0)
        if length == 0:
            return {}
        raw = self.rfile.read(length)
        try:
            body = json.loads(raw)
        except json.JSONDecodeError:
            raise ValueError("Request body is not valid JSON")
        if not isinstance(body, dict):
            raise ValueError("Request body must be a JSON object")
        return body

    def route(self, method):
        """Route requests to handlers and map errors to status codes."""
        parsed = urlparse(self.path)
        path = parsed.path.rstrip("/") or "/"
        qs = parse_qs(parsed.query)

        try:
            self.dispatch(method, path, qs)
        except HTTPError as e:
            self.send_error_json(e.status, str(e))
        except (orders.OrderConflict, db.StaleOrderError) as e:
            self.send_error_json(409, str(e))
        except ValueError as e:
            self.send_error_json(400, str(e))
        except LookupError as e:
            # KeyError's str() wraps the key in quotes
            self.send_error_json(404, e.args[0] if isinstance(e, KeyError) and e.args else str(e))
        except ChainError as e:
            logger.warning("%s %s: chain error: %s", method, path, e)
            self.send_error_json(502, f"Chain error: {e}")
        except Exception as e:
            logger.exception("%s %s failed", method, path)
            self.send_error_json(500, str(e))

    def dispatch(self, method, path, qs):
        routes = {
            "GET": {
                "/health": self.handle_health,
                "/cron/health": self.handle_cron_health,
                "/cron/check-payments": self.handle_cron_check,
                "/cron/payments": self.handle_cron_check,
                "/admin/payments": self.handle_admin_list,
                "/admin/balance": self.handle_admin_balance,
            },
            "POST": {
                "/payments/create": self.handle_create,
                "/payments/submit-tx": self.handle_submit,
                "/cron/check-payments": self.handle_cron_check,
                "/cron/payments": self.handle_cron_check,
            },
        }

        # Exact match
        handler = routes.get(method, {}).get(path)
        if handler:
            return handler(qs)

        # Parameterized routes
        parts = path.split("/")
        if method == "GET" and len(parts) == 4 and parts[1] == "payments" and parts[3] == "status":
            return self.handle_status(parts[2])
        if len(parts) >= 4 and parts[1] == "admin" and parts[2] == "payments":
            order_id = parts[3]
            action = parts[4] if len(parts) == 5 else None
            if len(parts) <= 5:
                if method == "GET" and action is None:
                    return self.handle_admin_get(order_id)
                if method == "GET" and action == "audit":
                    return self.handle_admin_audit(order_id)
                if method == "POST" and action == "cancel":
                    return self.handle_admin_cancel(order_id)
                if method == "POST" and action == "note":
                    return self.handle_admin_note(order_id)
                if method == "POST" and action == "rescan":
                    return self.handle_admin_rescan(order_id)
        if method == "GET" and len(parts) == 4 and parts[1] == "admin" and parts[2] == "tx":
            return self.handle_admin_tx(parts[3])

        raise HTTPError(404, f"Not found: {method} {path}")

    # --- Public handlers ---

    def handle_health(self, qs=None):
        self.send_json({
            "ok": True,
            "status": "ok",
            "service": "bsc-payments",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "chain": self.scanner.client.health(),
            "scheduler": self.scheduler.health() if self.scheduler else None,
        })

    def handle_create(self, qs=None):
        """
        POST /payments/create
        {"token": "USDT", "amount_wei": "1000000000000000000", "from_address": "0x..."}
        """
        body = self.read_body()
        token = _field(body, "token")
        amount = _field(body, "amount_wei", "amountWei")
        if token is None or amount is None:
            raise ValueError("token and amount_wei are required")
        order = orders.create_order(
            token,
            amount,
            from_address=_field(body, "from_address", "fromAddress"),
            kind=_field(body, "kind", default="TIP"),
            note=_field(body, "note", default=""),
            source="api",
        )
        self.send_json({"ok": True, **order}, 201)

    def handle_submit(self, qs=None):
        """
        POST /payments/submit-tx
        {"order_id": "...", "tx_hash": "0x..."}
        """
        body = self.read_body()
        order_id = _field(body, "order_id", "orderId")
        tx_hash = _field(body, "tx_hash", "txHash")
        if not order_id or not tx_hash:
            raise ValueError("order_id and tx_hash are required")
        result = orders.submit_transaction(order_id, tx_hash, self.scanner)
        self.send_json({"ok": True, **result})

    def handle_status(self, order_id):
        self.send_json({"ok": True, **orders.get_status(order_id)})

    # --- Cron ---

    def handle_cron_health(self, qs=None):
        self.send_json({
            "ok": True,
            "scan_enabled": config.SCAN_ENABLED,
            "scanner": self.scanner.health(),
            "scheduler": self.scheduler.health() if self.scheduler else None,
            "orders": db.count_orders_by_status(),
        })

    def handle_cron_check(self, qs=None):
        check_cron_auth(self, qs or {})
        if self.scheduler:
            report = self.scheduler.trigger()
        else:
            report = self.scanner.run_cycle()
        self.send_json(report, 200 if report.get("ok") else 502)

    # --- Admin ---

    def handle_admin_list(self, qs=None):
        check_admin_auth(self)
        qs = qs or {}
        result = orders.list_orders(
            status=(qs.get("status") or [None])[0],
            token=(qs.get("token") or [None])[0],
            kind=(qs.get("kind") or [None])[0],
            limit=_qs_int(qs, "limit", 50),
            offset=_qs_int(qs, "offset", 0),
        )
        self.send_json({"ok": True, "orders": result, "counts": db.count_orders_by_status()})

    def handle_admin_get(self, order_id):
        check_admin_auth(self)
        self.send_json({"ok": True, "order": orders.get_order(order_id)})

    def handle_admin_audit(self, order_id):
        check_admin_auth(self)
        self.send_json({"ok": True, **orders.get_order_audit_trail(order_id)})

    def handle_admin_cancel(self, order_id):
        check_admin_auth(self)
        body = self.read_body()
        order = orders.cancel_order(order_id, reason=body.get("reason", ""), actor="admin")
        self.send_json({"ok": True, "order": order})

    def handle_admin_note(self, order_id):
        check_admin_auth(self)
        body = self.read_body()
        note = body.get("note")
        if not isinstance(note, str) or not note.strip():
            raise ValueError("note is required")
        order = orders.add_note(order_id, note.strip(), actor="admin")
        self.send_json({"ok": True, "order": order})

    def handle_admin_rescan(self, order_id):
        check_admin_auth(self)
        order = self.scanner.reconcile_order(order_id)
        self.send_json({"ok": True, "order": order})

    def handle_admin_tx(self, tx_hash):
        check_admin_auth(self)
        self.send_json({"ok": True, **self.scanner.audit_transaction(tx_hash)})

    def handle_admin_balance(self, qs=None):
        check_admin_auth(self)
        wallet = ((qs or {}).get("wallet") or [None])[0]
        self.send_json({"ok": True, **self.scanner.treasury_balances(wallet)})

    # --- HTTP method dispatchers ---

    def do_GET(self):
        self.route("GET")

    def do_POST(self):
        self.route("POST")

    def do_OPTIONS(self):
        """Handle CORS preflight."""
        self.send_response(204)
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Authorization, Content-Type")
        self.end_headers()


# ============================================================
# Server
# ============================================================

class PaymentsServer(HTTPServer):
    """HTTPServer carrying the shared scanner and (optional) scheduler."""

    def __init__(self, address, scanner, scheduler=None):
        super().__init__(address, PaymentsHandler)
        self.scanner = scanner
        self.scheduler = scheduler


def make_server(scanner, scheduler=None, host="0.0.0.0", port=None):
    port = config.API_PORT if port is None else port
    return PaymentsServer((host, port), scanner, scheduler)


def run_server(port=None, host="0.0.0.0", scan=None):
    """Start the payments API server, with the scan scheduler if enabled."""
    scan = config.SCAN_ENABLED if scan is None else scan
    for problem in config.config_problems():
        logger.warning("Config: %s", problem)

    scanner = ReconciliationScanner(ChainClient())
    scheduler = ScanScheduler(scanner)
    server = make_server(scanner, scheduler, host, port)

    if scan:
        scheduler.start()

    auth_mode = "Bearer token" if config.ADMIN_API_KEY else "OPEN (set PAYMENTS_ADMIN_KEY for production)"
    logger.info("BSC Payments API v%s listening on %s:%s", __version__, host, server.server_port)
    logger.info("Admin auth: %s", auth_mode)
    logger.info("Scheduled scans: %s", f"every {scheduler.interval:.0f}s" if scan else "off (use /cron/check-payments)")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Server stopped.")
    finally:
        scheduler.stop(timeout=config.RPC_TIMEOUT_SECONDS * 2)
        server.server_close()


# ============================================================
# CLI
# ============================================================

def main(argv=None):
    parser = argparse.ArgumentParser(description="BSC Payments API Server")
    parser.add_argument("--port", type=int, default=None, help="Port (default: 4000 or PAYMENTS_PORT)")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    scan = parser.add_mutually_exclusive_group()
    scan.add_argument("--scan", dest="scan", action="store_true", default=None,
                      help="Run scheduled scans (default: SCAN_ENABLED)")
    scan.add_argument("--no-scan", dest="scan", action="store_false")
    args = parser.parse_args(argv)
    config.configure_logging()
    run_server(port=args.port, host=args.host, scan=args.scan)
    return 0


def cli():
    try:
        sys.exit(main())
    except OSError as e:
        print(json.dumps({"error": f"Cannot start server: {e}"}), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    cli()
