#!/usr/bin/env python3
"""
BSC Payments - First-Run Preflight

Validates environment, creates the data directory and database, tests RPC
connectivity and checks that the configured token contracts answer.

Usage:
    python -m bsc_payments.preflight

    # Or with env vars pre-set:
    TREASURY_WALLET=0x... ONECOP_CONTRACT=0x... python -m bsc_payments.preflight
"""

import os
import sys

from . import config


def banner(msg):
    print(f"\n{'='*60}")
    print(f"  {msg}")
    print(f"{'='*60}\n")


def ok(msg):
    print(f"  [ok]   {msg}")


def warn(msg):
    print(f"  [warn] {msg}")


def fail(msg):
    print(f"  [fail] {msg}")


def section(msg):
    print(f"\n--- {msg} ---")


def main(argv=None):
    banner("BSC Payments - Preflight")
    errors = []

    # ========================================
    # 1. Python version
    # ========================================
    section("Python")
    v = sys.version_info
    if v >= (3, 9):
        ok(f"Python {v.major}.{v.minor}.{v.micro}")
    else:
        fail(f"Python {v.major}.{v.minor} - requires 3.9+")
        errors.append("Python version too old")

    # ========================================
    # 2. Dependencies
    # ========================================
    section("Dependencies")
    try:
        import web3
        ok(f"web3.py {web3.__version__}")
    except ImportError:
        fail("web3 not installed - run: pip install -e .")
        errors.append("web3 not installed")

    try:
        import requests
        ok(f"requests {requests.__version__}")
    except ImportError:
        fail("requests not installed - run: pip install -e .")
        errors.append("requests not installed")

    if errors:
        banner("Preflight stopped: missing dependencies")
        return 1

    # ========================================
    # 3. Configuration
    # ========================================
    section("Configuration")
    problems = config.config_problems()
    for problem in problems:
        fail(problem)
    errors.extend(problems)
    if config.TREASURY_WALLET:
        ok(f"TREASURY_WALLET: {config.TREASURY_WALLET}")
    ok(f"MIN_CONFIRMATIONS={config.MIN_CONFIRMATIONS} LOOKBACK_BLOCKS={config.LOOKBACK_BLOCKS} "
       f"SCAN_BATCH_SIZE={config.SCAN_BATCH_SIZE}")
    if config.SCAN_ENABLED:
        ok(f"Scheduled scans every {config.SCAN_INTERVAL_SECONDS:.0f}s (jitter <= {config.SCAN_JITTER_SECONDS:.0f}s)")
    else:
        warn("Scheduled scans disabled - set SCAN_ENABLED=1 or call /cron/check-payments")
    if not config.CRON_SECRET:
        warn("PAYMENTS_CRON_SECRET not set - cron endpoint is open")
    if not config.ADMIN_API_KEY:
        warn("PAYMENTS_ADMIN_KEY not set - admin routes are open (dev mode)")

    # ========================================
    # 4. Data directory
    # ========================================
    section("Data Directory")
    if os.path.isdir(config.DATA_DIR):
        ok(f"Exists: {config.DATA_DIR}")
    else:
        os.makedirs(config.DATA_DIR, exist_ok=True)
        ok(f"Created: {config.DATA_DIR}")

    try:
        from . import db  # This triggers init_db() on import
        ok(f"SQLite database initialized: {db.DB_PATH}")
        counts = db.count_orders_by_status()
        if counts:
            ok("Orders: " + ", ".join(f"{k}={v}" for k, v in sorted(counts.items())))
    except Exception as e:
        fail(f"Database init failed: {e}")
        errors.append(f"DB init: {e}")

    # ========================================
    # 5. RPC connectivity
    # ========================================
    section("RPC Connectivity")
    from .chain import ChainClient, ChainError

    client = ChainClient()
    try:
        height = client.block_number()
        ok(f"{config.CHAIN['name']} ({client.rpc_url}): block #{height:,}")
    except ChainError as e:
        fail(f"{client.rpc_url}: {e}")
        errors.append(f"RPC: {e}")
        client = None

    # ========================================
    # 6. Token contracts
    # ========================================
    if client is not None and config.TREASURY_WALLET:
        section("Token Contracts")
        from .reconcile import ReconciliationScanner

        balances = ReconciliationScanner(client).treasury_balances()["balances"]
        for symbol in config.TOKENS:
            entry = balances.get(symbol)
            if entry is None:
                warn(f"{symbol}: no contract configured")
            elif "error" in entry:
                fail(f"{symbol}: {entry['error']}")
                errors.append(f"{symbol} contract: {entry['error']}")
            else:
                ok(f"{symbol}: treasury holds {entry['balance']}")

    # ========================================
    # Summary
    # ========================================
    banner("Preflight Complete" if not errors else "Preflight Complete (with issues)")

    if errors:
        print("Issues to fix:")
        for e in errors:
            print(f"  - {e}")
        print()

    print("Quick start:")
    print("  bsc-payments-orders create USDT 1000000000000000000")
    print("  bsc-payments-scan cycle")
    print()
    print("Start the API server:")
    print("  bsc-payments-server --scan")
    print()

    return 0 if not errors else 1


def cli():
    sys.exit(main())


if __name__ == "__main__":
    cli()
