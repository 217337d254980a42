"""
BSC Payments - Configuration and Constants
Chain config, token contracts, ABI and scanner tunables.

All configuration can be overridden via environment variables:
- BSC_RPC_URL - JSON-RPC endpoint (default: public BSC dataseed)
- ONECOP_CONTRACT / USDT_CONTRACT - ERC-20 token contracts
- TREASURY_WALLET - address that receives payments
- MIN_CONFIRMATIONS, LOOKBACK_BLOCKS, SCAN_BATCH_SIZE - reconciliation policy
- SCAN_ENABLED, SCAN_INTERVAL_SECONDS, SCAN_JITTER_SECONDS - scheduled scan
- RPC_TIMEOUT_SECONDS, RPC_MAX_RETRIES - RPC call budget
- PAYMENTS_CRON_SECRET - shared secret for the on-demand scan endpoint
- PAYMENTS_ADMIN_KEY - Bearer token for admin routes
- PAYMENTS_DATA_DIR - data directory (default: <project>/data/)
"""

import os
import json
import logging

PROJECT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _load_dotenv():
    """Load .env file from project root if it exists. No dependencies required."""
    env_path = os.path.join(PROJECT_DIR, ".env")
    if not os.path.isfile(env_path):
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip('"').strip("'")
            # Don't override existing env vars
            if key and key not in os.environ:
                os.environ[key] = value


_load_dotenv()


def _env(*names, default=""):
    """First non-empty value among several env var names (new name first, legacy aliases after)."""
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return default


def _env_int(*names, default):
    raw = _env(*names, default="")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{names[0]} must be an integer, got {raw!r}")


def _env_float(*names, default):
    raw = _env(*names, default="")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{names[0]} must be a number, got {raw!r}")


def _env_bool(*names, default=False):
    raw = _env(*names, default="")
    if not raw:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ============================================================
# Chain Configuration
# ============================================================

CHAIN = {
    "name": "BNB Smart Chain",
    "chain_id": 56,
    "rpc": _env("BSC_RPC_URL", default="https://bsc-dataseed.binance.org"),
    "explorer": _env("BSC_EXPLORER_URL", default="https://bscscan.com").rstrip("/"),
}

# Token contracts are stored lowercase; comparisons are case-insensitive anyway
TOKENS = {
    "ONECOP": {
        "contract": _env("ONECOP_CONTRACT").lower(),
        "decimals": 18,
    },
    "USDT": {
        "contract": _env("USDT_CONTRACT", "USDT_BSC_CONTRACT",
                         default="0x55d398326f99059fF775485246999027B3197955").lower(),
        "decimals": 18,
    },
}

TREASURY_WALLET = _env("TREASURY_WALLET").lower()

ORDER_KINDS = ("TIP", "WITHDRAWAL", "DISTRIBUTION", "BONUS")


# ============================================================
# Reconciliation Policy
# ============================================================

MIN_CONFIRMATIONS = _env_int("MIN_CONFIRMATIONS", default=3)
LOOKBACK_BLOCKS = _env_int("LOOKBACK_BLOCKS", default=800)
SCAN_BATCH_SIZE = _env_int("SCAN_BATCH_SIZE", "CRON_BATCH_SIZE", default=50)

SCAN_ENABLED = _env_bool("SCAN_ENABLED", "CRON_ENABLED", default=False)
SCAN_INTERVAL_SECONDS = _env_float("SCAN_INTERVAL_SECONDS", default=300.0)
SCAN_JITTER_SECONDS = _env_float("SCAN_JITTER_SECONDS", default=30.0)

RPC_TIMEOUT_SECONDS = _env_float("RPC_TIMEOUT_SECONDS", default=15.0)
RPC_MAX_RETRIES = _env_int("RPC_MAX_RETRIES", default=5)


# ============================================================
# API
# ============================================================

CRON_SECRET = _env("PAYMENTS_CRON_SECRET", "CRON_SECRET")
ADMIN_API_KEY = _env("PAYMENTS_ADMIN_KEY")
API_PORT = _env_int("PAYMENTS_PORT", "PORT", default=4000)


# ============================================================
# ABIs
# ============================================================

# Minimal ERC20 ABI (read-only: balances and metadata)
ERC20_ABI = json.loads("""[
    {"inputs":[],"name":"name","outputs":[{"name":"","type":"string"}],"stateMutability":"view","type":"function"},
    {"inputs":[],"name":"symbol","outputs":[{"name":"","type":"string"}],"stateMutability":"view","type":"function"},
    {"inputs":[],"name":"decimals","outputs":[{"name":"","type":"uint8"}],"stateMutability":"view","type":"function"},
    {"inputs":[{"name":"account","type":"address"}],"name":"balanceOf","outputs":[{"name":"","type":"uint256"}],"stateMutability":"view","type":"function"},
    {"anonymous":false,"inputs":[{"indexed":true,"name":"from","type":"address"},{"indexed":true,"name":"to","type":"address"},{"indexed":false,"name":"value","type":"uint256"}],"name":"Transfer","type":"event"}
]""")


# ============================================================
# Data paths
# ============================================================

DATA_DIR = _env("PAYMENTS_DATA_DIR", default=os.path.join(PROJECT_DIR, "data"))
DB_PATH = os.path.join(DATA_DIR, "payments.db")


# ============================================================
# Logging
# ============================================================

LOG_LEVEL = _env("LOG_LEVEL", default="INFO").upper()


def configure_logging(level=None):
    """Configure root logging once for CLI and server entry points."""
    logging.basicConfig(
        level=getattr(logging, level or LOG_LEVEL, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


def token_contract(token):
    """Contract address for a token symbol, or raise ValueError."""
    symbol = (token or "").strip().upper()
    if symbol not in TOKENS:
        raise ValueError(f"Unsupported token: {token!r} (expected one of {', '.join(TOKENS)})")
    contract = TOKENS[symbol]["contract"]
    if not contract:
        raise ValueError(f"Token {symbol} has no contract configured")
    return contract


def explorer_tx_url(tx_hash):
    return f"{CHAIN['explorer']}/tx/{tx_hash}"


def config_problems():
    """List of human-readable configuration problems (empty when ready)."""
    problems = []
    if not CHAIN["rpc"]:
        problems.append("BSC_RPC_URL is empty")
    if not TREASURY_WALLET:
        problems.append("TREASURY_WALLET is not set")
    for symbol, cfg in TOKENS.items():
        if not cfg["contract"]:
            problems.append(f"{symbol} contract is not set")
    if MIN_CONFIRMATIONS < 1:
        problems.append("MIN_CONFIRMATIONS must be at least 1")
    if LOOKBACK_BLOCKS < 0:
        problems.append("LOOKBACK_BLOCKS cannot be negative")
    if SCAN_BATCH_SIZE < 1:
        problems.append("SCAN_BATCH_SIZE must be at least 1")
    return problems
