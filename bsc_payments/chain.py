"""
BSC Payments - Chain Client
Read-only JSON-RPC access to BNB Smart Chain through web3.py.

One ChainClient is built at startup and shared by the scanner, the scheduler
and the API server. Responses are normalised to plain dicts with hex strings
so the matcher and the store never see web3 types.
"""

import time
import random
import logging
from datetime import datetime, timezone

import requests
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception, Web3RPCError

from . import config
from .matcher import TRANSFER_TOPIC, address_to_topic

logger = logging.getLogger(__name__)


# ============================================================
# Errors
# ============================================================

class ChainError(Exception):
    """Any failure talking to the chain."""


class TransientChainError(ChainError):
    """Timeout or connection failure; retry on the next cycle."""


class RPCResponseError(ChainError):
    """The node answered with a JSON-RPC error for this call."""


def _hex(value):
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value).lower()
    return str(value).lower()


def _normalize_log(log):
    return {
        "address": _hex(log.get("address")),
        "topics": [_hex(t) for t in log.get("topics") or []],
        "data": _hex(log.get("data")) or "0x",
        "tx_hash": _hex(log.get("transactionHash")),
        "block_number": log.get("blockNumber"),
        "log_index": log.get("logIndex"),
    }


def _normalize_receipt(receipt):
    return {
        "tx_hash": _hex(receipt.get("transactionHash")),
        "status": receipt.get("status"),
        "block_number": receipt.get("blockNumber"),
        "from": _hex(receipt.get("from")),
        "to": _hex(receipt.get("to")),
        "gas_used": receipt.get("gasUsed"),
        "logs": [_normalize_log(lg) for lg in receipt.get("logs") or []],
    }


def transfer_topics(treasury, from_address=None):
    """Topic filter for Transfer(from?, treasury)."""
    return [
        TRANSFER_TOPIC,
        address_to_topic(from_address) if from_address else None,
        address_to_topic(treasury),
    ]


# ============================================================
# Client
# ============================================================

class ChainClient:
    """Long-lived JSON-RPC client with per-call timeout and a health signal."""

    def __init__(self, rpc_url=None, timeout=None, w3=None):
        self.rpc_url = rpc_url or config.CHAIN["rpc"]
        self.timeout = timeout or config.RPC_TIMEOUT_SECONDS
        if w3 is None:
            # Provider retries are disabled: a failed call is retried by the next scan cycle
            w3 = Web3(Web3.HTTPProvider(
                self.rpc_url,
                request_kwargs={"timeout": self.timeout},
                exception_retry_configuration=None,
            ))
        self.w3 = w3
        self.consecutive_failures = 0
        self.last_error = None
        self.last_ok_at = None
        self.last_block_height = None

    # --- call wrapper ---

    def _call(self, method, fn, *args):
        try:
            result = fn(*args)
        except TransactionNotFound:
            self._ok()
            return None
        except (requests.exceptions.RequestException, TimeoutError, ConnectionError) as e:
            self._failed(method, e)
            raise TransientChainError(f"{method}: {e}") from e
        except (Web3RPCError, ValueError) as e:
            self._failed(method, e)
            raise RPCResponseError(f"{method}: {e}") from e
        except Web3Exception as e:
            self._failed(method, e)
            raise ChainError(f"{method}: {e}") from e
        self._ok()
        return result

    def _ok(self):
        self.consecutive_failures = 0
        self.last_ok_at = datetime.now(timezone.utc).isoformat()

    def _failed(self, method, error):
        self.consecutive_failures += 1
        self.last_error = f"{method}: {error}"
        logger.warning("RPC %s failed (%d in a row): %s", method, self.consecutive_failures, error)

    # --- reads ---

    def block_number(self):
        """Latest block number (eth_blockNumber)."""
        height = self._call("eth_blockNumber", lambda: self.w3.eth.block_number)
        self.last_block_height = int(height)
        return self.last_block_height

    def get_receipt(self, tx_hash):
        """Normalised receipt, or None when the node has none (not mined / unknown)."""
        receipt = self._call("eth_getTransactionReceipt", self.w3.eth.get_transaction_receipt, tx_hash)
        if receipt is None:
            return None
        return _normalize_receipt(receipt)

    def get_logs(self, from_block, to_block, address, topics):
        """Logs of `address` matching `topics` in [from_block, to_block] (inclusive)."""
        params = {
            "fromBlock": Web3.to_hex(from_block),
            "toBlock": Web3.to_hex(to_block),
            "address": Web3.to_checksum_address(address),
            "topics": topics,
        }
        logs = self._call("eth_getLogs", self.w3.eth.get_logs, params)
        return [_normalize_log(lg) for lg in logs or []]

    def token_balance(self, token_contract, wallet):
        """Raw ERC-20 balanceOf(wallet) as int."""
        token = self.w3.eth.contract(
            address=Web3.to_checksum_address(token_contract),
            abi=config.ERC20_ABI,
        )
        call = token.functions.balanceOf(Web3.to_checksum_address(wallet)).call
        return int(self._call("eth_call", call))

    # --- health ---

    @property
    def healthy(self):
        return self.consecutive_failures == 0

    def wait_until_ready(self, max_retries=None, base_delay=1.0, max_delay=30.0):
        """
        Poll eth_blockNumber with exponential backoff and jitter.
        Gives up after max_retries attempts and returns False.
        """
        max_retries = config.RPC_MAX_RETRIES if max_retries is None else max_retries
        delay = base_delay
        for attempt in range(1, max_retries + 1):
            try:
                height = self.block_number()
                logger.info("RPC ready at block #%s (%s)", height, self.rpc_url)
                return True
            except ChainError as e:
                if attempt == max_retries:
                    logger.error("RPC unreachable after %d attempts: %s", attempt, e)
                    break
                jitter = random.uniform(0, delay * 0.3)
                logger.info("RPC not ready (attempt %d/%d), retrying in %.1fs", attempt, max_retries, delay + jitter)
                time.sleep(delay + jitter)
                delay = min(delay * 2, max_delay)
        return False

    def health(self):
        return {
            "rpc": self.rpc_url,
            "healthy": self.healthy,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "last_ok_at": self.last_ok_at,
            "last_block_height": self.last_block_height,
        }
