"""
BSC Payments - ERC-20 Transfer Log Matching
Find a Transfer of at least N wei of a token to the treasury, either inside a
transaction receipt or among raw logs returned by eth_getLogs.

All amounts are Python ints. Addresses and topics compare case-insensitively.
"""

from web3 import Web3

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))


def normalize(value):
    return (value or "").lower()


def address_to_topic(address):
    """32-byte topic for an address (left-padded with zeros)."""
    clean = normalize(address)
    if clean.startswith("0x"):
        clean = clean[2:]
    return "0x" + clean.rjust(64, "0")


def topic_to_address(topic):
    """Last 20 bytes of an indexed address topic."""
    clean = normalize(topic)
    if clean.startswith("0x"):
        clean = clean[2:]
    return "0x" + clean[-40:]


def parse_value(data):
    """Log data -> int. '0x' (or empty) is zero."""
    if not data or data in ("0x", "0X"):
        return 0
    return int(data, 16)


def is_transfer_to(log, token_contract, treasury):
    """True if the log is a Transfer event of token_contract addressed to treasury."""
    if normalize(log.get("address")) != normalize(token_contract):
        return False
    topics = log.get("topics") or []
    if len(topics) < 3:
        return False
    if normalize(topics[0]) != TRANSFER_TOPIC:
        return False
    return normalize(topics[2]) == address_to_topic(treasury)


def _transfer_record(log):
    topics = log["topics"]
    return {
        "tx_hash": log.get("tx_hash"),
        "block_number": log.get("block_number"),
        "log_index": log.get("log_index"),
        "from": topic_to_address(topics[1]),
        "to": topic_to_address(topics[2]),
        "value": parse_value(log.get("data")),
    }


def transfers_to(logs, token_contract, treasury):
    """All Transfer records of token_contract to treasury, in log order."""
    return [_transfer_record(lg) for lg in logs or [] if is_transfer_to(lg, token_contract, treasury)]


def find_transfer(receipt, token_contract, treasury, amount_wei):
    """
    First Transfer in a receipt (or a list of logs) paying at least amount_wei
    of token_contract to treasury. Returns the transfer record or None.
    """
    logs = receipt.get("logs") if isinstance(receipt, dict) else receipt
    target = int(amount_wei)
    for transfer in transfers_to(logs, token_contract, treasury):
        if transfer["value"] >= target:
            return transfer
    return None


def select_candidate(logs, token_contract, treasury, amount_wei, exclude_hashes=()):
    """
    Pick the most recent qualifying transfer from a batch of logs.

    Logs below amount_wei, or belonging to a transaction already bound to
    another order (exclude_hashes), are skipped. Highest block wins; within
    a block the highest log index wins.
    """
    target = int(amount_wei)
    excluded = {normalize(h) for h in exclude_hashes}
    best = None
    for transfer in transfers_to(logs, token_contract, treasury):
        if transfer["value"] < target:
            continue
        if normalize(transfer["tx_hash"]) in excluded:
            continue
        key = (transfer["block_number"] or 0, transfer["log_index"] or 0)
        if best is None or key > (best["block_number"] or 0, best["log_index"] or 0):
            best = transfer
    return best
