from bsc_payments.matcher import (
    TRANSFER_TOPIC, address_to_topic, topic_to_address, parse_value,
    is_transfer_to, find_transfer, select_candidate, transfers_to,
)

from conftest import ONECOP, USDT, TREASURY, PAYER, OTHER_PAYER, ONE_TOKEN, tx, transfer_log


def test_transfer_topic_is_erc20_signature():
    assert TRANSFER_TOPIC == "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def test_address_topic_conversion():
    topic = address_to_topic("0xAbCdEf0000000000000000000000000000000001")
    assert topic == "0x" + "0" * 24 + "abcdef0000000000000000000000000000000001"
    assert len(topic) == 66
    assert topic_to_address(topic) == "0xabcdef0000000000000000000000000000000001"


def test_parse_value():
    assert parse_value("0x0de0b6b3a7640000") == 10 ** 18
    assert parse_value("0x" + format(10 ** 18, "064x")) == 10 ** 18
    assert parse_value("0x") == 0
    assert parse_value("") == 0
    # beyond float precision
    assert parse_value(hex(10 ** 30 + 1)) == 10 ** 30 + 1


def test_is_transfer_to_checks_contract_event_and_recipient():
    log = transfer_log(tx(1), 10, ONE_TOKEN)
    assert is_transfer_to(log, ONECOP, TREASURY)
    assert is_transfer_to(log, ONECOP.upper().replace("0X", "0x"), TREASURY.upper().replace("0X", "0x"))
    assert not is_transfer_to(log, USDT, TREASURY)
    assert not is_transfer_to(transfer_log(tx(1), 10, ONE_TOKEN, to=OTHER_PAYER), ONECOP, TREASURY)

    approval = dict(log, topics=["0x8c5be1e5ebec7d5bd14f71427d1e84f3dd0314c0f7b2291e5b200ac8c7c3b925"] + log["topics"][1:])
    assert not is_transfer_to(approval, ONECOP, TREASURY)
    assert not is_transfer_to(dict(log, topics=log["topics"][:2]), ONECOP, TREASURY)


def test_find_transfer_requires_at_least_amount():
    receipt = {"logs": [
        transfer_log(tx(1), 10, int(ONE_TOKEN) - 1, log_index=0),
        transfer_log(tx(1), 10, ONE_TOKEN, log_index=1),
    ]}
    match = find_transfer(receipt, ONECOP, TREASURY, ONE_TOKEN)
    assert match["log_index"] == 1
    assert match["value"] == 10 ** 18
    assert match["from"] == PAYER

    assert find_transfer(receipt, ONECOP, TREASURY, int(ONE_TOKEN) + 1) is None
    assert find_transfer(receipt["logs"], ONECOP, TREASURY, ONE_TOKEN) is not None


def test_overpayment_matches():
    receipt = {"logs": [transfer_log(tx(1), 10, 2 * 10 ** 18)]}
    assert find_transfer(receipt, ONECOP, TREASURY, ONE_TOKEN)["value"] == 2 * 10 ** 18


def test_select_candidate_prefers_latest_and_skips_excluded():
    logs = [
        transfer_log(tx(1), 10, ONE_TOKEN),
        transfer_log(tx(2), 12, ONE_TOKEN, log_index=0),
        transfer_log(tx(3), 12, ONE_TOKEN, log_index=4),
        transfer_log(tx(4), 15, int(ONE_TOKEN) - 1),
    ]
    assert select_candidate(logs, ONECOP, TREASURY, ONE_TOKEN)["tx_hash"] == tx(3)
    assert select_candidate(logs, ONECOP, TREASURY, ONE_TOKEN, exclude_hashes={tx(3)})["tx_hash"] == tx(2)
    assert select_candidate(logs, ONECOP, TREASURY, ONE_TOKEN,
                            exclude_hashes={tx(1), tx(2), tx(3)}) is None


def test_transfers_to_ignores_other_tokens():
    logs = [transfer_log(tx(1), 10, ONE_TOKEN, contract=USDT), transfer_log(tx(2), 11, ONE_TOKEN)]
    assert [t["tx_hash"] for t in transfers_to(logs, ONECOP, TREASURY)] == [tx(2)]
