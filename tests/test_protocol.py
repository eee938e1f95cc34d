# tests/test_protocol.py

from __future__ import annotations

import json

import pytest

from wallet_orchestrator.core.errors import ProtocolError
from wallet_orchestrator.worker.protocol import (
    CompletedMessage,
    ExecuteMessage,
    ProgressMessage,
    StopMessage,
    decode_inbound,
    decode_outbound,
    encode,
    to_jsonable,
)


def test_execute_message_is_one_json_line() -> None:
    msg = ExecuteMessage(
        script_ref="scripts/balance.py",
        params={"chain": "eth"},
        wallets=[{"address": "0xabc", "secret": "s3cr3t", "tier": 2}],
    )
    line = encode(msg)

    assert "\n" not in line
    raw = json.loads(line)
    assert raw["type"] == "execute"
    # Extra wallet keys are passed through to the script.
    assert raw["wallets"][0]["tier"] == 2

    decoded = decode_inbound(line)
    assert isinstance(decoded, ExecuteMessage)
    assert decoded.wallets[0].secret == "s3cr3t"


def test_outbound_union_dispatches_on_type() -> None:
    assert isinstance(decode_outbound(b'{"type": "progress", "percent": 40}'), ProgressMessage)
    done = decode_outbound('{"type": "completed", "result": {"n": 1}}')
    assert isinstance(done, CompletedMessage)
    assert done.result == {"n": 1}
    assert isinstance(decode_inbound('{"type": "stop"}'), StopMessage)


@pytest.mark.parametrize(
    "line",
    [
        "not json",
        '{"type": "teleport"}',
        '{"percent": 10}',
        '{"type": "progress", "percent": "lots"}',
        "   ",
    ],
)
def test_undecodable_lines_raise_protocol_error(line: str) -> None:
    with pytest.raises(ProtocolError):
        decode_outbound(line)


def test_inbound_rejects_outbound_types() -> None:
    with pytest.raises(ProtocolError):
        decode_inbound('{"type": "completed"}')


def test_to_jsonable_stringifies_unknown_values() -> None:
    class Balance:
        def __str__(self) -> str:
            return "1.5 ETH"

    assert to_jsonable({"b": Balance(), "n": [1, 2]}) == {"b": "1.5 ETH", "n": [1, 2]}
