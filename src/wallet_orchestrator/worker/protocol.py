# src/wallet_orchestrator/worker/protocol.py

"""
Worker message protocol.

One JSON object per line. The scheduler writes inbound messages to the worker's stdin;
the worker writes outbound messages to a dedicated copy of its original stdout.

Inbound  (scheduler -> worker): execute, stop
Outbound (worker -> scheduler): progress, result, error, log, completed, failed

Both directions are closed tagged unions keyed on "type". Payloads (params, result data)
are JSON-like trees; the core never assumes their structure.
"""

from __future__ import annotations

import json
import time
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..core.errors import ProtocolError
from ..tasks.task_models import WalletRef


class _Message(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---- inbound ----


class ExecuteMessage(_Message):
    type: Literal["execute"] = "execute"
    script_ref: str
    params: dict[str, Any] = Field(default_factory=dict)
    wallets: list[WalletRef] = Field(default_factory=list)


class StopMessage(_Message):
    type: Literal["stop"] = "stop"


# ---- outbound ----


class ProgressMessage(_Message):
    type: Literal["progress"] = "progress"
    percent: int = 0
    current: int = 0
    total: int = 0
    message: str = ""


class ResultMessage(_Message):
    type: Literal["result"] = "result"
    data: Any = None


class ErrorMessage(_Message):
    type: Literal["error"] = "error"
    kind: str = "script_error"
    message: str = ""
    stack: str | None = None


class LogMessage(_Message):
    type: Literal["log"] = "log"
    level: str = "info"
    message: str = ""
    timestamp: float = Field(default_factory=time.time)


class CompletedMessage(_Message):
    type: Literal["completed"] = "completed"
    result: Any = None


class FailedMessage(_Message):
    type: Literal["failed"] = "failed"
    error: str = ""


InboundMessage = Annotated[Union[ExecuteMessage, StopMessage], Field(discriminator="type")]
OutboundMessage = Annotated[
    Union[
        ProgressMessage,
        ResultMessage,
        ErrorMessage,
        LogMessage,
        CompletedMessage,
        FailedMessage,
    ],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter[InboundMessage] = TypeAdapter(InboundMessage)
_outbound_adapter: TypeAdapter[OutboundMessage] = TypeAdapter(OutboundMessage)


def to_jsonable(value: Any) -> Any:
    """Coerce an arbitrary script value into a JSON-like tree (unknown types -> str)."""
    return json.loads(json.dumps(value, default=str, ensure_ascii=False))


def encode(message: _Message) -> str:
    """Serialize one message as a single line (no trailing newline)."""
    return message.model_dump_json()


def _decode(adapter: TypeAdapter[Any], line: str | bytes) -> Any:
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    raw = line.strip()
    if not raw:
        raise ProtocolError("empty message line")
    try:
        return adapter.validate_json(raw)
    except PydanticValidationError as e:
        raise ProtocolError(f"invalid message: {raw[:200]!r} ({e.error_count()} validation errors)") from e


def decode_inbound(line: str | bytes) -> ExecuteMessage | StopMessage:
    return _decode(_inbound_adapter, line)


def decode_outbound(
    line: str | bytes,
) -> ProgressMessage | ResultMessage | ErrorMessage | LogMessage | CompletedMessage | FailedMessage:
    return _decode(_outbound_adapter, line)
