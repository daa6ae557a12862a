"""State machine pieces of the replicated key/value service.

:class:`KVDatabase` is the key/value store; every operation carries the log
index it was committed at, and indices must strictly increase.
:class:`OperationHistory` remembers the last request executed for each
client, so that duplicated writes are recognised. Both can be written to and
restored from a snapshot stream.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum, IntEnum

from labkit.labgob import LabDecoder, LabEncoder, register

CHECK_TERM_INTERVAL = 0.1


class Err(str, Enum):
    """Result codes of the service."""

    OK = "OK"
    ERR_NO_KEY = "ErrNoKey"
    ERR_WRONG_LEADER = "ErrWrongLeader"


class OpType(IntEnum):
    """Kinds of operation."""

    PUT = 0
    APPEND = 1
    GET = 2


_TYPE_NAMES = {OpType.PUT: "Put", OpType.GET: "Get", OpType.APPEND: "Append"}


@dataclass(frozen=True)
class ClientRequestIdentity:
    """Identifies one request of one client."""

    client_id: int = 0
    request_id: int = 0


@dataclass
class Op:
    """A command in the replicated log."""

    id: ClientRequestIdentity = field(default_factory=ClientRequestIdentity)
    op_type: OpType = OpType.GET
    key: str = ""
    value: str = ""

    def __post_init__(self) -> None:
        self.op_type = OpType(self.op_type)

    def __str__(self) -> str:
        return (
            f"id={{cId={self.id.client_id}, rId={self.id.request_id}}}, "
            f"t={_TYPE_NAMES[self.op_type]}, k=\"{self.key}\", v=\"{self.value}\""
        )


register(ClientRequestIdentity)
register(Op)


class KVDatabase:
    """Key/value store that tracks the last applied log index."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last = 0
        self._data: dict[str, str] = {}

    @property
    def last(self) -> int:
        """Index of the last operation applied."""
        with self._lock:
            return self._last

    def _advance_last(self, index: int) -> None:
        if index <= self._last:
            raise ValueError(
                f"new index {index} is not after last applied index {self._last}"
            )
        self._last = index

    def get(self, index: int, key: str) -> str:
        """Return the value of ``key``; raise :class:`KeyError` if it does not exist."""
        with self._lock:
            self._advance_last(index)
            try:
                return self._data[key]
            except KeyError:
                raise KeyError(key) from None

    def append(self, index: int, key: str, value: str) -> None:
        """Append ``value`` to the value of ``key``."""
        with self._lock:
            self._advance_last(index)
            self._data[key] = self._data.get(key, "") + value

    def put(self, index: int, key: str, value: str) -> None:
        """Set ``key`` to ``value``."""
        with self._lock:
            self._advance_last(index)
            self._data[key] = value

    def serialize(self, encoder: LabEncoder) -> int:
        """Write the data to ``encoder`` and return the last applied index."""
        with self._lock:
            encoder.encode(dict(self._data))
            return self._last

    def deserialize(self, last_index: int, decoder: LabDecoder) -> None:
        """Replace the data with what ``decoder`` holds, as of ``last_index``."""
        data = decoder.decode(dict)
        with self._lock:
            self._data = data
            self._last = last_index


class OperationHistory:
    """The last request id executed for each client."""

    def __init__(self) -> None:
        self._latest: dict[int, int] = {}

    def find(self, op: Op) -> bool:
        """Whether ``op`` is the last request executed for its client."""
        latest = self._latest.get(op.id.client_id)
        return latest is not None and latest == op.id.request_id

    def insert(self, op: Op) -> None:
        """Record ``op`` as the last request executed for its client."""
        self._latest[op.id.client_id] = op.id.request_id

    def serialize(self, encoder: LabEncoder) -> None:
        """Write the history to ``encoder``."""
        encoder.encode(dict(self._latest))

    def deserialize(self, decoder: LabDecoder) -> None:
        """Replace the history with what ``decoder`` holds."""
        self._latest = decoder.decode(dict)