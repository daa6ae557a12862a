"""A single-server key/value service with at-most-once Put and Append.

Clients tag every request with their id and a sequence number. The server
remembers, per client, the last write it executed and the value it replied
with, so a retransmitted write is answered from that record instead of
being applied twice.
"""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass

from labkit.labrpc import ClientEnd, RPCError

_OPS = ("Put", "Append")


@dataclass
class PutAppendArgs:
    """Arguments of a Put or an Append."""

    cid: int = 0
    seq: int = 0
    key: str = ""
    value: str = ""


@dataclass
class PutAppendReply:
    """Reply to a Put or an Append; for Append, the value before it."""

    value: str = ""


@dataclass
class GetArgs:
    """Arguments of a Get."""

    cid: int = 0
    seq: int = 0
    key: str = ""


@dataclass
class GetReply:
    """Reply to a Get; empty when the key does not exist."""

    value: str = ""


@dataclass
class _History:
    seq: int
    record: str


class KVServer:
    """The key/value server. Its public methods are the RPC handlers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._database: dict[str, str] = {}
        self._histories: dict[int, _History] = {}

    def _recorded(self, cid: int, seq: int) -> str | None:
        history = self._histories.get(cid)
        if history is not None and history.seq == seq:
            return history.record
        return None

    def get(self, args: GetArgs) -> GetReply:
        """Return the current value of a key, or an empty string."""
        with self._lock:
            return GetReply(self._database.get(args.key, ""))

    def put(self, args: PutAppendArgs) -> PutAppendReply:
        """Set a key's value, unless this request was already executed."""
        with self._lock:
            recorded = self._recorded(args.cid, args.seq)
            if recorded is not None:
                return PutAppendReply(recorded)
            self._database[args.key] = args.value
            self._histories[args.cid] = _History(args.seq, "")
            return PutAppendReply()

    def append(self, args: PutAppendArgs) -> PutAppendReply:
        """Append to a key's value and return the value it had before."""
        with self._lock:
            recorded = self._recorded(args.cid, args.seq)
            if recorded is not None:
                return PutAppendReply(recorded)
            old = self._database.get(args.key, "")
            self._database[args.key] = old + args.value
            self._histories[args.cid] = _History(args.seq, old)
            return PutAppendReply(old)


def start_kv_server() -> KVServer:
    """Create an empty key/value server."""
    return KVServer()


def nrand() -> int:
    """A random non-negative 62-bit integer."""
    return secrets.randbelow(1 << 62)


class Clerk:
    """Client of a :class:`KVServer`; retries every request until it succeeds."""

    def __init__(self, server: ClientEnd) -> None:
        self.server = server
        self.id = nrand()
        self._seq = 0

    def _next_seq(self) -> int:
        seq = self._seq
        self._seq += 1
        return seq

    def _call(self, svc_meth: str, args: object) -> object:
        while True:
            try:
                return self.server.call(svc_meth, args)
            except RPCError:
                continue

    def get(self, key: str) -> str:
        """Fetch the value of ``key``; an empty string if it does not exist."""
        args = GetArgs(self.id, self._next_seq(), key)
        reply = self._call("KVServer.get", args)
        return reply.value

    def put_append(self, key: str, value: str, op: str) -> str:
        """Send a Put or an Append and return the server's reply value."""
        if op not in _OPS:
            raise ValueError(f"unknown op {op}")
        args = PutAppendArgs(self.id, self._next_seq(), key, value)
        reply = self._call(f"KVServer.{op.lower()}", args)
        return reply.value

    def put(self, key: str, value: str) -> None:
        """Set ``key`` to ``value``."""
        self.put_append(key, value, "Put")

    def append(self, key: str, value: str) -> str:
        """Append ``value`` to ``key`` and return the value it had before."""
        return self.put_append(key, value, "Append")