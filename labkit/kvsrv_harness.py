"""Test harness for the single-server key/value service.

A :class:`Harness` owns a simulated network with one server on it and hands
out clerks, each with its own end-point, while counting RPCs and operations.
"""

from __future__ import annotations

import base64
import os
import threading
import time
from dataclasses import dataclass
from typing import Any

from labkit.kvsrv import Clerk, KVServer, start_kv_server
from labkit.labrpc import Network, Server, Service

SERVER_ID = 0
TIME_LIMIT = 120.0


def randstring(n: int) -> str:
    """A random URL-safe string of length ``n``."""
    return base64.urlsafe_b64encode(os.urandom(2 * n)).decode("ascii")[:n]


@dataclass(frozen=True)
class RunStats:
    """Figures for one test run, from :meth:`Harness.begin` to :meth:`Harness.end`."""

    seconds: float
    rpcs: int
    ops: int


class Harness:
    """A network with one key/value server and any number of clerks."""

    def __init__(self, unreliable: bool = False) -> None:
        self._lock = threading.Lock()
        self.net = Network()
        self.kvserver: KVServer | None = None
        self._clerks: dict[Clerk, str] = {}
        self.next_client_id = SERVER_ID + 1
        self.start = time.monotonic()
        self._t0 = self.start
        self._rpcs0 = 0
        self._ops = 0
        self.start_server()
        self.net.set_reliable(not unreliable)

    def __enter__(self) -> Harness:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.cleanup()

    def _check_timeout(self) -> None:
        if time.monotonic() - self.start > TIME_LIMIT:
            raise TimeoutError(f"test took longer than {TIME_LIMIT:.0f} seconds")

    def cleanup(self) -> None:
        """Shut the network down and enforce the time limit."""
        with self._lock:
            self.net.cleanup()
        self._check_timeout()

    def make_client(self) -> Clerk:
        """Create a clerk with its own connected, enabled end-point."""
        with self._lock:
            endname = randstring(20)
            end = self.net.make_end(endname)
            self.net.connect(endname, SERVER_ID)
            clerk = Clerk(end)
            self._clerks[clerk] = endname
            self.next_client_id += 1
            self.net.enable(endname, True)
            return clerk

    def delete_client(self, clerk: Clerk) -> None:
        """Remove a clerk's end-point from the network."""
        with self._lock:
            endname = self._clerks.pop(clerk)
            self.net.delete_end(endname)

    def connect_client(self, clerk: Clerk) -> None:
        """Enable a clerk's end-point."""
        with self._lock:
            self.net.enable(self._clerks[clerk], True)

    def start_server(self) -> None:
        """Start a fresh server and attach it to the network."""
        self.kvserver = start_kv_server()
        srv = Server()
        srv.add_service(Service(self.kvserver))
        self.net.add_server(SERVER_ID, srv)

    def rpc_total(self) -> int:
        """Number of RPCs sent so far."""
        return self.net.total_count()

    def begin(self, description: str) -> None:
        """Start a test: print its description and reset the statistics."""
        print(f"{description} ...")
        self._t0 = time.monotonic()
        self._rpcs0 = self.rpc_total()
        with self._lock:
            self._ops = 0

    def op(self) -> None:
        """Count one clerk operation."""
        with self._lock:
            self._ops += 1

    def end(self) -> RunStats:
        """Finish a test: enforce the time limit, print and return the statistics."""
        self._check_timeout()
        with self._lock:
            ops = self._ops
        stats = RunStats(
            seconds=time.monotonic() - self._t0,
            rpcs=self.rpc_total() - self._rpcs0,
            ops=ops,
        )
        print("  ... Passed --", end="")
        print(f" t {stats.seconds:4.1f} nrpc {stats.rpcs:5d} ops {stats.ops:4d}")
        return stats


def make_harness(unreliable: bool) -> Harness:
    """Create a harness; with ``unreliable`` the network drops and delays messages."""
    return Harness(unreliable)