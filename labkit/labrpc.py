"""An in-process RPC network that can lose, delay and reorder messages.

A :class:`Network` holds client end-points, servers and the connections
between them. Each :class:`ClientEnd` talks to exactly one server. A
:class:`Server` is a collection of :class:`Service` objects. A service
exposes the public one-argument methods of a receiver object as RPC
handlers: ``"Receiver.method"`` calls ``receiver.method(args)`` and the
value it returns becomes the reply.

Arguments and replies are always passed through :mod:`labkit.labgob`, so
a handler never shares objects with its caller.

``ClientEnd.call`` returns the reply, or raises :class:`RPCError` when the
network lost the request or the reply, the end-point is disabled, or the
server is gone. Concurrent calls on the same end-point are allowed and may
be delivered out of order.
"""

from __future__ import annotations

import io
import queue
import random
import threading
import time
import types
from typing import Any, Callable, Hashable

from labkit.labgob import LabDecoder, LabEncoder

_POLL_INTERVAL = 0.1
_CO_VARARGS = 0x04


class RPCError(Exception):
    """No reply was received for an RPC."""


def _encode(value: Any) -> bytes:
    buf = io.BytesIO()
    LabEncoder(buf).encode(value)
    return buf.getvalue()


def _decode(payload: bytes) -> Any:
    return LabDecoder(io.BytesIO(payload)).decode(None)


def _takes_one_argument(bound: Any) -> bool:
    """Whether ``bound`` can be called with exactly one positional argument."""
    if isinstance(bound, types.MethodType):
        func, skip = bound.__func__, 1
    elif isinstance(bound, types.FunctionType):
        func, skip = bound, 0
    else:
        return False
    code = func.__code__
    positional = code.co_argcount - skip
    required = positional - len(func.__defaults__ or ())
    kwonly_required = code.co_kwonlyargcount - len(func.__kwdefaults__ or {})
    has_varargs = bool(code.co_flags & _CO_VARARGS)
    return (
        kwonly_required == 0
        and required <= 1
        and (positional >= 1 or has_varargs)
    )


class Service:
    """The RPC-callable methods of one receiver object."""

    def __init__(self, receiver: Any, name: str | None = None) -> None:
        self.name = name or type(receiver).__name__
        self._methods: dict[str, Callable[[Any], Any]] = {}
        cls = type(receiver)
        for attr in dir(cls):
            if attr.startswith("_"):
                continue
            if not isinstance(getattr(cls, attr, None), types.FunctionType):
                continue
            bound = getattr(receiver, attr)
            if _takes_one_argument(bound):
                self._methods[attr] = bound

    @property
    def methods(self) -> list[str]:
        """Names of the methods that can be called."""
        return sorted(self._methods)

    def _dispatch(self, method_name: str, svc_meth: str, payload: bytes) -> bytes:
        method = self._methods.get(method_name)
        if method is None:
            raise LookupError(
                f"unknown method {method_name} in {svc_meth}; "
                f"expecting one of {self.methods}"
            )
        args = _decode(payload)
        return _encode(method(args))


class Server:
    """A set of services sharing one RPC dispatcher."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._services: dict[str, Service] = {}
        self._count = 0

    def add_service(self, service: Service) -> None:
        """Make ``service`` reachable through this server."""
        with self._lock:
            self._services[service.name] = service

    def get_count(self) -> int:
        """Number of RPCs this server has received."""
        with self._lock:
            return self._count

    def _dispatch(self, svc_meth: str, payload: bytes) -> bytes:
        service_name, _, method_name = svc_meth.rpartition(".")
        with self._lock:
            self._count += 1
            service = self._services.get(service_name)
            choices = sorted(self._services)
        if service is None:
            raise LookupError(
                f"unknown service {service_name} in {svc_meth}; "
                f"expecting one of {choices}"
            )
        return service._dispatch(method_name, svc_meth, payload)


class ClientEnd:
    """A client end-point connected to at most one server."""

    def __init__(self, network: Network, endname: Hashable) -> None:
        self._network = network
        self.endname = endname

    def call(self, svc_meth: str, args: Any) -> Any:
        """Send an RPC and wait for its reply.

        Raises :class:`RPCError` if no reply arrives.
        """
        payload = _encode(args)
        reply = self._network._deliver(self.endname, svc_meth, payload)
        return _decode(reply)


class Network:
    """A simulated network of client end-points and servers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reliable = True
        self._long_delays = False
        self._long_reordering = False
        self._ends: dict[Hashable, ClientEnd] = {}
        self._enabled: dict[Hashable, bool] = {}
        self._servers: dict[Hashable, Server | None] = {}
        self._connections: dict[Hashable, Hashable | None] = {}
        self._done = threading.Event()
        self._count = 0
        self._bytes = 0

    def __enter__(self) -> Network:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        """Shut the network down; later calls fail at once."""
        self._done.set()

    def set_reliable(self, yes: bool) -> None:
        """When false, requests and replies are delayed and sometimes dropped."""
        with self._lock:
            self._reliable = yes

    def set_long_reordering(self, yes: bool) -> None:
        """When true, replies are sometimes delayed for a long time."""
        with self._lock:
            self._long_reordering = yes

    def set_long_delays(self, yes: bool) -> None:
        """When true, calls on dead connections take up to seven seconds to fail."""
        with self._lock:
            self._long_delays = yes

    def make_end(self, endname: Hashable) -> ClientEnd:
        """Create a disabled, unconnected client end-point."""
        with self._lock:
            if endname in self._ends:
                raise ValueError(f"end {endname!r} already exists")
            end = ClientEnd(self, endname)
            self._ends[endname] = end
            self._enabled[endname] = False
            self._connections[endname] = None
            return end

    def delete_end(self, endname: Hashable) -> None:
        """Forget a client end-point."""
        with self._lock:
            if endname not in self._ends:
                raise KeyError(f"end {endname!r} does not exist")
            del self._ends[endname]
            del self._enabled[endname]
            del self._connections[endname]

    def add_server(self, servername: Hashable, server: Server) -> None:
        """Attach ``server`` to the network under ``servername``."""
        with self._lock:
            self._servers[servername] = server

    def delete_server(self, servername: Hashable) -> None:
        """Remove a server; calls in progress on it fail."""
        with self._lock:
            self._servers[servername] = None

    def connect(self, endname: Hashable, servername: Hashable) -> None:
        """Point a client end-point at a server."""
        with self._lock:
            self._connections[endname] = servername

    def enable(self, endname: Hashable, enabled: bool) -> None:
        """Enable or disable a client end-point."""
        with self._lock:
            self._enabled[endname] = enabled

    def get_count(self, servername: Hashable) -> int:
        """Number of RPCs the named server has received."""
        with self._lock:
            server = self._servers.get(servername)
        if server is None:
            raise KeyError(f"no server named {servername!r}")
        return server.get_count()

    def total_count(self) -> int:
        """Number of RPCs sent over the network."""
        with self._lock:
            return self._count

    def total_bytes(self) -> int:
        """Number of argument and reply bytes carried by the network."""
        with self._lock:
            return self._bytes

    def _add_bytes(self, n: int) -> None:
        with self._lock:
            self._bytes += n

    def _deliver(self, endname: Hashable, svc_meth: str, payload: bytes) -> bytes:
        if self._done.is_set():
            raise RPCError("network has been cleaned up")
        with self._lock:
            self._count += 1
            self._bytes += len(payload)
        return self._process(endname, svc_meth, payload)

    def _is_server_dead(
        self, endname: Hashable, servername: Hashable, server: Server
    ) -> bool:
        with self._lock:
            return (
                not self._enabled.get(endname, False)
                or self._servers.get(servername) is not server
            )

    @staticmethod
    def _run_handler(
        server: Server, svc_meth: str, payload: bytes, replies: queue.Queue
    ) -> None:
        try:
            replies.put((server._dispatch(svc_meth, payload), None))
        except Exception as exc:  # handed back to the caller
            replies.put((None, exc))

    def _process(self, endname: Hashable, svc_meth: str, payload: bytes) -> bytes:
        with self._lock:
            enabled = self._enabled.get(endname, False)
            servername = self._connections.get(endname)
            server = (
                self._servers.get(servername) if servername is not None else None
            )
            reliable = self._reliable
            long_reordering = self._long_reordering
            long_delays = self._long_delays

        if not (enabled and servername is not None and server is not None):
            # simulate no reply and an eventual timeout
            ms = random.randrange(7000) if long_delays else random.randrange(100)
            time.sleep(ms / 1000)
            raise RPCError(f"no reply from {svc_meth}: end is not connected")

        if not reliable:
            time.sleep(random.randrange(27) / 1000)
            if random.randrange(1000) < 100:
                raise RPCError(f"request to {svc_meth} was dropped")

        replies: queue.Queue = queue.Queue(maxsize=1)
        threading.Thread(
            target=self._run_handler,
            args=(server, svc_meth, payload, replies),
            daemon=True,
        ).start()

        outcome = None
        dead = False
        while outcome is None and not dead:
            try:
                outcome = replies.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                dead = self._is_server_dead(endname, servername, server)

        # never reply once the server has been deleted, even if the handler
        # finished: its effects may have gone to a superseded state.
        if outcome is None or self._is_server_dead(endname, servername, server):
            raise RPCError(f"server handling {svc_meth} is gone")

        reply, error = outcome
        if error is not None:
            raise error
        if not reliable and random.randrange(1000) < 100:
            raise RPCError(f"reply from {svc_meth} was dropped")
        if long_reordering and random.randrange(900) < 600:
            ms = 200 + random.randrange(1 + random.randrange(2000))
            time.sleep(ms / 1000)
        self._add_bytes(len(reply))
        return reply