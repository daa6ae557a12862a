import threading

import pytest

from labkit.kvsrv import (
    Clerk,
    GetArgs,
    PutAppendArgs,
    nrand,
    start_kv_server,
)
from labkit.labrpc import Network, Server, Service


@pytest.fixture
def network():
    net = Network()
    yield net
    net.cleanup()


def _serve(net):
    kv = start_kv_server()
    srv = Server()
    srv.add_service(Service(kv))
    net.add_server(0, srv)
    return kv


def _clerk(net, name):
    end = net.make_end(name)
    net.connect(name, 0)
    net.enable(name, True)
    return Clerk(end)


def test_get_missing_key_is_empty():
    kv = start_kv_server()
    assert kv.get(GetArgs(1, 0, "nope")).value == ""


def test_put_then_get():
    kv = start_kv_server()
    assert kv.put(PutAppendArgs(1, 0, "k", "v")).value == ""
    assert kv.get(GetArgs(1, 1, "k")).value == "v"


def test_append_returns_old_value():
    kv = start_kv_server()
    assert kv.append(PutAppendArgs(1, 0, "k", "x 0 0 y")).value == ""
    assert kv.append(PutAppendArgs(1, 1, "k", "x 0 1 y")).value == "x 0 0 y"
    assert kv.get(GetArgs(1, 2, "k")).value == "x 0 0 yx 0 1 y"


def test_duplicate_append_is_applied_once():
    kv = start_kv_server()
    kv.append(PutAppendArgs(1, 0, "k", "a"))
    first = kv.append(PutAppendArgs(1, 1, "k", "b"))
    again = kv.append(PutAppendArgs(1, 1, "k", "b"))
    assert first.value == again.value == "a"
    assert kv.get(GetArgs(1, 2, "k")).value == "ab"


def test_duplicate_put_is_not_reapplied():
    kv = start_kv_server()
    kv.put(PutAppendArgs(1, 0, "k", "a"))
    kv.put(PutAppendArgs(2, 0, "k", "b"))
    kv.put(PutAppendArgs(1, 0, "k", "a"))
    assert kv.get(GetArgs(3, 0, "k")).value == "b"


def test_clerk_basic_over_network(network):
    _serve(network)
    ck = _clerk(network, "c1")
    ck.put("k", "v")
    assert ck.get("k") == "v"
    assert ck.append("k", "w") == "v"
    assert ck.get("k") == "vw"
    assert ck.get("missing") == ""


def test_clerk_rejects_unknown_op(network):
    _serve(network)
    ck = _clerk(network, "c1")
    with pytest.raises(ValueError):
        ck.put_append("k", "v", "Delete")


def test_unreliable_appends_are_exactly_once(network):
    _serve(network)
    network.set_reliable(False)
    nclient, upto = 5, 10
    failures = []

    def client(me):
        ck = _clerk(network, f"c{me}")
        for n in range(upto):
            nv = f"x {me} {n} y"
            ov = ck.append("k", nv)
            if nv in ov:
                failures.append(f"{nv} in returned value {ov}")

    threads = [threading.Thread(target=client, args=(i,)) for i in range(nclient)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert failures == []

    network.set_reliable(True)
    value = _clerk(network, "checker").get("k")
    for i in range(nclient):
        last = -1
        for j in range(upto):
            wanted = f"x {i} {j} y"
            off = value.find(wanted)
            assert off >= 0
            assert value.rfind(wanted) == off
            assert off > last
            last = off


def test_nrand_range():
    values = {nrand() for _ in range(50)}
    assert all(0 <= v < (1 << 62) for v in values)
    assert len(values) > 1