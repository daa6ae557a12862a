import enum
import io
from dataclasses import FrozenInstanceError, dataclass, field

import pytest

from labkit.labgob import (
    LabDecoder,
    LabEncoder,
    error_count,
    register,
    register_name,
)


@dataclass
class T1:
    T1int0: int = 0
    T1int1: int = 0
    T1string0: str = ""
    T1string1: str = ""


@dataclass
class T2:
    T2slice: list = field(default_factory=list)
    T2map: dict = field(default_factory=dict)
    T2t3: object = None


@dataclass
class T3:
    T3int999: int = 0


@dataclass(frozen=True)
class T4:
    Yes: int = 0
    _no: int = 0


@dataclass
class DD:
    X: int = 0


@dataclass
class Plain:
    A: int = 0
    B: str = ""


@dataclass(frozen=True)
class Frozen:
    V: int = 0


@dataclass
class Aliased:
    Z: int = 0


class Color(enum.IntEnum):
    RED = 0
    BLUE = 2


def _roundtrip(*values):
    buf = io.BytesIO()
    enc = LabEncoder(buf)
    for v in values:
        enc.encode(v)
    return LabDecoder(io.BytesIO(buf.getvalue()))


def test_gob():
    e0 = error_count()
    register(T3())

    t1 = T1(T1int1=1, T1string1="6.5840")
    t2 = T2(
        T2slice=[T1(), t1],
        T2map={99: T1(1, 2, "x", "y")},
        T2t3=T3(999),
    )
    d = _roundtrip(0, 1, t1, t2)

    x0 = d.decode(int)
    x1 = d.decode(int)
    r1 = d.decode(T1())
    r2 = d.decode(T2)

    assert x0 == 0
    assert x1 == 1
    assert r1.T1int0 == 0
    assert r1.T1int1 == 1
    assert r1.T1string0 == ""
    assert r1.T1string1 == "6.5840"
    assert len(r2.T2slice) == 2
    assert r2.T2slice[1].T1int1 == 1
    assert len(r2.T2map) == 1
    assert r2.T2map[99].T1string1 == "y"
    assert isinstance(r2.T2t3, T3)
    assert r2.T2t3.T3int999 == 999

    assert error_count() == e0


def test_capital():
    e0 = error_count()
    v = [{T4(Yes=1, _no=5): 3}]
    d = _roundtrip(v)
    out = d.decode([])
    assert error_count() == e0 + 1
    key = next(iter(out[0]))
    assert key.Yes == 1
    assert key._no == 0


def test_capital_warns_once_per_class():
    buf = io.BytesIO()
    enc = LabEncoder(buf)
    enc.encode([T4(Yes=2)])
    e0 = error_count()
    enc.encode([T4(Yes=3)])
    assert error_count() == e0


def test_default():
    e0 = error_count()
    d = _roundtrip(DD())
    reply = DD(99)
    d.decode(reply)
    assert error_count() == e0 + 1
    assert reply.X == 0


def test_decode_into_fresh_instance_does_not_warn():
    e0 = error_count()
    d = _roundtrip(Plain(4, "q"))
    out = d.decode(Plain())
    assert out == Plain(4, "q")
    assert error_count() == e0


def test_roundtrip_containers():
    value = {
        "bytes": b"\x00\x01\xff",
        "tuple": (1, "a", None),
        "nested": {(1, 2): [1.5, True, "s"]},
    }
    d = _roundtrip(value)
    assert d.decode(dict) == value


def test_decode_into_dict_replaces_contents():
    d = _roundtrip({"a": "b"})
    target = {"old": "x"}
    result = d.decode(target)
    assert result is target
    assert target == {"a": "b"}


def test_eof_after_last_value():
    d = _roundtrip("only")
    assert d.decode(str) == "only"
    with pytest.raises(EOFError):
        d.decode(str)


def test_empty_stream_raises_eof():
    with pytest.raises(EOFError):
        LabDecoder(io.BytesIO(b"")).decode(int)


def test_truncated_frame_raises_value_error():
    buf = io.BytesIO()
    LabEncoder(buf).encode("hello world")
    data = buf.getvalue()[:-3]
    with pytest.raises(ValueError):
        LabDecoder(io.BytesIO(data)).decode(str)


def test_type_mismatch_raises_type_error():
    d = _roundtrip("text")
    with pytest.raises(TypeError):
        d.decode(int)


def test_bool_is_not_int():
    d = _roundtrip(True)
    with pytest.raises(TypeError):
        d.decode(int)


def test_int_decodes_into_float():
    d = _roundtrip(7)
    out = d.decode(float)
    assert out == 7.0
    assert isinstance(out, float)


def test_int_enum_decodes_to_member():
    d = _roundtrip(Color.BLUE)
    assert d.decode(Color) is Color.BLUE


def test_decode_into_immutable_value_is_rejected():
    d = _roundtrip(5)
    with pytest.raises(TypeError):
        d.decode(0)


def test_decode_into_frozen_dataclass_is_rejected():
    d = _roundtrip(Frozen(1))
    with pytest.raises(TypeError):
        d.decode(Frozen())
    with pytest.raises(FrozenInstanceError):
        Frozen().V = 2  # sanity on the fixture itself


def test_unsupported_value_raises_type_error():
    buf = io.BytesIO()
    with pytest.raises(TypeError):
        LabEncoder(buf).encode({1, 2, 3})


def test_register_name_alias_roundtrip():
    register_name("aliased-point", Aliased)
    buf = io.BytesIO()
    LabEncoder(buf).encode(Aliased(5))
    assert b"aliased-point" in buf.getvalue()
    out = LabDecoder(io.BytesIO(buf.getvalue())).decode(Aliased)
    assert out == Aliased(5)


def test_register_name_conflict():
    @dataclass
    class First:
        A: int = 0

    @dataclass
    class Second:
        A: int = 0

    register_name("conflicting-name", First)
    with pytest.raises(ValueError):
        register_name("conflicting-name", Second)


def test_unregistered_type_name_is_rejected():
    payload = b'{"$type":"no.such.Type","$fields":{}}'
    frame = len(payload).to_bytes(4, "big") + payload
    with pytest.raises(ValueError):
        LabDecoder(io.BytesIO(frame)).decode(object)