"""Self-describing value encoding for RPC messages and persisted state.

Values are written as length-prefixed JSON frames. Dataclass instances are
tagged with a registered type name so that they come back as the same class.

Two hygiene checks run on every encode and decode:

* a dataclass field whose name starts with an underscore is never
  transmitted; the first time such a class is seen an error is counted;
* decoding into an object that already holds non-default values is
  counted too, since it usually means a reply object is being reused.
"""

from __future__ import annotations

import base64
import dataclasses
import enum
import json
import logging
import struct
import threading
from typing import Any, BinaryIO

_log = logging.getLogger(__name__)

_lock = threading.Lock()
_error_count = 0
_checked: set[type] = set()
_by_name: dict[str, type] = {}
_names: dict[type, str] = {}
_explicit: set[str] = set()

_HEADER = struct.Struct(">I")
_MAX_DEFAULT_DEPTH = 3


def error_count() -> int:
    """Return how many hygiene errors have been counted so far."""
    with _lock:
        return _error_count


def _bump() -> int:
    global _error_count
    with _lock:
        before = _error_count
        _error_count += 1
        return before


def _is_dataclass_instance(value: Any) -> bool:
    return dataclasses.is_dataclass(value) and not isinstance(value, type)


def _default_name(cls: type) -> str:
    return f"{cls.__module__}.{cls.__qualname__}"


def _check_class(cls: type) -> None:
    with _lock:
        if cls in _checked:
            return
        _checked.add(cls)
    for f in dataclasses.fields(cls):
        if f.name.startswith("_"):
            _log.warning(
                "labgob error: private field %s of %s is never transmitted "
                "in RPC or persist/snapshot",
                f.name,
                cls.__name__,
            )
            _bump()


def _check_value(value: Any) -> None:
    if isinstance(value, type):
        if dataclasses.is_dataclass(value):
            _check_class(value)
        return
    if _is_dataclass_instance(value):
        _check_class(type(value))
        for f in dataclasses.fields(value):
            _check_value(getattr(value, f.name))
    elif isinstance(value, dict):
        for key, item in value.items():
            _check_value(key)
            _check_value(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _check_value(item)


def _is_non_default_scalar(value: Any) -> bool | None:
    """True/False for scalars, None for anything that is not a scalar."""
    if isinstance(value, bool):
        return value is not False
    if isinstance(value, int):
        return value != 0
    if isinstance(value, float):
        return value != 0.0
    if isinstance(value, str):
        return value != ""
    return None


def _check_default(value: Any, depth: int, name: str) -> None:
    if depth > _MAX_DEFAULT_DEPTH:
        return
    if _is_dataclass_instance(value):
        for f in dataclasses.fields(value):
            qualified = f"{name}.{f.name}" if name else f.name
            _check_default(getattr(value, f.name), depth + 1, qualified)
        return
    if _is_non_default_scalar(value):
        what = name or type(value).__name__
        if _bump() < 1:
            _log.warning(
                "labgob warning: Decoding into a non-default variable/field %s may not work",
                what,
            )


def _bind(cls: type, name: str) -> None:
    with _lock:
        if name in _explicit and _by_name.get(name) is not cls:
            raise ValueError(f"name {name!r} is already registered for another type")
        bound = _names.get(cls)
        if bound is not None and bound != name:
            raise ValueError(f"{cls.__name__} is already registered as {bound!r}")
        _by_name[name] = cls
        _names[cls] = name
        _explicit.add(name)


def _register_cls(value: Any, name: str | None) -> None:
    _check_value(value)
    cls = value if isinstance(value, type) else type(value)
    if not dataclasses.is_dataclass(cls):
        return
    with _lock:
        chosen = name or _names.get(cls) or _default_name(cls)
    _bind(cls, chosen)


def register(value: Any) -> None:
    """Register the dataclass of ``value`` (an instance or a class) under its default name."""
    _register_cls(value, None)


def register_name(name: str, value: Any) -> None:
    """Register the dataclass of ``value`` under ``name``."""
    _register_cls(value, name)


def _wire_name(cls: type) -> str:
    with _lock:
        name = _names.get(cls)
        if name is None:
            name = _default_name(cls)
            if name not in _explicit:
                _by_name[name] = cls
        return name


def _to_wire(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        return float(value)
    if isinstance(value, str):
        return str.__str__(value)
    if isinstance(value, (bytes, bytearray)):
        return {"$bytes": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, list):
        return [_to_wire(item) for item in value]
    if isinstance(value, tuple):
        return {"$tuple": [_to_wire(item) for item in value]}
    if isinstance(value, dict):
        return {"$map": [[_to_wire(k), _to_wire(v)] for k, v in value.items()]}
    if _is_dataclass_instance(value):
        fields = {
            f.name: _to_wire(getattr(value, f.name))
            for f in dataclasses.fields(value)
            if not f.name.startswith("_")
        }
        return {"$type": _wire_name(type(value)), "$fields": fields}
    raise TypeError(f"cannot encode value of type {type(value).__name__}")


def _build(name: str, raw_fields: dict[str, Any]) -> Any:
    with _lock:
        cls = _by_name.get(name)
    if cls is None:
        raise ValueError(f"type {name!r} is not registered")
    values = {key: _from_wire(item) for key, item in raw_fields.items()}
    init_names = {f.name for f in dataclasses.fields(cls) if f.init}
    try:
        obj = cls(**{k: v for k, v in values.items() if k in init_names})
    except TypeError as exc:
        raise ValueError(f"cannot rebuild {name!r}: {exc}") from exc
    for key, item in values.items():
        if key not in init_names:
            object.__setattr__(obj, key, item)
    return obj


def _from_wire(obj: Any) -> Any:
    if isinstance(obj, list):
        return [_from_wire(item) for item in obj]
    if not isinstance(obj, dict):
        return obj
    if "$map" in obj:
        return {_from_wire(k): _from_wire(v) for k, v in obj["$map"]}
    if "$tuple" in obj:
        return tuple(_from_wire(item) for item in obj["$tuple"])
    if "$bytes" in obj:
        return base64.b64decode(obj["$bytes"])
    if "$type" in obj:
        return _build(obj["$type"], obj.get("$fields", {}))
    raise ValueError("malformed frame: unknown tag")


def _coerce(cls: type, value: Any) -> Any:
    if cls is object:
        return value
    if issubclass(cls, enum.Enum):
        return cls(value)
    if cls is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if cls is int and isinstance(value, bool):
        raise TypeError("cannot decode bool into int")
    if isinstance(value, cls):
        return value
    raise TypeError(f"cannot decode {type(value).__name__} into {cls.__name__}")


def _assign(target: Any, value: Any) -> Any:
    if isinstance(target, type):
        return _coerce(target, value)
    if _is_dataclass_instance(target):
        if type(value) is not type(target):
            raise TypeError(
                f"cannot decode {type(value).__name__} into {type(target).__name__}"
            )
        if type(target).__dataclass_params__.frozen:
            raise TypeError(f"cannot decode into frozen {type(target).__name__}")
        for f in dataclasses.fields(target):
            if not f.name.startswith("_"):
                setattr(target, f.name, getattr(value, f.name))
        return target
    if isinstance(target, list):
        if not isinstance(value, list):
            raise TypeError(f"cannot decode {type(value).__name__} into list")
        target[:] = value
        return target
    if isinstance(target, dict):
        if not isinstance(value, dict):
            raise TypeError(f"cannot decode {type(value).__name__} into dict")
        target.clear()
        target.update(value)
        return target
    raise TypeError(
        f"cannot decode into immutable {type(target).__name__}; pass its type instead"
    )


class LabEncoder:
    """Writes values to a binary stream, one frame per value."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    def encode(self, value: Any) -> None:
        """Encode ``value`` and write it to the stream."""
        _check_value(value)
        payload = json.dumps(
            _to_wire(value), separators=(",", ":"), ensure_ascii=False
        ).encode("utf-8")
        self._stream.write(_HEADER.pack(len(payload)))
        self._stream.write(payload)


class LabDecoder:
    """Reads values written by :class:`LabEncoder`."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    def _read_frame(self) -> Any:
        header = self._stream.read(_HEADER.size)
        if not header:
            raise EOFError("no more values in stream")
        if len(header) < _HEADER.size:
            raise ValueError("truncated frame header")
        (size,) = _HEADER.unpack(header)
        payload = self._stream.read(size)
        if len(payload) < size:
            raise ValueError("truncated frame")
        try:
            return json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError(f"malformed frame: {exc}") from exc

    def decode(self, target: Any) -> Any:
        """Read the next value.

        ``target`` is either a type, in which case the value is returned, or
        a mutable object (dataclass instance, list or dict) that is filled in
        place and returned.
        """
        _check_value(target)
        if not isinstance(target, type) and target is not None:
            _check_default(target, 2 if _is_dataclass_instance(target) else 1, "")
        value = _from_wire(self._read_frame())
        if target is None:
            return value
        return _assign(target, value)