"""Linearizability model of a key/value store, partitioned by key."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterable

_GET = 0
_PUT = 1
_APPEND = 2


@dataclass(frozen=True)
class KvInput:
    """A client request: op 0 is get, 1 put, 2 append, 3 append returning the old value."""

    op: int
    key: str
    value: str = ""


@dataclass(frozen=True)
class KvOutput:
    """What the service returned for a request."""

    value: str = ""


@dataclass(frozen=True)
class Operation:
    """One client operation in a recorded history."""

    input: KvInput
    output: KvOutput
    call: int
    ret: int
    client_id: int = 0


def partition(history: Iterable[Operation]) -> list[list[Operation]]:
    """Split a history into per-key histories, ordered by key."""
    by_key: dict[str, list[Operation]] = defaultdict(list)
    for operation in history:
        by_key[operation.input.key].append(operation)
    return [by_key[key] for key in sorted(by_key)]


def init_state() -> str:
    """The value of a single key before any operation."""
    return ""


def step(state: str, input: KvInput, output: KvOutput) -> tuple[bool, str]:
    """Apply one operation; return whether it is legal and the new state."""
    if input.op == _GET:
        return output.value == state, state
    if input.op == _PUT:
        return True, input.value
    if input.op == _APPEND:
        return True, state + input.value
    return output.value == state, state + input.value


def describe_operation(input: KvInput, output: KvOutput) -> str:
    """Human-readable description of an operation."""
    if input.op == _GET:
        return f"get('{input.key}') -> '{output.value}'"
    if input.op == _PUT:
        return f"put('{input.key}', '{input.value}')"
    if input.op == _APPEND:
        return f"append('{input.key}', '{input.value}')"
    return "<invalid>"


def _describe_any(input: Any, output: Any) -> str:
    return describe_operation(input, output)