"""RPC messages exchanged between the MapReduce coordinator and its workers.

The coordinator listens on TCP. A request is one :mod:`labkit.labgob` frame
holding the tuple ``(rpcname, args)``. The coordinator answers it with one
frame holding the tuple ``(error, reply)``: ``error`` is ``None`` on success,
otherwise a message, and ``reply`` is then ``None``. A connection may carry
any number of requests. The method names are ``"Coordinator.get_task"``,
``"Coordinator.submit_task"`` and ``"Coordinator.example"``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import IntEnum

from labkit.labgob import register

COORDINATOR_HOST = "127.0.0.1"
COORDINATOR_PORT = 12345

# Task id handed out with the pseudo task that tells a worker to exit.
EXIT_TASK_ID = (1 << 64) - 1


class TaskType(IntEnum):
    """Kinds of task a worker can be given."""

    MAPPER = 0
    REDUCER = 1
    EXIT = 2


@dataclass
class ExampleArgs:
    """Arguments of the example RPC."""

    x: int = 0


@dataclass
class ExampleReply:
    """Reply of the example RPC."""

    y: int = 0


@dataclass
class MapReduceArgs:
    """A worker asking for a task."""

    workerid: int = 0


@dataclass
class MapReduceReply:
    """The task handed to a worker."""

    task_type: TaskType = TaskType.MAPPER
    taskid: int = 0
    files: list[str] = field(default_factory=list)
    n_reduce: int = 0

    def __post_init__(self) -> None:
        self.task_type = TaskType(self.task_type)


@dataclass
class SubmitTaskArgs:
    """A worker reporting a finished task."""

    task_type: TaskType = TaskType.MAPPER
    taskid: int = 0
    workerid: int = 0

    def __post_init__(self) -> None:
        self.task_type = TaskType(self.task_type)


@dataclass
class SubmitTaskReply:
    """1 when the submission was accepted, 0 otherwise."""

    state: int = 0


for _cls in (
    ExampleArgs,
    ExampleReply,
    MapReduceArgs,
    MapReduceReply,
    SubmitTaskArgs,
    SubmitTaskReply,
):
    register(_cls)


def coordinator_sock() -> str:
    """A per-user UNIX-domain socket name for the coordinator."""
    return f"/var/tmp/5840-mr-{os.getuid()}"