import io
import os

import pytest

from labkit.labgob import LabDecoder, LabEncoder
from labkit.mrrpc import (
    EXIT_TASK_ID,
    ExampleArgs,
    MapReduceArgs,
    MapReduceReply,
    SubmitTaskArgs,
    SubmitTaskReply,
    TaskType,
    coordinator_sock,
)


def _round_trip(value):
    buf = io.BytesIO()
    LabEncoder(buf).encode(value)
    buf.seek(0)
    return LabDecoder(buf).decode(None)


def test_task_type_values():
    assert [TaskType(v) for v in (0, 1, 2)] == [
        TaskType.MAPPER,
        TaskType.REDUCER,
        TaskType.EXIT,
    ]


def test_exit_task_id_is_max_unsigned():
    assert _round_trip(EXIT_TASK_ID) == 2**64 - 1


def test_coordinator_sock():
    name = coordinator_sock()
    assert name == "/var/tmp/5840-mr-" + str(os.getuid())


def test_reply_coerces_task_type():
    reply = MapReduceReply(task_type=1, taskid=3)
    assert reply.task_type is TaskType.REDUCER


def test_submit_args_rejects_unknown_type():
    with pytest.raises(ValueError):
        SubmitTaskArgs(task_type=7)


def test_reply_round_trip():
    reply = MapReduceReply(TaskType.REDUCER, 2, ["mr-0-2", "mr-1-2"], 4)
    back = _round_trip(reply)
    assert back == reply
    assert back.task_type is TaskType.REDUCER


def test_exit_reply_round_trip_keeps_large_id():
    back = _round_trip(MapReduceReply(TaskType.EXIT, EXIT_TASK_ID))
    assert back.taskid == EXIT_TASK_ID
    assert back.task_type is TaskType.EXIT


@pytest.mark.parametrize(
    "value",
    [
        ExampleArgs(99),
        MapReduceArgs(1234),
        SubmitTaskArgs(TaskType.MAPPER, 5, 77),
        SubmitTaskReply(1),
    ],
)
def test_messages_round_trip(value):
    assert _round_trip(value) == value


def test_request_tuple_round_trip():
    request = ("Coordinator.get_task", MapReduceArgs(8))
    assert _round_trip(request) == request