"""The MapReduce coordinator.

The coordinator hands out one map task per input file and, once every map
task is done, ``n_reduce`` reduce tasks. A task that is not submitted within
a few ticks is handed out again to another worker. When every task is done,
workers asking for more work receive an exit pseudo task.
"""

from __future__ import annotations

import queue
import socketserver
import threading
import time
from enum import IntEnum
from typing import Any, Callable, Iterable, Sequence

from labkit.labgob import LabDecoder, LabEncoder
from labkit.mrrpc import (
    COORDINATOR_PORT,
    EXIT_TASK_ID,
    ExampleArgs,
    ExampleReply,
    MapReduceArgs,
    MapReduceReply,
    SubmitTaskArgs,
    SubmitTaskReply,
    TaskType,
)

# Number of ticks a worker has to finish a task.
OVERTIME = 3


class TaskState(IntEnum):
    """Progress of a task."""

    NO_WORKER = 0
    EXECUTING = 1
    DONE = 2


class Task:
    """A map or reduce task and the workers it has been given to."""

    def __init__(self, task_id: int, files: Sequence[str], task_type: TaskType) -> None:
        self.id = task_id
        self.task_type = TaskType(task_type)
        self.files = list(files)
        self.workers: dict[int, float] = {}
        self.state = TaskState.NO_WORKER
        self._lock = threading.Lock()

    def add_worker(self, worker_id: int) -> None:
        """Assign the task to a worker; raise :class:`ValueError` if it is done."""
        with self._lock:
            if self.state is TaskState.DONE:
                raise ValueError("cannot assign a worker to a completed task")
            if not self.workers:
                self.state = TaskState.EXECUTING
            self.workers[worker_id] = time.time()

    def submit(self, worker_id: int) -> None:
        """Mark the task done; raise :class:`ValueError` if the submission is invalid."""
        with self._lock:
            if worker_id not in self.workers:
                raise ValueError("worker not in this task")
            if self.state is not TaskState.EXECUTING:
                raise ValueError("resubmit")
            self.state = TaskState.DONE


class TimeWheel:
    """A timer wheel with one slot per tick; expired task ids go to ``on_expire``."""

    def __init__(self, slotnum: int, on_expire: Callable[[list[int]], None]) -> None:
        if slotnum <= 0:
            raise ValueError("slotnum must be positive")
        self.slotnum = slotnum
        self._slots: list[set[int]] = [set() for _ in range(slotnum)]
        self._cur = 0
        self._task_slot: dict[int, int] = {}
        self._on_expire = on_expire

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._task_slot

    def add(self, task_id: int, time: int) -> None:
        """Expire ``task_id`` after ``time`` ticks, 1 to ``slotnum``."""
        if time <= 0 or time > self.slotnum:
            raise ValueError(f"time must be between 1 and {self.slotnum}, not {time}")
        if task_id in self._task_slot:
            raise ValueError(f"timer of task {task_id} is already in the wheel")
        slot = (self._cur + time) % self.slotnum
        self._slots[slot].add(task_id)
        self._task_slot[task_id] = slot

    def cancel(self, task_id: int) -> None:
        """Stop the timer of ``task_id``, if there is one."""
        slot = self._task_slot.pop(task_id, None)
        if slot is not None:
            self._slots[slot].discard(task_id)

    def tick(self) -> None:
        """Advance one slot and report the tasks whose time is up."""
        self._cur = (self._cur + 1) % self.slotnum
        expired = sorted(self._slots[self._cur])
        for task_id in expired:
            del self._task_slot[task_id]
        if expired:
            self._slots[self._cur] = set()
            self._on_expire(expired)


class _RPCServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True
    block_on_close = False

    def __init__(self, address: tuple[str, int], coordinator: Coordinator) -> None:
        self.coordinator = coordinator
        super().__init__(address, _RPCHandler)


class _RPCHandler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        decoder = LabDecoder(self.rfile)
        encoder = LabEncoder(self.wfile)
        while True:
            try:
                request = decoder.decode(None)
            except (EOFError, ValueError, OSError):
                return
            try:
                encoder.encode(self.server.coordinator._dispatch(request))
            except OSError:
                return


class Coordinator:
    """Hands out map and reduce tasks and tracks their completion."""

    def __init__(
        self,
        files: Sequence[str],
        n_reduce: int,
        *,
        tick_interval: float = 1.0,
        address: tuple[str, int] = ("", COORDINATOR_PORT),
    ) -> None:
        self.n_map = len(files)
        self.n_reduce = n_reduce
        self._lock = threading.Lock()
        self._queue: queue.Queue[int] = queue.Queue()
        self._done = False
        self._done_task_num = 0
        self._tick_interval = tick_interval
        self._next_tick = time.monotonic() + tick_interval
        self._ticking = True
        self._address = address
        self._server: _RPCServer | None = None

        self.tasks = [Task(i, [name], TaskType.MAPPER) for i, name in enumerate(files)]
        self.tasks += [
            Task(r, [f"mr-{m}-{r}" for m in range(self.n_map)], TaskType.REDUCER)
            for r in range(n_reduce)
        ]
        self._timer = TimeWheel(OVERTIME, self._enable_tasks)
        self._enable_tasks(range(self.n_map))

    def __enter__(self) -> Coordinator:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None

    def _enable_tasks(self, slots: Iterable[int]) -> None:
        for slot in slots:
            self._queue.put(slot)

    def _close(self) -> None:
        if self._done:
            raise RuntimeError("coordinator closed twice")
        self._ticking = False
        self._queue.put(EXIT_TASK_ID)
        self._done = True

    def _next_slot(self) -> int:
        while True:
            with self._lock:
                if self._ticking:
                    now = time.monotonic()
                    if now >= self._next_tick:
                        self._timer.tick()
                        self._next_tick = now + self._tick_interval
                        continue
                    wait: float | None = self._next_tick - now
                else:
                    wait = None
            try:
                return self._queue.get(timeout=wait)
            except queue.Empty:
                continue

    def _task_slot(self, task_type: TaskType, task_id: int) -> int:
        kind = TaskType(task_type)
        if kind is TaskType.MAPPER:
            slot = task_id
        elif kind is TaskType.REDUCER:
            slot = task_id + self.n_map
        else:
            raise ValueError("unknown task type")
        if not 0 <= slot < self.n_map + self.n_reduce:
            raise ValueError("invalid task id")
        return slot

    def get_task(self, args: MapReduceArgs) -> MapReduceReply:
        """Wait for a task and assign it to the asking worker."""
        while True:
            slot = self._next_slot()
            if slot == EXIT_TASK_ID:
                self._queue.put(EXIT_TASK_ID)
                return MapReduceReply(task_type=TaskType.EXIT, taskid=EXIT_TASK_ID)
            task = self.tasks[slot]
            with self._lock:
                if task.state is TaskState.DONE:
                    continue
                self._timer.add(slot, OVERTIME)
            try:
                task.add_worker(args.workerid)
            except ValueError:
                pass  # finished meanwhile; the worker's result will be refused
            taskid = slot - self.n_map if task.task_type is TaskType.REDUCER else slot
            return MapReduceReply(task.task_type, taskid, list(task.files), self.n_reduce)

    def submit_task(self, args: SubmitTaskArgs) -> SubmitTaskReply:
        """Record a finished task; state 1 if accepted, 0 if not."""
        try:
            slot = self._task_slot(args.task_type, args.taskid)
            self.tasks[slot].submit(args.workerid)
        except ValueError:
            return SubmitTaskReply(state=0)
        with self._lock:
            self._done_task_num += 1
            self._timer.cancel(slot)
            if self._done_task_num == self.n_map:
                self._enable_tasks(range(self.n_map, self.n_map + self.n_reduce))
            elif self._done_task_num == self.n_map + self.n_reduce:
                self._close()
        return SubmitTaskReply(state=1)

    def example(self, args: ExampleArgs) -> ExampleReply:
        """Reply with ``args.x + 1``."""
        return ExampleReply(y=args.x + 1)

    def _dispatch(self, request: Any) -> tuple[str | None, Any]:
        if not (isinstance(request, tuple) and len(request) == 2):
            return "malformed request", None
        name, args = request
        handlers = {
            "Coordinator.get_task": self.get_task,
            "Coordinator.submit_task": self.submit_task,
            "Coordinator.example": self.example,
        }
        handler = handlers.get(name)
        if handler is None:
            return f"unknown method {name}; expecting one of {sorted(handlers)}", None
        try:
            return None, handler(args)
        except Exception as exc:  # reported to the caller
            return f"{type(exc).__name__}: {exc}", None

    def serve(self) -> tuple[str, int]:
        """Start answering RPCs in a background thread; return the bound address."""
        if self._server is not None:
            raise RuntimeError("already serving")
        self._server = _RPCServer(self._address, self)
        threading.Thread(target=self._server.serve_forever, daemon=True).start()
        host, port = self._server.server_address[:2]
        return host, port

    def done(self) -> bool:
        """Whether every task has been completed."""
        with self._lock:
            return self._done


def make_coordinator(files: Sequence[str], n_reduce: int) -> Coordinator:
    """Create a coordinator for ``files`` and start serving RPCs."""
    coordinator = Coordinator(files, n_reduce)
    coordinator.serve()
    return coordinator