# labkit

Building blocks for experimenting with distributed systems, in plain Python
with no third-party dependencies.

- **`labkit.labgob`**: `LabEncoder` / `LabDecoder` write and read values as
  length-prefixed JSON frames. Dataclass instances come back as the same class
  (see `register` and `register_name`). Two hygiene problems are counted and
  reported through `error_count()`. One is a dataclass field whose name starts
  with an underscore, which is never transmitted. The other is decoding into an
  object that already holds non-default values.
- **`labkit.labrpc`**: a simulated in-process network (`Network`, `ClientEnd`,
  `Server`, `Service`). It can drop, delay and reorder messages, disable
  particular end-points, and delete servers while calls are in flight. It
  counts RPCs and bytes.
- **`labkit.kvsrv`**: a single-server key/value store (`KVServer`) with
  at-most-once `put`/`append`, and a `Clerk` that retries until it gets a reply.
- **`labkit.kvsrv_harness`**: a `Harness` that puts one `KVServer` on a
  simulated network and hands out clerks.
- **`labkit.kvstate`**: state-machine pieces of a replicated key/value service.
  `KVDatabase` applies commands in strictly increasing log-index order.
  `OperationHistory` records the last request of each client. Both can be
  written to a snapshot stream and read back from it.
- **`labkit.kvmodel`**: a sequential model of a key/value store, partitioned by
  key, for checking recorded histories.
- **`labkit.mrrpc`** and **`labkit.coordinator`**: the MapReduce task messages
  and a `Coordinator` that hands out map and reduce tasks over TCP.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## RPC over a simulated network

```python
from labkit.labrpc import Network, RPCError, Server, Service

class Echo:
    def shout(self, text):
        return text.upper()

with Network() as net:
    end = net.make_end("client")
    server = Server()
    server.add_service(Service(Echo()))
    net.add_server("echo", server)
    net.connect("client", "echo")
    net.enable("client", True)
    print(end.call("Echo.shout", "hi"))   # HI
```

A service exposes every public method of its receiver that can be called with
one argument. The method's return value is the reply. `call` raises `RPCError`
in these cases:

- the end-point is disabled or not connected;
- the server was deleted;
- the network dropped the request or the reply, which it does only after
  `set_reliable(False)`.

`get_count(servername)`, `total_count()` and `total_bytes()` report traffic.

## A key/value service over a lossy network

```python
from labkit.kvsrv_harness import make_harness

harness = make_harness(unreliable=True)
try:
    clerk = harness.make_client()
    clerk.put("k", "a")
    old = clerk.append("k", "b")   # the value before the append: "a"
    assert clerk.get("k") == "ab"
finally:
    harness.cleanup()
```

The server keeps the reply to each client's most recent write. A retried `put`
or `append` is therefore applied only once. `Harness.begin(description)` and
`Harness.end()` bracket a test run. `end()` prints the elapsed time, the RPC
count and the operation count, and returns them as a `RunStats`.

## Replicated state-machine pieces

```python
import io
from labkit.kvstate import KVDatabase
from labkit.labgob import LabDecoder, LabEncoder

db = KVDatabase()
db.put(1, "x", "a")
db.append(2, "x", "b")
print(db.get(3, "x"))          # ab

buf = io.BytesIO()
last = db.serialize(LabEncoder(buf))   # 3
restored = KVDatabase()
restored.deserialize(last, LabDecoder(io.BytesIO(buf.getvalue())))
```

Each call to `get` raises `KeyError` for a missing key. An index that does not
come after the last applied one raises `ValueError`.

## Checking a history against the key/value model

```python
from labkit.kvmodel import KvInput, KvOutput, describe_operation, init_state, step

state = init_state()                                         # ""
ok, state = step(state, KvInput(op=1, key="x", value="v"), KvOutput())
ok, state = step(state, KvInput(op=0, key="x"), KvOutput(value="v"))
print(describe_operation(KvInput(op=0, key="x"), KvOutput(value="v")))
# get('x') -> 'v'
```

`partition(history)` splits a list of `Operation`s by key, in sorted key order.

## The MapReduce coordinator

`Coordinator(files, n_reduce)` creates one map task per input file. It creates
`n_reduce` reduce tasks, which are handed out only after every map task has
been submitted. Reduce task `r` reads the files `mr-<m>-<r>`. A task that is
not submitted within three ticks (one tick per second by default) is handed
out again. Once every task is done, `done()` is true. From then on, `get_task`
answers with an exit pseudo task.

```python
from labkit.coordinator import Coordinator
from labkit.mrrpc import MapReduceArgs, SubmitTaskArgs, TaskType

c = Coordinator(["a.txt"], 2)
task = c.get_task(MapReduceArgs(workerid=7))   # map task 0, files ["a.txt"]
c.submit_task(SubmitTaskArgs(TaskType.MAPPER, 0, 7)).state   # 1
```

`serve()` answers RPCs on TCP port 12345 in a background thread.
`make_coordinator(files, n_reduce)` creates a coordinator and serves it. The
wire format is described in `labkit.mrrpc`. A request is one `labgob` frame
holding `(rpcname, args)`. The reply is one frame holding `(error, reply)`.

## What this package does not do

- It contains no MapReduce worker that fetches tasks and runs map or reduce
  functions.
- It contains no MapReduce applications; `labkit.mrapps` is empty.
- It provides no command-line programs.
- `labkit.kvstate` holds only the state machine. There is no consensus layer
  replicating it across servers.