# klausgate

`klausgate` sits in front of a fleet of agent instances. It maps a
conversation — identified by channel, channel id, user and thread — to the
instance that owns it, creates instances on demand, streams chat completions
back as server-sent events, and serves health, readiness and Prometheus-format
metrics on a separate admin application.

## Pieces

**Lifecycle drivers** decide where instances come from. They all implement
`klausgate.lifecycle.Manager` (`get`, `create`, `list`, `stop`) and return
`InstanceRef` values; `get` raises `InstanceNotFoundError` when an instance
is unknown.

- `klausgate.static.StaticManager` — a fixed set given as
  `"name=baseURL,other=baseURL"`; a malformed entry raises `ValueError`.
  `create` returns the entry with the requested name; with exactly one
  instance configured it returns that one for any name, otherwise an unknown
  name raises `ValueError`. `stop` does nothing.
- `klausgate.klausctl.KlausctlManager` — runs the local `klausctl` command
  line tool (`status`, `run`, `list`, `stop`, with `-o json`) through a
  `Runner`; the default `SubprocessRunner` starts it as a child process.
  Failures raise `KlausctlError`.
- `klausgate.operator.OperatorManager` — calls the operator's MCP tools
  (`create_instance`, `get_instance`, `list_instances`, `stop_instance`)
  over JSON-RPC with `requests`, sending an optional bearer token. A JSON-RPC
  error with code 404 becomes `InstanceNotFoundError`; other failures raise
  `OperatorError`.

**Routing stores** remember which instance owns a conversation. All
implement `klausgate.store.Store` (`get`, `put`, `delete`, `list`, `close`).
Entries carry a TTL measured from their last use; a zero TTL never expires,
and expired entries are never returned by `get` or `list`.

- `klausgate.memory_store.MemoryStore` — in process; a background thread
  drops expired entries once a minute, and `evict_now` does it on demand.
- `klausgate.sqlite_store.SqliteStore` — one SQLite file that survives
  restarts; `evict` deletes expired rows, and a background thread calls it
  once a minute.
- `klausgate.configmap_store.ConfigMapStore` — all entries in one
  ConfigMap, written with optimistic concurrency and retried on conflict
  (five attempts by default). It talks to the cluster through a
  `ConfigMapClient` that you supply.

The memory and SQLite stores are context managers that close themselves.
Store keys serialise to a stable `channel|channel_id|user|thread` form;
`parse_key` inverts `str(key)`, and `|` and `\` inside fields survive the
round trip. `Entry.to_json` and `Entry.from_json` give the stored form.

**Routing** — `klausgate.router.Router.resolve` looks a message up in the
store and refreshes its last-seen time on a hit. On a miss, or when the
stored instance no longer exists, it creates an instance if auto-create is
on (named by `name_hint`, or by `synth_name`), otherwise it raises
`RouteNotFoundError`.

**Talking to instances** — `klausgate.instance_client.InstanceClient`
streams `/v1/chat/completions` (`stream_completion`), calls MCP tools
(`call_mcp_tool`) and fetches a conversation backlog (`messages`); failures
raise `InstanceError`. `klausgate.upstream.parse_upstream` returns an
`Agentgateway` that reroutes those requests through a fronting proxy,
naming the target instance in the `X-Klaus-Instance` header; a blank value
returns `None`, meaning direct mode. `klausgate.sse.stream_deltas` parses
an event stream into `Delta` objects, and `klausgate.sse.proxy_sse` wraps
one in a streaming werkzeug response that forwards it line by line.

**Serving** — `klausgate.server.Server` builds two WSGI applications. The
public one (`public_handler`) runs the application given as
`Options.public`, or answers 404, wrapped with request ids
(`X-Request-Id`), access logging and request metrics. The admin one
(`admin_handler`) serves `/healthz`, `/readyz` (503 when the readiness
callable raises or takes more than two seconds) and `/metrics`.
`Server.run` serves both on `host:port` addresses until a stop event is set
or a server fails, then shuts both down.

## Example

```python
from datetime import timedelta

from klausgate.memory_store import MemoryStore
from klausgate.router import InboundMessage, Router
from klausgate.static import StaticManager

manager = StaticManager("demo=http://localhost:8080")

with MemoryStore() as routes:
    router = Router(routes, manager, auto_create=True, default_ttl=timedelta(hours=1))
    ref = router.resolve(
        InboundMessage(channel="web", channel_id="c1", user_id="u1", thread_id="t1")
    )
    print(ref.name, ref.base_url)
```

Streaming a completion from the resolved instance:

```python
from klausgate.instance_client import InstanceClient
from klausgate.sse import stream_deltas

client = InstanceClient()
stream = client.stream_completion(ref, b'{"messages": []}')
for delta in stream_deltas(stream):
    print(delta.event, delta.data)
stream.close()
```

Running the servers until a stop event is set:

```python
import threading

from klausgate.server import Options, Server

stop = threading.Event()
server = Server(Options(public_address="127.0.0.1:8080", admin_address="127.0.0.1:8081"))
server.run(stop)
```

## What it does not do

- There is no command to start the gateway; build a `Server` and call
  `run` from your own code.
- No Kubernetes client is included: `ConfigMapStore` needs a
  `ConfigMapClient` implementation from you.
- There are no channel adapters; the public application answers 404 unless
  you mount your own WSGI application through `Options.public`.
- Requests are not traced; only logs and metrics are produced.

## Tests

The test suite uses pytest and is installed with the `test` extra.