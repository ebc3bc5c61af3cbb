# vasily

A small Python library for pinging hosts and keeping track of the results.

It provides:

- **Pluggable ping backends** (`vasily.backend`). A backend is any object
  implementing the `Conn` interface (`write_to`, `read_from`, `close`).
  Backends are registered by name with `register()` and opened with `new()`.
  Connections can also be routed through a privileged helper process with
  `use_privsep()`.
- **Name lookup helpers** (`vasily.lookup`). `resolve()` turns a hostname or
  address string into an address, preferring IPv4; `name_for()` turns an
  address back into a hostname, or keeps it numeric when asked to.
- **Ping history and statistics** (`vasily.history`). `PingHistory` is a
  fixed-size ring buffer of `PingResult`s keyed by sequence number. It keeps
  running `Stats`: number of pings, failures, average latency, standard
  deviation and `packet_loss()`.
- **A pinger** (`vasily.pinger`). `Pinger` sends pings at a fixed interval
  over a backend connection, matches replies to requests, records timeouts
  as dropped and duplicate replies as duplicates, and keeps a `PingHistory`
  you can query while it runs.
- **Privilege separation** (`vasily.privsep`, `vasily.client`,
  `vasily.server`, `vasily.messages`). Sending raw ICMP usually needs
  elevated privileges. The unprivileged side talks to a small privileged
  helper over pipes using a compact binary message protocol. The helper
  opens connections, sends pings and forwards replies.

## The message protocol

Every message is a one-byte type, a one-byte argument count and that many
arguments, each an 8-bit length followed by that many bytes:

    <type><num_args>{<len><bytes>}*

A packet inside a message is encoded as a one-byte packet type, a two-byte
big-endian sequence number, a one-byte payload length and the payload.
Malformed input raises `MessageError`. Types the reader does not recognise
come back as a `RawMessage`.

```python
import io

from vasily.messages import Shutdown, read_message

data = Shutdown().encode()          # b"\x00\x00"
msg = read_message(io.BytesIO(data))
assert isinstance(msg, Shutdown)
```

## Name lookup

```python
from vasily.lookup import name_for, resolve

addr = resolve("localhost")              # first IPv4 address if there is one
print(name_for(addr, numeric=True))      # "127.0.0.1"
```

## Ping statistics

`PingHistory` records each sent ping with `add(seq)` and each outcome with
`record(seq, result)`. `stats()` returns the running `Stats`.
`rev_results()` yields `(seq, result)` pairs from newest to oldest, and
`history()` returns the retained results from oldest to newest. `latest()`
returns the most recent result.

## Pinging a host

`Pinger(backend_name, ip_version, dest, options)` opens a connection with
the named backend. `run()` pings until the configured number of pings is
done or `close()` is called. `latest()`, `history()`, `rev_results()` and
`stats()` are safe to call from another thread while it runs. `Options`
defaults to an infinite number of pings, a one-second interval, a
one-second timeout and a history of 300 results.

## Running the tests

Install the `test` extra, then run pytest from the project root.