# tapvsock

`tapvsock` holds the user-space networking pieces that sit between a host and
the network of a virtual machine:

- `tapvsock.ports`: a **ports forwarder**. It exposes host TCP or UDP ports, or
  unix sockets, and relays their traffic to IPv4 `host:port` addresses.
- `tapvsock.udp_proxy`: a **UDP proxy** that keeps one upstream connection per
  client. A connection is dropped after it has been idle for 90 seconds.
- `tapvsock.dns`: an **embedded DNS service**. It answers A queries for names in
  local zones and passes every other query on to the system's nameserver.
- `tapvsock.client`: an **HTTP client** for the forwarder and DNS control API.
- `tapvsock.models`: the data types of that API (`Zone`, `Record`,
  `ExposeRequest`, `UnexposeRequest`, `TransportProtocol`).
- `tapvsock.framing`: helpers for the length-prefixed Ethernet frame stream
  used between guest and host.
- `tapvsock.stdio`: connections made from a pair of byte streams. These are
  either a child process's stdin/stdout or the current process's own.
- `tapvsock.gvproxy`: command-line options, validation and the default network
  configuration of the host-side proxy.
- `tapvsock.winsshproxy`: argument parsing, log formatting and thread-id file
  handling for an SSH socket proxy.
- `tapvsock.fsutil`: `umask(mask)`. It does nothing and returns 0 on Windows.

## Installation

```
pip install tapvsock
```

To run the test suite:

```
pip install "tapvsock[test]"
pytest
```

## Forwarding ports

```python
from tapvsock.ports import ForwarderError, PortsForwarder

forwarder = PortsForwarder()
forwarder.expose("tcp", "127.0.0.1:8080", "192.168.127.2:80")
forwarder.expose("udp", "127.0.0.1:5353", "192.168.127.2:53")
print(forwarder.all())   # sorted by local address, then protocol

try:
    forwarder.expose("tcp", "127.0.0.1:8080", "192.168.127.2:80")
except ForwarderError as err:
    print(err)           # proxy already running

forwarder.unexpose("tcp", "127.0.0.1:8080")
forwarder.close()
```

The remote address must be an IPv4 address with a port. You can pass your own
`tcp_dialer` and `udp_dialer` callables, each taking `(host, port)` and
returning a socket. They decide how the forwarder reaches the remote side; by
default it opens ordinary sockets. A `unix` forward listens on a socket path and
takes a `tcp://host:port` remote.

`PortsForwarder.handle_http(method, path, body, remote_addr)` serves the control
routes `/all`, `/expose` and `/unexpose` and returns `(status, body)`. When an
expose request gives a remote like `:80` with no host, the host part of
`remote_addr` is used.

## DNS

```python
import socket
import threading

from tapvsock.dns import DNSServer
from tapvsock.models import Record, Zone

udp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
udp.bind(("127.0.0.1", 5354))
tcp = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
tcp.bind(("127.0.0.1", 5354))
tcp.listen()

server = DNSServer(udp, tcp, [
    Zone(name="internal.", records=[Record(name="gateway", ip="192.168.127.1")]),
])
threading.Thread(target=server.serve, daemon=True).start()
threading.Thread(target=server.serve_tcp, daemon=True).start()

server.add_zone(Zone(name="testing.", default_ip="192.168.127.2"))
```

If no `nameserver` is given, the first nameserver in `/etc/resolv.conf` is
used as the upstream. On Windows it is the first IPv4 nameserver the system
knows. A name in a local zone that matches no record and has no `default_ip`
gets NXDOMAIN. AAAA questions are answered with an empty reply.
`DNSServer.handle_http` serves `/all` and `/add` (POST).

## Controlling a running gateway

```python
from tapvsock.client import Client, ClientError
from tapvsock.models import ExposeRequest, UnexposeRequest

client = Client("http://192.168.127.1", 10)
try:
    client.expose(ExposeRequest(local="127.0.0.1:8080", remote="192.168.127.2:80"))
except ClientError as err:
    print("expose failed:", err)

for forwarded in client.list():
    print(forwarded.to_dict())
client.unexpose(UnexposeRequest(local="127.0.0.1:8080"))

for zone in client.list_dns():
    print(zone.to_dict())
```

## Frame transport

Each frame on the stream has a two-byte little-endian length in front of it.

```python
import io
from tapvsock.framing import read_frame, write_frame

buffer = io.BytesIO()
write_frame(buffer, b"\x00" * 60)
buffer.seek(0)
frame = read_frame(buffer, 1500)
```

`read_frame` returns `None` when the stream ends cleanly. It raises
`FrameError` for a short, empty or oversized frame. `pump_frames(source, sink,
mtu)` writes raw frames to `sink` and returns how many it copied.

## Commands

- `tapvsock-test-companion` is for end-to-end tests. It serves DNS on UDP port
  53, answering every A question with `1.2.3.4`, and HTTP on port 8080,
  replying `Hello world!` to every request.
- `tapvsock-qemu-wrapper SOCKET COMMAND [ARGS...]` connects to the unix socket
  `SOCKET` and runs `COMMAND` with the connection as file descriptor 3. It
  exits with 1 if the command fails.

```
tapvsock-qemu-wrapper /tmp/qemu.sock qemu-system-x86_64 -netdev socket,id=vlan,fd=3 ...
```

## What this package does not do

- It has no virtual network stack, no DHCP server and no gateway process.
  `tapvsock.gvproxy` parses and checks options and builds a configuration
  dictionary, but nothing here runs that configuration.
- It creates no tap devices. `tapvsock.framing` only encodes and decodes the
  frame stream.
- It serves no HTTP itself. The `handle_http` methods return status and body,
  and an HTTP server of your own has to call them.
- It cannot forward over SSH. An `ssh-tunnel` remote and `npipe` listeners
  raise `ForwarderError`, and `tapvsock.winsshproxy` does not proxy anything.