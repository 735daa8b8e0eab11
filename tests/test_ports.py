import json
import socket
import socketserver
import threading

import pytest

from tapvsock.models import ExposeRequest, TransportProtocol
from tapvsock.ports import (
    ForwarderError,
    PortsForwarder,
    first_value_or_empty,
    key,
    remote,
    tcpip_address,
)


class _EchoTCP(socketserver.BaseRequestHandler):
    def handle(self):
        while data := self.request.recv(65536):
            self.request.sendall(data)


class _EchoUDP(socketserver.BaseRequestHandler):
    def handle(self):
        data, sock = self.request
        sock.sendto(data, self.client_address)


@pytest.fixture
def tcp_echo():
    server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), _EchoTCP)
    server.daemon_threads = True
    threading.Thread(target=server.serve_forever, daemon=True).start()
    yield server.server_address[1]
    server.shutdown()
    server.server_close()


@pytest.fixture
def udp_echo():
    server = socketserver.ThreadingUDPServer(("127.0.0.1", 0), _EchoUDP)
    server.daemon_threads = True
    threading.Thread(target=server.serve_forever, daemon=True).start()
    yield server.server_address[1]
    server.shutdown()
    server.server_close()


@pytest.fixture
def forwarder():
    fwd = PortsForwarder()
    yield fwd
    fwd.close()


def _free_port(kind=socket.SOCK_STREAM):
    with socket.socket(socket.AF_INET, kind) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _tcp_echo_through(address, payload=b"hello"):
    with socket.create_connection(address, timeout=3) as conn:
        conn.sendall(payload)
        return conn.recv(1024)


def test_remote_takes_host_from_request_address():
    req = ExposeRequest(local="127.0.0.1:8080", remote=":8080")
    assert remote(req, "192.168.127.1:5555") == "192.168.127.1:8080"


def test_remote_keeps_explicit_host():
    req = ExposeRequest(local="127.0.0.1:2222", remote="192.168.127.2:22")
    assert remote(req, "192.168.127.1:5555") == "192.168.127.2:22"


def test_remote_rejects_missing_port():
    with pytest.raises(ValueError):
        remote(ExposeRequest(local="x", remote="192.168.127.2"), "192.168.127.1:5555")


def test_first_value_or_empty():
    assert first_value_or_empty([]) == ""
    assert first_value_or_empty(None) == ""
    assert first_value_or_empty(["a", "b"]) == "a"


def test_tcpip_address():
    assert tcpip_address("192.168.127.2:22") == ("192.168.127.2", 22)


@pytest.mark.parametrize("bad", ["1.2.3.4", "a:b:c", "1.2.3.4:x", "host:80"])
def test_tcpip_address_invalid(bad):
    with pytest.raises(ValueError):
        tcpip_address(bad)


def test_key():
    assert key(TransportProtocol.TCP, "127.0.0.1:2222") == "tcp/127.0.0.1:2222"


def test_expose_tcp_round_trip(forwarder, tcp_echo):
    port = _free_port()
    local = f"127.0.0.1:{port}"
    forwarder.expose(TransportProtocol.TCP, local, f"127.0.0.1:{tcp_echo}")
    assert _tcp_echo_through(("127.0.0.1", port)) == b"hello"
    assert forwarder.all() == [
        {"local": local, "remote": f"127.0.0.1:{tcp_echo}", "protocol": "tcp"}
    ]
    forwarder.unexpose(TransportProtocol.TCP, local)
    assert forwarder.all() == []
    with pytest.raises(OSError):
        _tcp_echo_through(("127.0.0.1", port))


def test_expose_uses_injected_dialer(tcp_echo):
    calls = []

    def dialer(host, port):
        calls.append((host, port))
        return socket.create_connection(("127.0.0.1", tcp_echo), timeout=3)

    fwd = PortsForwarder(tcp_dialer=dialer)
    port = _free_port()
    try:
        fwd.expose("tcp", f"127.0.0.1:{port}", "192.168.127.2:22")
        assert _tcp_echo_through(("127.0.0.1", port), b"abc") == b"abc"
        assert calls == [("192.168.127.2", 22)]
    finally:
        fwd.close()


def test_expose_twice_fails(forwarder, tcp_echo):
    local = f"127.0.0.1:{_free_port()}"
    forwarder.expose(TransportProtocol.TCP, local, f"127.0.0.1:{tcp_echo}")
    with pytest.raises(ForwarderError, match="already running"):
        forwarder.expose(TransportProtocol.TCP, local, f"127.0.0.1:{tcp_echo}")


def test_unexpose_missing(forwarder):
    with pytest.raises(ForwarderError, match="proxy not found"):
        forwarder.unexpose(TransportProtocol.TCP, "127.0.0.1:1")


def test_unknown_protocol(forwarder):
    with pytest.raises(ForwarderError, match="unknown protocol"):
        forwarder.expose("sctp", "127.0.0.1:1", "127.0.0.1:2")


def test_all_is_sorted(forwarder, tcp_echo):
    locals_ = [f"127.0.0.1:{_free_port()}" for _ in range(3)]
    for local in locals_:
        forwarder.expose(TransportProtocol.TCP, local, f"127.0.0.1:{tcp_echo}")
    listed = [entry["local"] for entry in forwarder.all()]
    assert listed == sorted(locals_)


def test_expose_udp_round_trip(forwarder, udp_echo):
    port = _free_port(socket.SOCK_DGRAM)
    local = f"127.0.0.1:{port}"
    forwarder.expose(TransportProtocol.UDP, local, f"127.0.0.1:{udp_echo}")
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
        client.settimeout(3)
        client.sendto(b"datagram", ("127.0.0.1", port))
        assert client.recvfrom(1024)[0] == b"datagram"
    assert forwarder.all()[0]["protocol"] == "udp"


def test_expose_unix_to_tcp(forwarder, tcp_echo, tmp_path):
    path = tmp_path / "f.sock"
    forwarder.expose(TransportProtocol.UNIX, str(path), f"tcp://127.0.0.1:{tcp_echo}")
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as conn:
        conn.settimeout(3)
        conn.connect(str(path))
        conn.sendall(b"over unix")
        assert conn.recv(1024) == b"over unix"
    forwarder.unexpose(TransportProtocol.UNIX, str(path))
    assert not path.exists()


def test_unix_with_unknown_scheme(forwarder, tmp_path):
    with pytest.raises(ForwarderError, match="not implemented: http"):
        forwarder.expose(TransportProtocol.UNIX, str(tmp_path / "s"), "http://127.0.0.1:80")


def test_ssh_tunnel_requires_key(forwarder, tmp_path):
    with pytest.raises(ForwarderError, match="key not provided"):
        forwarder.expose(
            TransportProtocol.UNIX, str(tmp_path / "s"), "ssh-tunnel://user@127.0.0.1/run/x.sock"
        )


def test_ssh_tunnel_requires_path(forwarder, tmp_path):
    with pytest.raises(ForwarderError, match="path to a socket file"):
        forwarder.expose(
            TransportProtocol.UNIX, str(tmp_path / "s"), "ssh-tunnel://user@127.0.0.1/?key=/k"
        )


def test_http_expose_fills_in_host(forwarder, tcp_echo):
    port = _free_port()
    body = json.dumps({"local": f"127.0.0.1:{port}", "remote": f":{tcp_echo}"}).encode()
    status, _ = forwarder.handle_http("POST", "/expose", body, "127.0.0.1:40000")
    assert status == 200
    assert forwarder.all()[0]["remote"] == f"127.0.0.1:{tcp_echo}"
    status, payload = forwarder.handle_http("GET", "/all")
    assert status == 200
    assert json.loads(payload)[0]["protocol"] == "tcp"


def test_http_post_only(forwarder):
    assert forwarder.handle_http("GET", "/expose") == (400, b"post only\n")
    assert forwarder.handle_http("GET", "/unexpose") == (400, b"post only\n")


def test_http_bad_json(forwarder):
    status, _ = forwarder.handle_http("POST", "/expose", b"{not json", "127.0.0.1:1")
    assert status == 400


def test_http_unexpose_missing(forwarder):
    body = json.dumps({"local": "127.0.0.1:1"}).encode()
    assert forwarder.handle_http("POST", "/unexpose", body) == (500, b"proxy not found\n")


def test_http_unknown_route(forwarder):
    assert forwarder.handle_http("GET", "/nothing")[0] == 404