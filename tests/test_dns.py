import contextlib
import json
import socket
import threading

import dns.flags
import dns.message
import dns.query
import dns.rcode
import dns.rdatatype
import dns.rrset
import pytest

from tapvsock.dns import DNSHandler, DNSServer, get_dns_host_and_port
from tapvsock.models import Record, Zone

NS = ("127.0.0.1", 53)


@pytest.fixture
def server():
    return DNSServer(None, None, [], NS)


@contextlib.contextmanager
def _upstream(count=1):
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(0.1)
    stop = threading.Event()
    addresses = [f"10.0.0.{i}" for i in range(1, count + 1)]

    def serve():
        while not stop.is_set():
            try:
                data, peer = sock.recvfrom(65535)
            except socket.timeout:
                continue
            except OSError:
                return
            query = dns.message.from_wire(data)
            reply = dns.message.make_response(query)
            reply.answer.append(
                dns.rrset.from_text_list(query.question[0].name, 60, "IN", "A", addresses)
            )
            sock.sendto(reply.to_wire(), peer)

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    try:
        yield sock.getsockname()
    finally:
        stop.set()
        thread.join(2)
        sock.close()


def _zones():
    return [
        Zone(
            "containers.internal.",
            records=[
                Record("gateway", "192.168.127.1"),
                Record(regexp="^dyn-.*", ip="192.168.127.9"),
            ],
        ),
        Zone("crc.testing.", default_ip="192.168.127.2"),
    ]


def test_add_zone_with_ip(server):
    req = Zone("internal.", default_ip="192.168.0.1")
    server.add_zone(req)
    assert server.handler.zones == [req]


def test_add_zone_with_record(server):
    req = Zone("internal.", records=[Record("crc.testiing", "192.168.0.2")])
    server.add_zone(req)
    assert server.handler.zones == [req]


def test_add_zone_with_record_and_ip(server):
    ip_req = Zone("dynamic.internal.", default_ip="192.168.0.1")
    record_req = Zone("internal.", records=[Record("crc.testiing", "192.168.0.2")])
    server.add_zone(ip_req)
    server.add_zone(record_req)
    assert server.handler.zones == [ip_req, record_req]


def test_add_zone_to_existing_zone_with_default_ip(server):
    server.add_zone(Zone("internal.", default_ip="192.168.0.1"))
    server.add_zone(Zone("internal.", records=[Record("crc.testing", "192.168.0.2")]))
    assert server.handler.zones == [
        Zone("internal.", records=[Record("crc.testing", "192.168.0.2")])
    ]


def test_add_zone_to_existing_zone_with_records(server):
    server.add_zone(Zone("internal.", records=[Record("crc.testing", "192.168.0.2")]))
    server.add_zone(Zone("internal.", records=[Record("crc.testing", "192.168.0.3")]))
    assert server.handler.zones == [
        Zone(
            "internal.",
            records=[
                Record("crc.testing", "192.168.0.3"),
                Record("crc.testing", "192.168.0.2"),
            ],
        )
    ]


def test_add_zone_retains_order():
    server = DNSServer(
        None,
        None,
        [
            Zone("crc.testing.", default_ip="192.168.127.2"),
            Zone("testing.", records=[Record("host", "192.168.127.3")]),
        ],
        NS,
    )
    server.add_zone(Zone("testing.", records=[Record("gateway", "192.168.127.1")]))
    assert server.handler.zones == [
        Zone("crc.testing.", default_ip="192.168.127.2"),
        Zone(
            "testing.",
            records=[
                Record("gateway", "192.168.127.1"),
                Record("host", "192.168.127.3"),
            ],
        ),
    ]


def test_local_answer_by_name():
    handler = DNSHandler(_zones(), NS)
    response = handler.add_answers(dns.message.make_query("gateway.containers.internal.", "A"))
    assert response.answer[0][0].address == "192.168.127.1"
    assert response.answer[0].ttl == 0
    assert response.flags & dns.flags.RA
    assert response.flags & dns.flags.QR


def test_local_answer_by_regexp():
    handler = DNSHandler(_zones(), NS)
    response = handler.add_answers(dns.message.make_query("dyn-abc.containers.internal.", "A"))
    assert response.answer[0][0].address == "192.168.127.9"


def test_local_answer_default_ip():
    handler = DNSHandler(_zones(), NS)
    response = handler.add_answers(dns.message.make_query("anything.crc.testing.", "A"))
    assert response.answer[0][0].address == "192.168.127.2"


def test_unknown_name_in_zone_is_nxdomain():
    handler = DNSHandler(_zones(), NS)
    response = handler.add_answers(dns.message.make_query("nothere.containers.internal.", "A"))
    assert response.rcode() == dns.rcode.NXDOMAIN
    assert response.answer == []


def test_aaaa_gets_empty_answer():
    handler = DNSHandler(_zones(), NS)
    response = handler.add_answers(dns.message.make_query("gateway.containers.internal.", "AAAA"))
    assert response.answer == []
    assert response.rcode() == dns.rcode.NOERROR


def test_add_local_answers_outside_zones():
    handler = DNSHandler(_zones(), NS)
    message = dns.message.make_response(dns.message.make_query("example.com.", "A"))
    assert handler.add_local_answers(message, message.question[0]) is False
    assert message.answer == []


def test_forwards_to_upstream():
    with _upstream() as address:
        handler = DNSHandler([], address)
        response = handler.add_answers(dns.message.make_query("example.com.", "A"))
    assert response.answer[0].name.to_text() == "example.com."
    assert response.answer[0][0].address == "10.0.0.1"


def test_upstream_failure_is_nxdomain():
    probe = socket.socket()
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    handler = DNSHandler([], ("127.0.0.1", port))
    response = handler.add_answers(dns.message.make_query("example.com.", "A"), tcp=True)
    assert response.rcode() == dns.rcode.NXDOMAIN


def test_handle_wire_round_trip():
    handler = DNSHandler(_zones(), NS)
    query = dns.message.make_query("gateway.containers.internal.", "A")
    reply = dns.message.from_wire(handler.handle(query.to_wire(), tcp=False))
    assert reply.id == query.id
    assert reply.answer[0][0].address == "192.168.127.1"


def test_handle_truncates_udp_reply():
    with _upstream(100) as address:
        handler = DNSHandler([], address)
        query = dns.message.make_query("big.example.", "A", use_edns=False)
        wire = handler.handle(query.to_wire(), tcp=False)
    assert len(wire) <= 512
    assert dns.message.from_wire(wire).flags & dns.flags.TC


def test_handle_respects_edns_size():
    with _upstream(100) as address:
        handler = DNSHandler([], address)
        query = dns.message.make_query("big.example.", "A", use_edns=0, payload=4096)
        reply = dns.message.from_wire(handler.handle(query.to_wire(), tcp=False))
    assert len(reply.answer[0]) == 100
    assert not reply.flags & dns.flags.TC


def test_serve_udp():
    udp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    udp.bind(("127.0.0.1", 0))
    server = DNSServer(udp, None, _zones(), NS)
    thread = threading.Thread(target=server.serve, daemon=True)
    thread.start()
    try:
        response = dns.query.udp(
            dns.message.make_query("gateway.containers.internal.", "A"),
            "127.0.0.1",
            port=udp.getsockname()[1],
            timeout=2,
        )
    finally:
        udp.close()
        thread.join(2)
    assert response.answer[0][0].address == "192.168.127.1"
    assert not thread.is_alive()


def test_serve_tcp():
    listener = socket.create_server(("127.0.0.1", 0))
    server = DNSServer(None, listener, _zones(), NS)
    thread = threading.Thread(target=server.serve_tcp, daemon=True)
    thread.start()
    try:
        response = dns.query.tcp(
            dns.message.make_query("host.crc.testing.", "A"),
            "127.0.0.1",
            port=listener.getsockname()[1],
            timeout=2,
        )
    finally:
        listener.close()
        thread.join(2)
    assert response.answer[0][0].address == "192.168.127.2"
    assert not thread.is_alive()


def test_serve_without_socket(server):
    with pytest.raises(ValueError):
        server.serve()
    with pytest.raises(ValueError):
        server.serve_tcp()


def test_http_all_and_add(server):
    status, body = server.handle_http("GET", "/all", b"")
    assert status == 200
    assert json.loads(body) == []

    payload = {"name": "internal.", "records": [{"name": "crc.testing", "ip": "192.168.0.2"}]}
    status, body = server.handle_http("POST", "/add", json.dumps(payload).encode())
    assert status == 200
    assert server.zones == [Zone("internal.", records=[Record("crc.testing", "192.168.0.2")])]

    status, body = server.handle_http("GET", "/all", b"")
    assert json.loads(body) == [payload]


def test_http_add_rejects_get(server):
    assert server.handle_http("GET", "/add", b"") == (400, b"post only\n")


def test_http_add_rejects_bad_json(server):
    status, _ = server.handle_http("POST", "/add", b"{")
    assert status == 400
    assert server.zones == []


def test_http_unknown_path(server):
    status, _ = server.handle_http("GET", "/nope", b"")
    assert status == 404


def test_get_dns_host_and_port(tmp_path):
    conf = tmp_path / "resolv.conf"
    conf.write_text("search example.com\nnameserver bogus\nnameserver 10.0.0.53\nnameserver 10.0.0.54\n")
    assert get_dns_host_and_port(str(conf)) == ("10.0.0.53", 53)


def test_get_dns_host_and_port_without_nameserver(tmp_path):
    conf = tmp_path / "resolv.conf"
    conf.write_text("search example.com\n")
    with pytest.raises(ValueError):
        get_dns_host_and_port(str(conf))


def test_get_dns_host_and_port_missing_file(tmp_path):
    with pytest.raises(OSError):
        get_dns_host_and_port(str(tmp_path / "missing.conf"))