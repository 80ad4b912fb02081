import io
import struct

import pytest

from proxykit.vless import ClientConn, CmdType, PktConn, ServerConn, VLess, str_to_uuid

UUID_STR = "01234567-89ab-cdef-0123-456789abcdef"
UUID = bytes.fromhex("0123456789abcdef0123456789abcdef")
URL = f"vless://{UUID_STR}@example.com:443?fallback=127.0.0.1:80"


class Pipe:
    def __init__(self, data=b""):
        self.inbuf = io.BytesIO(data)
        self.out = bytearray()

    def read(self, n):
        return self.inbuf.read(n)

    def write(self, data):
        self.out += data
        return len(data)


class FakeDialer:
    addr = "DIRECT"

    def __init__(self, response=b""):
        self.calls = []
        self.stream = Pipe(response)

    def dial(self, network, addr):
        self.calls.append((network, addr))
        return self.stream


def test_str_to_uuid_dashed():
    assert str_to_uuid(UUID_STR) == UUID


def test_str_to_uuid_short_is_version5():
    uuid = str_to_uuid("placeholder")
    assert len(uuid) == 16
    assert uuid[6] >> 4 == 5
    assert uuid[8] >> 6 == 2


def test_str_to_uuid_invalid():
    with pytest.raises(ValueError):
        str_to_uuid("x" * 40)


def test_vless_url_parsing():
    v = VLess(URL)
    assert v.addr == "example.com:443"
    assert v.uuid == UUID
    assert v.fallback == "127.0.0.1:80"


def test_client_header_bytes():
    pipe = Pipe()
    ClientConn(pipe, UUID, "tcp", "127.0.0.1:80")
    expected = b"\x00" + UUID + b"\x00\x01" + (80).to_bytes(2, "big") + b"\x01" + bytes([127, 0, 0, 1])
    assert bytes(pipe.out) == expected


@pytest.mark.parametrize(
    "network,cmd", [("tcp", CmdType.TCP), ("udp", CmdType.UDP)]
)
def test_header_round_trip(network, cmd):
    pipe = Pipe()
    ClientConn(pipe, UUID, network, "example.org:8080")
    assert VLess(URL).read_header(io.BytesIO(bytes(pipe.out))) == (cmd, "example.org:8080")


def test_read_header_skips_addons():
    header = b"\x00" + UUID + b"\x03abc" + b"\x01" + (80).to_bytes(2, "big") + b"\x01" + bytes([127, 0, 0, 1])
    assert VLess(URL).read_header(io.BytesIO(header)) == (CmdType.TCP, "127.0.0.1:80")


def test_read_header_wrong_uuid():
    pipe = Pipe()
    ClientConn(pipe, bytes(16), "tcp", "127.0.0.1:80")
    with pytest.raises(ValueError, match="auth failed"):
        VLess(URL).read_header(io.BytesIO(bytes(pipe.out)))


def test_read_header_wrong_version():
    pipe = Pipe()
    ClientConn(pipe, UUID, "tcp", "127.0.0.1:80")
    data = b"\x01" + bytes(pipe.out)[1:]
    with pytest.raises(ValueError, match="not supported"):
        VLess(URL).read_header(io.BytesIO(data))


def test_read_header_truncated():
    with pytest.raises(ValueError):
        VLess(URL).read_header(io.BytesIO(b"\x00" + UUID[:4]))


def test_client_read_strips_response_header():
    conn = ClientConn(Pipe(b"\x00\x02xyhello"), UUID, "tcp", "127.0.0.1:80")
    assert conn.read(100) == b"hello"


def test_client_read_rejects_version():
    conn = ClientConn(Pipe(b"\x01\x00hello"), UUID, "tcp", "127.0.0.1:80")
    with pytest.raises(ValueError):
        conn.read(100)


def test_server_conn_prefixes_first_write_only():
    pipe = Pipe()
    sc = ServerConn(pipe)
    assert sc.write(b"ab") == 2
    assert sc.write(b"cd") == 2
    assert bytes(pipe.out) == b"\x00\x00abcd"


def test_server_to_client_round_trip():
    pipe = Pipe()
    ServerConn(pipe).write(b"payload")
    client = ClientConn(Pipe(bytes(pipe.out)), UUID, "tcp", "127.0.0.1:80")
    assert client.read(100) == b"payload"


def test_pkt_conn_round_trip():
    out = Pipe()
    assert PktConn(out, None).write_to(b"datagram", ("127.0.0.1", 53)) == len(b"datagram")
    assert bytes(out.out)[:2] == struct.pack(">H", len(b"datagram"))
    reader = PktConn(Pipe(bytes(out.out)), ("127.0.0.1", 53))
    assert reader.read_from() == (b"datagram", ("127.0.0.1", 53))


def test_pkt_conn_small_buffer():
    pc = PktConn(Pipe(struct.pack(">H", 10) + bytes(10)), None)
    with pytest.raises(ValueError):
        pc.read_from(5)


def test_dial_sends_header_to_server():
    dialer = FakeDialer()
    v = VLess(URL, dialer)
    v.dial("tcp", "example.org:80")
    assert dialer.calls == [("tcp", "example.com:443")]
    assert v.read_header(io.BytesIO(bytes(dialer.stream.out))) == (CmdType.TCP, "example.org:80")


def test_dial_udp_targets_address():
    dialer = FakeDialer()
    v = VLess(URL, dialer)
    pc = v.dial_udp("udp", "127.0.0.1:53")
    assert pc.target == ("127.0.0.1", 53)
    assert v.read_header(io.BytesIO(bytes(dialer.stream.out))) == (CmdType.UDP, "127.0.0.1:53")