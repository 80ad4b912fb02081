import io
import struct

import pytest

from proxykit.ws_frame import FrameReader, FrameWriter


def read_all(reader, step):
    out = bytearray()
    while True:
        part = reader.read(step)
        if not part:
            return bytes(out)
        out += part


def test_server_frame_wire_bytes():
    buf = io.BytesIO()
    assert FrameWriter(buf, True).write(b"hi") == 2
    assert buf.getvalue() == b"\x82\x02hi"


def test_client_frame_is_masked():
    buf = io.BytesIO()
    mask = b"\x01\x02\x03\x04"
    FrameWriter(buf, False, mask).write(b"data")
    wire = buf.getvalue()
    assert wire[0] == 0x82
    assert wire[1] == 0x80 | 4
    assert wire[2:6] == mask
    assert bytes(b ^ mask[i % 4] for i, b in enumerate(wire[6:])) == b"data"


def test_client_to_server_round_trip():
    buf = io.BytesIO()
    writer = FrameWriter(buf, False)
    writer.write(b"first message")
    writer.write(b"second")
    buf.seek(0)
    assert read_all(FrameReader(buf, True), 3) == b"first messagesecond"


def test_server_to_client_round_trip():
    buf = io.BytesIO()
    FrameWriter(buf, True).write(b"response body")
    buf.seek(0)
    assert FrameReader(buf, False).read(100) == b"response body"


def test_medium_length_uses_16_bit_extension():
    payload = bytes(range(200))
    buf = io.BytesIO()
    FrameWriter(buf, True).write(payload)
    wire = buf.getvalue()
    assert wire[1] == 126
    assert struct.unpack(">H", wire[2:4])[0] == len(payload)
    buf.seek(0)
    assert read_all(FrameReader(buf, False), 64) == payload


def test_large_length_uses_64_bit_extension():
    payload = b"x" * 70000
    buf = io.BytesIO()
    FrameWriter(buf, False).write(payload)
    wire = buf.getvalue()
    assert wire[1] == 0x80 | 127
    assert struct.unpack(">Q", wire[2:10])[0] == len(payload)
    buf.seek(0)
    assert read_all(FrameReader(buf, True), 4096) == payload


def test_reader_stops_at_frame_boundary():
    buf = io.BytesIO()
    writer = FrameWriter(buf, True)
    writer.write(b"abc")
    writer.write(b"defg")
    buf.seek(0)
    reader = FrameReader(buf, False)
    assert reader.read(100) == b"abc"
    assert reader.read(100) == b"defg"
    assert reader.read(100) == b""


def test_truncated_payload_raises():
    buf = io.BytesIO()
    FrameWriter(buf, True).write(b"complete")
    truncated = io.BytesIO(buf.getvalue()[:-3])
    with pytest.raises(EOFError):
        FrameReader(truncated, False).read(100)


def test_bad_mask_key_length_raises():
    with pytest.raises(ValueError):
        FrameWriter(io.BytesIO(), False, b"\x00\x01")