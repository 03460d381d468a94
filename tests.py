
import math
import re
import socket
import sys

import pytest

import bench
import client
from bench import MAX_PAGE_SIZE, BenchConfig, main, run
from client import handshake, measure_scan_query
from protocol import (
    FILTER_NULL,
    MAX_FRAME_LEN,
    OP_QUERY_SCAN,
    HandshakeError,
    ProtocolEOFError,
    ProtocolError,
    ProtocolHandler,
    decode_scan_query,
    encode_handshake,
    encode_handshake_response,
    encode_query_response,
    encode_scan_query,
    java_string_hash,
    read_byte,
    read_int,
    read_long,
    read_short,
    recv_exact,
    write_byte,
    write_int,
    write_long,
    write_short,
)
from server import StubServer
from stats import interval95, mean, stddev, summarize


class FakeSocket:
    """Serves recv() from a fixed byte string and records sendall()."""
    def __init__(self, incoming: bytes):
        self.unread = bytearray(incoming)
        self.sent = bytearray()

    def sendall(self, data: bytes):
        self.sent.extend(data)

    def recv(self, n: int) -> bytes:
        out = bytes(self.unread[:n])
        del self.unread[:n]
        return out


def _closed_port() -> int:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


# --- codec ---

def test_int_layout():
    assert write_int(8) == b"\x08\x00\x00\x00"
    assert write_int(-1) == b"\xff\xff\xff\xff"
    assert write_short(2000) == b"\xd0\x07"
    assert write_long(-2) == b"\xfe" + b"\xff" * 7
    assert write_byte(101) == b"e"


@pytest.mark.parametrize("v", [0, 1, -1, 25, 2**31 - 1, -2**31, 0x12345678])
def test_int_roundtrip(v):
    assert read_int(write_int(v)) == v


@pytest.mark.parametrize("v", [0, -1, 2**63 - 1, -2**63, 0x0102030405060708])
def test_long_roundtrip(v):
    assert read_long(write_long(v)) == v


def test_short_and_byte_are_signed():
    assert read_short(write_short(0xFFFF)) == -1
    assert read_short(write_short(-32768)) == -32768
    assert read_byte(write_byte(0xFF)) == -1
    assert read_byte(write_byte(1)) == 1


def test_read_at_offset():
    buf = b"\x00" + write_int(-1) + write_short(7)
    assert read_int(buf, 1) == -1
    assert read_short(buf, 5) == 7


def test_short_buffer_is_eof():
    with pytest.raises(ProtocolEOFError):
        read_int(b"\x01\x02\x03")
    with pytest.raises(EOFError):
        read_long(b"\x00" * 8, 1)
    with pytest.raises(ProtocolEOFError):
        read_byte(b"")


def test_writers_reject_out_of_range():
    assert write_int(2**32 - 1) == b"\xff\xff\xff\xff"
    with pytest.raises(ProtocolError):
        write_int(2**32 + 5)
    with pytest.raises(ProtocolError):
        write_int(-2**31 - 1)
    with pytest.raises(ProtocolError):
        write_long(2**64)
    with pytest.raises(ProtocolError):
        write_short(0x10000)
    with pytest.raises(ProtocolError):
        write_byte(256)


def test_scan_query_page_size_does_not_wrap():
    with pytest.raises(ProtocolError):
        encode_scan_query(2**32 + 5)


def test_recv_exact_eof():
    s = FakeSocket(b"\x01\x02")
    with pytest.raises(ProtocolEOFError):
        recv_exact(s, 4)


def test_recv_exact_does_not_overread():
    s = FakeSocket(b"abcdef")
    assert recv_exact(s, 4) == b"abcd"
    assert s.unread == b"ef"


def test_java_string_hash():
    assert java_string_hash("") == 0
    assert java_string_hash("a") == 97
    assert java_string_hash("ab") == 97 * 31 + 98
    # wraps to Integer.MIN_VALUE
    assert java_string_hash("polygenelubricants") == -2**31
    assert -2**31 <= java_string_hash("TEST_CACHE") < 2**31


# --- messages ---

def test_handshake_message():
    msg = encode_handshake((1, 1, 0))
    assert read_int(msg) == 8
    assert len(msg) == 12
    assert msg == bytes([8, 0, 0, 0, 1, 1, 0, 1, 0, 0, 0, 2])


def test_scan_query_message():
    msg = encode_scan_query(150, "TEST_CACHE")
    assert read_int(msg) == 25
    assert len(msg) == 29
    q = decode_scan_query(msg[4:])
    assert q.opcode == OP_QUERY_SCAN
    assert q.request_id == 0
    assert q.cache_id == java_string_hash("TEST_CACHE")
    assert q.flags == 0
    assert q.filter_type == FILTER_NULL
    assert q.page_size == 150
    assert q.partition == -1
    assert msg[24:28] == b"\xff\xff\xff\xff"
    assert q.local == 1


# --- handshake procedure ---

def test_handshake_ok():
    s = FakeSocket(b"\x01\x00\x00\x00\x01")
    handshake(s)
    assert bytes(s.sent) == encode_handshake()
    assert not s.unread


def test_handshake_rejected_reads_nothing_more():
    s = FakeSocket(b"\x01\x00\x00\x00\x00" + b"trailing")
    with pytest.raises(HandshakeError) as ei:
        handshake(s)
    assert ei.value.result == 0
    assert isinstance(ei.value, ProtocolError)
    assert s.unread == b"trailing"


def test_handshake_short_read():
    with pytest.raises(ProtocolEOFError):
        handshake(FakeSocket(b"\x01\x00\x00\x00"))


# --- server-side parser ---

def _handler(**kw):
    out = []
    h = ProtocolHandler(out.append, lambda body: encode_query_response(decode_scan_query(body).request_id), **kw)
    return h, out


def test_handler_split_frames():
    h, out = _handler()
    data = encode_handshake() + encode_scan_query(5, request_id=42)
    for i in range(len(data)):
        h.on_data(data[i:i + 1])
    assert out[0] == encode_handshake_response(1)
    assert read_int(out[1]) == 12
    assert read_long(out[1], 4) == 42
    assert h.state == "READ_REQUEST"


def test_handler_bad_markers():
    h, out = _handler()
    bad = write_int(8) + write_byte(9) + b"\x00" * 6 + write_byte(2)
    h.on_data(bad + encode_scan_query(5))
    assert out == [encode_handshake_response(0)]
    assert h.closed


def test_handler_rejects_oversized_frame():
    h, out = _handler()
    h.on_data(encode_handshake())
    with pytest.raises(ProtocolError):
        h.on_data(write_int(MAX_FRAME_LEN + 1))
    assert out == [encode_handshake_response(1)]


def test_handler_accepts_frame_at_cap():
    h, out = _handler()
    h.on_data(write_int(MAX_FRAME_LEN))
    assert out == []


def test_handler_forced_result():
    h, out = _handler(handshake_result=0)
    h.on_data(encode_handshake())
    assert out == [encode_handshake_response(0)]
    assert h.closed


# --- statistics ---

def test_stats_constant():
    xs = [10, 10, 10, 10]
    assert mean(xs) == 10
    assert stddev(xs) == 0
    assert interval95(xs) == 0


def test_stats_spread():
    xs = [8, 10, 12, 10]
    assert mean(xs) == 10
    assert stddev(xs) == pytest.approx(math.sqrt(2))
    assert interval95(xs) == pytest.approx(1.96 * math.sqrt(2) / 2)
    assert interval95(xs) == pytest.approx(1.3859, abs=1e-4)


def test_stats_single_sample():
    row = summarize(5, [3.5])
    assert row.mean == 3.5
    assert row.interval95 == 0
    assert row.samples == 1


def test_stats_empty():
    with pytest.raises(ValueError):
        mean([])
    with pytest.raises(ValueError):
        summarize(5, [])


def test_row_format():
    row = summarize(20, [1.0, 2.0])
    assert row.format() == "Page size 20 Mb, waiting time 1.50 ± 0.69 ms"


# --- end to end ---

def test_latency_includes_server_delay():
    delay = 50
    with StubServer(delay_ms=delay) as srv:
        for _ in range(3):
            ms = measure_scan_query(10, srv.host, srv.port)
            assert delay <= ms < delay + 250


def test_run_two_page_sizes():
    lines = []
    with StubServer() as srv:
        cfg = BenchConfig(host=srv.host, port=srv.port, samples=2, page_sizes=(5, 10))
        rows = run(cfg, emit=lines.append)
    assert len(lines) == 2
    assert [r.page_size for r in rows] == [5, 10]
    assert re.fullmatch(r"Page size 5 Mb, waiting time \d+\.\d\d ± \d+\.\d\d ms", lines[0])
    assert lines[1].startswith("Page size 10 Mb, ")


def test_run_aborts_on_rejected_handshake():
    lines = []
    with StubServer(handshake_result=0) as srv:
        cfg = BenchConfig(host=srv.host, port=srv.port, samples=2, page_sizes=(5,))
        with pytest.raises(HandshakeError):
            run(cfg, emit=lines.append)
    assert lines == []


def test_run_keeps_earlier_lines_on_failure(monkeypatch):
    def fake(page_size, *args):
        if page_size == 10:
            raise ConnectionResetError("reset")
        return 1.0
    monkeypatch.setattr(bench, "measure_scan_query", fake)
    lines = []
    with pytest.raises(ConnectionResetError):
        run(BenchConfig(samples=2, page_sizes=(5, 10, 20)), emit=lines.append)
    assert lines == ["Page size 5 Mb, waiting time 1.00 ± 0.00 ms"]


def test_socket_closed_on_handshake_failure(monkeypatch):
    opened = []
    real = socket.create_connection

    def tracking(*args, **kw):
        s = real(*args, **kw)
        opened.append(s)
        return s
    monkeypatch.setattr(client.socket, "create_connection", tracking)

    with StubServer(handshake_result=0) as srv:
        with pytest.raises(HandshakeError):
            measure_scan_query(5, srv.host, srv.port)
    assert len(opened) == 1
    assert opened[0].fileno() == -1


def test_connection_refused():
    with pytest.raises(ConnectionRefusedError):
        measure_scan_query(5, "127.0.0.1", _closed_port())


def test_config_validation():
    with pytest.raises(ValueError):
        BenchConfig(samples=0)
    with pytest.raises(ValueError):
        BenchConfig(page_sizes=())
    with pytest.raises(ValueError):
        BenchConfig(page_sizes=(5, 2**32 + 5))
    with pytest.raises(ValueError):
        BenchConfig(page_sizes=(0,))
    assert BenchConfig(page_sizes=(MAX_PAGE_SIZE,)).page_sizes == (MAX_PAGE_SIZE,)


def test_main_rejects_page_size_beyond_int32():
    with pytest.raises(SystemExit) as ei:
        main(["--page-sizes", f"5,{2**31}"])
    assert ei.value.code == 2


def test_main_prints_rows(capsys):
    with StubServer() as srv:
        rc = main(["--host", srv.host, "--port", str(srv.port), "--samples", "2", "--page-sizes", "5,10"])
    assert rc == 0
    out = capsys.readouterr().out.splitlines()
    assert [l.split()[2] for l in out] == ["5", "10"]


def test_main_fails_on_refused():
    assert main(["--host", "127.0.0.1", "--port", str(_closed_port()), "--samples", "1", "--page-sizes", "5"]) == 1


if __name__ == "__main__":
    sys.exit(pytest.main([__file__]))
