
import logging
import socket
import struct
from typing import NamedTuple, Optional, Tuple

log = logging.getLogger(__name__)

# Handshake markers and version
HANDSHAKE_START = 1
HANDSHAKE_END = 2
HANDSHAKE_OK = 1
PROTOCOL_VERSION = (1, 1, 0)

# Scan query
OP_QUERY_SCAN = 2000
FILTER_NULL = 101
PARTITION_ALL = -1

HANDSHAKE_LEN = 8
SCAN_QUERY_LEN = 25
MAX_FRAME_LEN = 64 * 1024

_BYTE = struct.Struct("<b")
_SHORT = struct.Struct("<h")
_INT = struct.Struct("<i")
_LONG = struct.Struct("<q")


class ProtocolError(Exception):
    pass


class ProtocolEOFError(ProtocolError, EOFError):
    """Stream ended before a fixed-width field was complete."""


class HandshakeError(ProtocolError):
    def __init__(self, result: int):
        super().__init__(f"Handshake failed [res={result}]")
        self.result = result


# --- codec ---
# Writers accept the signed or unsigned range of their width, so 0xFFFF and -1
# encode the same. Wider values raise instead of wrapping.

def _pack(v: int, width: int) -> bytes:
    bits = width * 8
    if not -(1 << (bits - 1)) <= v < (1 << bits):
        raise ProtocolError(f"value {v} does not fit in {width} byte(s)")
    return (v & ((1 << bits) - 1)).to_bytes(width, "little")


def write_byte(v: int) -> bytes:
    return _pack(v, 1)


def write_short(v: int) -> bytes:
    return _pack(v, 2)


def write_int(v: int) -> bytes:
    return _pack(v, 4)


def write_long(v: int) -> bytes:
    return _pack(v, 8)


def _unpack(fmt: struct.Struct, buf: bytes, offset: int) -> int:
    if len(buf) - offset < fmt.size:
        raise ProtocolEOFError(
            f"need {fmt.size} bytes at offset {offset}, have {max(len(buf) - offset, 0)}"
        )
    return fmt.unpack_from(buf, offset)[0]


def read_byte(buf: bytes, offset: int = 0) -> int:
    return _unpack(_BYTE, buf, offset)


def read_short(buf: bytes, offset: int = 0) -> int:
    return _unpack(_SHORT, buf, offset)


def read_int(buf: bytes, offset: int = 0) -> int:
    return _unpack(_INT, buf, offset)


def read_long(buf: bytes, offset: int = 0) -> int:
    return _unpack(_LONG, buf, offset)


def recv_exact(sock: socket.socket, n: int) -> bytes:
    """Block until exactly n bytes arrive; never reads past them."""
    buf = bytearray()
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            raise ProtocolEOFError(f"connection closed after {len(buf)} of {n} bytes")
        buf.extend(chunk)
    return bytes(buf)


def java_string_hash(s: str) -> int:
    """String.hashCode() as the server computes it: UTF-16 units, signed 32-bit."""
    data = s.encode("utf-16-le")
    h = 0
    for (unit,) in struct.iter_unpack("<H", data):
        h = (31 * h + unit) & 0xFFFFFFFF
    return h - (1 << 32) if h & 0x80000000 else h


# --- messages ---

class ScanQuery(NamedTuple):
    opcode: int
    request_id: int
    cache_id: int
    flags: int
    filter_type: int
    page_size: int
    partition: int
    local: int


def _frame(body: bytes) -> bytes:
    return write_int(len(body)) + body


def encode_handshake(version: Tuple[int, int, int] = PROTOCOL_VERSION) -> bytes:
    major, minor, patch = version
    return _frame(
        write_byte(HANDSHAKE_START)
        + write_short(major)
        + write_short(minor)
        + write_short(patch)
        + write_byte(HANDSHAKE_END)
    )


def decode_handshake(body: bytes) -> Optional[Tuple[int, int, int]]:
    """Returns the client version, or None if the markers are wrong."""
    if len(body) != HANDSHAKE_LEN:
        return None
    if read_byte(body, 0) != HANDSHAKE_START or read_byte(body, 7) != HANDSHAKE_END:
        return None
    # version fields are unsigned on the wire
    return tuple(read_short(body, off) & 0xFFFF for off in (1, 3, 5))


def encode_handshake_response(result: int) -> bytes:
    return _frame(write_byte(result))


def encode_scan_query(
    page_size: int,
    cache_name: str = "TEST_CACHE",
    request_id: int = 0,
    flags: int = 0,
    partition: int = PARTITION_ALL,
    local: bool = True,
) -> bytes:
    return _frame(
        write_short(OP_QUERY_SCAN)
        + write_long(request_id)
        + write_int(java_string_hash(cache_name))
        + write_byte(flags)
        + write_byte(FILTER_NULL)
        + write_int(page_size)
        + write_int(partition)
        + write_byte(1 if local else 0)
    )


def decode_scan_query(body: bytes) -> ScanQuery:
    if len(body) < SCAN_QUERY_LEN:
        raise ProtocolEOFError(f"scan query body is {len(body)} bytes, need {SCAN_QUERY_LEN}")
    return ScanQuery(
        opcode=read_short(body, 0),
        request_id=read_long(body, 2),
        cache_id=read_int(body, 10),
        flags=read_byte(body, 14),
        filter_type=read_byte(body, 15),
        page_size=read_int(body, 16),
        partition=read_int(body, 20),
        local=read_byte(body, 24),
    )


def encode_query_response(request_id: int, status: int = 0) -> bytes:
    return _frame(write_long(request_id) + write_int(status))


class ProtocolHandler:
    """
    Server side of the protocol. Incremental parser; does not call recv() itself.
    You feed raw bytes via on_data().
    Protocol:
      <len:int32><handshake body>    once per connection
      <len:int32><request body>      any number of times after a successful handshake
    Replies go out through send_func. on_request(body) returns the reply bytes
    for a request frame.
    """
    def __init__(self, send_func, on_request, handshake_result: Optional[int] = None):
        self.send = send_func
        self.on_request = on_request
        self.handshake_result = handshake_result
        self.buf = bytearray()
        self.state = "READ_HANDSHAKE"
        self.closed = False

    def on_data(self, data: bytes):
        self.buf.extend(data)
        while not self.closed:
            body = self._next_frame()
            if body is None:
                return

            if self.state == "READ_HANDSHAKE":
                self._handle_handshake(body)

            else:
                self.send(self.on_request(body))

    def _handle_handshake(self, body: bytes):
        version = decode_handshake(body)
        res = self.handshake_result
        if res is None:
            res = HANDSHAKE_OK if version is not None else 0
        self.send(encode_handshake_response(res))
        if res != HANDSHAKE_OK:
            log.debug("rejected handshake (version=%s, res=%d)", version, res)
            self.closed = True
            return
        log.debug("accepted handshake, client version %s", version)
        self.state = "READ_REQUEST"

    # --- buffer helpers ---
    def _next_frame(self) -> Optional[bytes]:
        if len(self.buf) < 4:
            return None
        n = read_int(self.buf)
        if n < 0:
            raise ProtocolError(f"negative frame length {n}")
        if n > MAX_FRAME_LEN:
            raise ProtocolError(f"frame length {n} exceeds {MAX_FRAME_LEN}")
        if len(self.buf) < 4 + n:
            return None
        self._consume(4)
        return self._consume(n)

    def _consume(self, n: int) -> bytes:
        out = bytes(self.buf[:n])
        del self.buf[:n]
        return out
