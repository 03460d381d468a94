
import logging
import socket
import time
from typing import Tuple

from protocol import (
    HANDSHAKE_OK,
    PROTOCOL_VERSION,
    HandshakeError,
    encode_handshake,
    encode_scan_query,
    read_byte,
    read_int,
    recv_exact,
)

log = logging.getLogger(__name__)


def handshake(sock: socket.socket, version: Tuple[int, int, int] = PROTOCOL_VERSION):
    sock.sendall(encode_handshake(version))
    read_int(recv_exact(sock, 4))  # result length, not validated
    res = read_byte(recv_exact(sock, 1))
    if res != HANDSHAKE_OK:
        raise HandshakeError(res)


def measure_scan_query(
    page_size: int,
    host: str = "localhost",
    port: int = 10800,
    cache_name: str = "TEST_CACHE",
    version: Tuple[int, int, int] = PROTOCOL_VERSION,
) -> float:
    """
    One sample: connect, handshake, send a scan query and time the arrival of
    the response length field. Returns milliseconds. The response payload is
    left unread; the socket is closed on every path.
    """
    with socket.create_connection((host, port)) as s:
        s.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        handshake(s, version)
        s.sendall(encode_scan_query(page_size, cache_name))
        start = time.perf_counter()
        read_int(recv_exact(s, 4))  # result length
        end = time.perf_counter()
    elapsed = (end - start) * 1000.0
    log.debug("page_size=%d latency=%.3f ms", page_size, elapsed)
    return elapsed


if __name__ == "__main__":
    # demo
    logging.basicConfig(level=logging.DEBUG)
    print(f"{measure_scan_query(5):.2f} ms")
