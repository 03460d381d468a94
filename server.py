
import argparse
import logging
import socket
import threading
import time
from typing import Optional

from protocol import ProtocolHandler, decode_scan_query, encode_query_response

log = logging.getLogger(__name__)


def handle_client(conn: socket.socket, addr, delay_ms: float, handshake_result: Optional[int]):
    conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    def send(data: bytes):
        try:
            conn.sendall(data)
        except OSError:
            pass

    def on_request(body: bytes) -> bytes:
        query = decode_scan_query(body)
        log.debug("%s: scan query page_size=%d", addr, query.page_size)
        if delay_ms > 0:
            time.sleep(delay_ms / 1000.0)
        return encode_query_response(query.request_id)

    handler = ProtocolHandler(send, on_request, handshake_result)
    try:
        with conn:
            while not handler.closed:
                data = conn.recv(65536)
                if not data:
                    break
                handler.on_data(data)
    except Exception as e:
        # Let the connection drop; server keeps running
        log.debug("%s: connection dropped: %s", addr, e)


class StubServer:
    """
    Thread-per-connection server for the protocol. port=0 binds an ephemeral
    port; the bound one is in .port after construction.
    """
    def __init__(self, host: str = "127.0.0.1", port: int = 0, delay_ms: float = 0.0,
                 handshake_result: Optional[int] = None):
        self.delay_ms = delay_ms
        self.handshake_result = handshake_result
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind((host, port))
        self.sock.listen(512)
        self.host, self.port = self.sock.getsockname()[:2]
        self._stop = False
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "StubServer":
        self._thread = threading.Thread(target=self.serve_forever, daemon=True)
        self._thread.start()
        return self

    def serve_forever(self):
        log.info("Stub server listening on %s:%d (delay=%s ms)", self.host, self.port, self.delay_ms)
        while not self._stop:
            try:
                conn, addr = self.sock.accept()
            except OSError:
                break  # listening socket closed
            t = threading.Thread(
                target=handle_client,
                args=(conn, addr, self.delay_ms, self.handshake_result),
                daemon=True,
            )
            t.start()

    def close(self):
        self._stop = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()
        if self._thread is not None:
            self._thread.join(timeout=1.0)

    def __enter__(self) -> "StubServer":
        return self.start()

    def __exit__(self, *exc):
        self.close()


if __name__ == "__main__":
    ap = argparse.ArgumentParser()
    ap.add_argument("--host", default="0.0.0.0")
    ap.add_argument("--port", type=int, default=10800)
    ap.add_argument("--delay-ms", type=float, default=0.0)
    ap.add_argument("--reject-handshake", action="store_true")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    server = StubServer(args.host, args.port, args.delay_ms, 0 if args.reject_handshake else None)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.close()
