from __future__ import annotations

import socket
import threading

import pytest

from udpft.client import FileClient
from udpft.server import FileServer, ServerConfig

FAST_TIMEOUT = 0.2
RETRIES = 3


@pytest.fixture
def start_server(tmp_path):
    started = []

    def _start(store=None, **overrides):
        options = dict(
            host="127.0.0.1",
            port=0,
            storage_dir=str(tmp_path / "server_files"),
            backup_dir=str(tmp_path / "backup_files"),
            timeout=FAST_TIMEOUT,
            retries=RETRIES,
            max_workers=4,
        )
        options.update(overrides)
        server = FileServer(ServerConfig(**options), store=store)
        server.start()
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        started.append((server, thread))
        return server

    yield _start

    for server, thread in started:
        server.shutdown()
        thread.join(timeout=10.0)


@pytest.fixture
def server(start_server):
    return start_server()


@pytest.fixture
def make_client():
    clients = []

    def _make(server, **overrides):
        options = dict(codec=server.codec, timeout=FAST_TIMEOUT, retries=RETRIES)
        options.update(overrides)
        client = FileClient("127.0.0.1", server.server_address[1], **options)
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.close()


@pytest.fixture
def silent_peer():
    """A bound UDP socket that never answers; used to count retransmissions."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    yield sock
    sock.close()


@pytest.fixture
def drain():
    """Collects every datagram that arrives on a socket until it goes quiet."""

    def _drain(sock: socket.socket, wait: float = 0.3) -> list[bytes]:
        sock.settimeout(wait)
        received = []
        while True:
            try:
                data, _ = sock.recvfrom(4096)
            except socket.timeout:
                return received
            received.append(data)

    return _drain
