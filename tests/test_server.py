from __future__ import annotations

import os
import socket
import threading
import time
from datetime import datetime

import pytest

from udpft.codec import AesCtrCodec, XorCodec, checksum
from udpft.errors import DeleteFailed, FileCreateFailed, RemoteFileNotFound, TransportUnavailable
from udpft.protocol import Operation, Packet
from udpft.server import (
    MSG_DELETED,
    MSG_UNKNOWN_OP,
    FileServer,
    ServerConfig,
)
from udpft.storage import FileStore


class RecordingWriter:
    def __init__(self, f, sizes):
        self._f = f
        self._sizes = sizes

    def write(self, data):
        self._sizes.append(len(data))
        return self._f.write(data)

    def flush(self):
        self._f.flush()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self._f.close()


class RecordingStore(FileStore):
    """Records the size of every chunk the server appends."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.writes = []

    def open_for_write(self, name):
        return RecordingWriter(super().open_for_write(name), self.writes)


def raw_socket():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)
    return sock


@pytest.mark.parametrize("size", [0, 1, 511, 512, 513, 4096 * 512])
def test_upload_then_download_roundtrip(server, make_client, tmp_path, size):
    original = os.urandom(size)
    source = tmp_path / "source.bin"
    source.write_bytes(original)
    target = tmp_path / "downloaded.bin"

    client = make_client(server)
    assert client.write(str(source), "data.bin") == size
    assert client.read("data.bin", str(target)) == size

    assert target.read_bytes() == original
    assert (tmp_path / "server_files" / "data.bin").read_bytes() == original


def test_roundtrip_with_aes(start_server, make_client, tmp_path):
    codec = AesCtrCodec.generate()
    srv = start_server(codec=codec)
    original = os.urandom(1300)
    source = tmp_path / "secret.bin"
    source.write_bytes(original)

    client = make_client(srv)
    client.write(str(source))
    client.read("secret.bin", str(tmp_path / "back.bin"))
    assert (tmp_path / "back.bin").read_bytes() == original


def test_write_1500_bytes_arrives_as_three_chunks(start_server, make_client, tmp_path):
    store = RecordingStore(tmp_path / "server_files", tmp_path / "backup_files")
    srv = start_server(store=store)
    original = os.urandom(1500)
    source = tmp_path / "upload.bin"
    source.write_bytes(original)

    assert make_client(srv).write(str(source)) == 1500

    assert store.writes == [512, 512, 476]
    stored = (tmp_path / "server_files" / "upload.bin").read_bytes()
    assert len(stored) == 1500
    assert checksum(stored) == checksum(original)
    assert stored == original


def test_finished_upload_is_backed_up_with_version_suffix(start_server, make_client, tmp_path):
    store = FileStore(
        tmp_path / "server_files",
        tmp_path / "backup_files",
        clock=lambda: datetime(2024, 3, 9, 14, 5, 7),
    )
    srv = start_server(store=store)
    source = tmp_path / "report.txt"
    source.write_bytes(b"quarterly numbers")

    make_client(srv).write(str(source))

    backup = tmp_path / "backup_files" / "report_20240309_140507.txt"
    assert backup.read_bytes() == b"quarterly numbers"
    assert (tmp_path / "server_files" / "report.txt").exists()


def test_backup_can_be_disabled(start_server, make_client, tmp_path):
    srv = start_server(backup_uploads=False)
    source = tmp_path / "plain.txt"
    source.write_bytes(b"x")
    make_client(srv).write(str(source))
    assert os.listdir(tmp_path / "backup_files") == []


def test_read_missing_file_reports_error_and_writes_nothing(server, make_client, tmp_path):
    target = tmp_path / "never.bin"
    with pytest.raises(RemoteFileNotFound) as info:
        make_client(server).read("does-not-exist.bin", str(target))
    assert "File not found" in str(info.value)
    assert not target.exists()


def test_delete_missing_file_fails_and_leaves_storage_alone(server, make_client, tmp_path):
    storage = tmp_path / "server_files"
    (storage / "keep.txt").write_bytes(b"keep me")
    before = sorted(os.listdir(storage))

    with pytest.raises(DeleteFailed):
        make_client(server).delete("ghost.txt")

    assert sorted(os.listdir(storage)) == before
    assert (storage / "keep.txt").read_bytes() == b"keep me"


def test_delete_existing_file(server, make_client, tmp_path):
    doomed = tmp_path / "server_files" / "old.log"
    doomed.write_bytes(b"bye")
    assert make_client(server).delete("old.log") == MSG_DELETED
    assert not doomed.exists()


def test_delete_cannot_escape_storage_root(server, make_client, tmp_path):
    outside = tmp_path / "outside.txt"
    outside.write_bytes(b"safe")
    with pytest.raises(DeleteFailed):
        make_client(server).delete("../outside.txt")
    assert outside.exists()


def test_write_into_unwritable_destination(server, make_client, tmp_path):
    (tmp_path / "server_files" / "taken").mkdir()
    payload = tmp_path / "payload.bin"
    payload.write_bytes(b"data")
    with pytest.raises(FileCreateFailed):
        make_client(server).write(str(payload), "taken")


def test_concurrent_reads_of_different_files(server, make_client, tmp_path):
    storage = tmp_path / "server_files"
    contents = {"alpha.bin": os.urandom(512 * 40 + 17), "beta.bin": os.urandom(512 * 25 + 300)}
    for name, data in contents.items():
        (storage / name).write_bytes(data)

    clients = {name: make_client(server) for name in contents}
    errors = []

    def download(name):
        try:
            clients[name].read(name, str(tmp_path / f"got-{name}"))
        except Exception as exc:  # pragma: no cover - surfaced by the assert below
            errors.append(exc)

    threads = [threading.Thread(target=download, args=(name,)) for name in contents]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30.0)

    assert errors == []
    for name, data in contents.items():
        assert (tmp_path / f"got-{name}").read_bytes() == data


def test_unknown_operation_gets_error_reply(server):
    sock = raw_socket()
    try:
        sock.sendto(Packet(9, "whatever").encode(), ("127.0.0.1", server.server_address[1]))
        reply = Packet.decode(sock.recvfrom(4096)[0])
    finally:
        sock.close()
    assert reply.operation is Operation.ERROR
    assert reply.text(server.codec) == MSG_UNKNOWN_OP


def test_corrupt_chunk_is_dropped_until_resent(server, tmp_path):
    codec = server.codec
    good = Packet.build(Operation.WRITE, b"final chunk", codec, filename="fragile.bin")
    corrupt = Packet(good.operation, good.filename, good.payload, good.checksum + 1)
    addr = ("127.0.0.1", server.server_address[1])

    sock = raw_socket()
    try:
        sock.sendto(corrupt.encode(), addr)
        sock.settimeout(0.3)
        with pytest.raises(socket.timeout):
            sock.recvfrom(4096)

        sock.settimeout(2.0)
        sock.sendto(good.encode(), addr)
        reply = Packet.decode(sock.recvfrom(4096)[0])
    finally:
        sock.close()

    assert reply.operation is Operation.ACK
    assert (tmp_path / "server_files" / "fragile.bin").read_bytes() == b"final chunk"


def test_checksum_does_not_detect_a_wrong_key(start_server, make_client, tmp_path):
    srv = start_server()
    (tmp_path / "server_files" / "doc.txt").write_bytes(b"text")
    client = make_client(srv, codec=XorCodec(0x11))
    # Checksums cover the wire bytes, so a wrong key still decodes into garbage.
    client.read("doc.txt", str(tmp_path / "doc.txt"))
    assert (tmp_path / "doc.txt").read_bytes() != b"text"


def test_bind_failure_is_fatal(server, tmp_path):
    taken_port = server.server_address[1]
    clash = FileServer(
        ServerConfig(
            host="127.0.0.1",
            port=taken_port,
            storage_dir=str(tmp_path / "s2"),
            backup_dir=str(tmp_path / "b2"),
        )
    )
    with pytest.raises(TransportUnavailable):
        clash.start()


def test_resent_final_chunk_is_acknowledged_without_truncating(server, tmp_path):
    codec = server.codec
    data = os.urandom(1500)
    packets = [
        Packet.build(Operation.WRITE, data[i:i + 512], codec, filename="up.bin")
        for i in range(0, len(data), 512)
    ]
    addr = ("127.0.0.1", server.server_address[1])

    sock = raw_socket()
    try:
        for packet in packets:
            sock.sendto(packet.encode(), addr)
            assert Packet.decode(sock.recvfrom(4096)[0]).operation is Operation.ACK
        # The last ACK went missing as far as the sender knows.
        time.sleep(0.1)
        sock.sendto(packets[-1].encode(), addr)
        reply = Packet.decode(sock.recvfrom(4096)[0])
    finally:
        sock.close()

    assert reply.operation is Operation.ACK
    assert (tmp_path / "server_files" / "up.bin").read_bytes() == data
    assert len(os.listdir(tmp_path / "backup_files")) == 1


def test_request_sent_during_a_read_is_served_afterwards(start_server, tmp_path):
    srv = start_server(timeout=1.0)
    codec = srv.codec
    storage = tmp_path / "server_files"
    (storage / "two.bin").write_bytes(os.urandom(600))
    (storage / "later.txt").write_bytes(b"x")
    addr = ("127.0.0.1", srv.server_address[1])

    sock = raw_socket()
    try:
        sock.sendto(Packet(Operation.READ, "two.bin").encode(), addr)
        first = Packet.decode(sock.recvfrom(4096)[0])
        sock.sendto(Packet(Operation.DELETE, "later.txt").encode(), addr)
        sock.sendto(Packet.ack(codec).encode(), addr)
        second = Packet.decode(sock.recvfrom(4096)[0])
        sock.sendto(Packet.ack(codec).encode(), addr)
        status = Packet.decode(sock.recvfrom(4096)[0])
    finally:
        sock.close()

    assert len(first.open(codec)) == 512
    assert len(second.open(codec)) == 88
    assert status.text(codec) == MSG_DELETED
    assert not (storage / "later.txt").exists()
