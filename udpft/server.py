"""
UDP file transfer server.

One socket, one receive loop. Each new request (READ / WRITE / DELETE or an
unrecognized code) opens a session keyed by the sender's address and is run by
a worker from a bounded pool; later packets from that address are routed into
the session's inbox, and new requests that arrive mid-transfer run once the
session ends. A finished upload lingers briefly so a resent final chunk is
re-acknowledged instead of starting over. Sessions share nothing but the
socket (sends are serialized by a lock) and the storage directory.

Two concurrent writers to the same filename are not arbitrated: whichever
worker writes last wins, and the stored bytes may interleave.
"""

import argparse
import logging
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Optional

from .codec import XorCodec, build_codec
from .console import configure_logging, format_peer, section
from .errors import IntegrityMismatch, TransportUnavailable, UnknownOperation
from .protocol import DEFAULT_PORT, Operation, Packet, PacketError, operation_name
from .rdt import (
    CHUNK_SIZE,
    MAX_RETRIES,
    RECV_BUFFER,
    TIMEOUT_SECONDS,
    Address,
    SessionChannel,
    idle_timeout,
    replies,
    send_with_retry,
    set_wire_trace,
    wait_for_packet,
)
from .storage import FileStore


POLL_INTERVAL = 0.5

MSG_NOT_FOUND = "Error: File not found."
MSG_CREATE_FAILED = "Error: Could not create file."
MSG_DELETE_FAILED = "Error: Failed to delete file."
MSG_DELETED = "Success: File deleted."
MSG_UNKNOWN_OP = "Error: Unknown operation."

logger = logging.getLogger(__name__)


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    storage_dir: str = "server_files"
    backup_dir: str = "backup_files"
    backup_uploads: bool = True
    timeout: float = TIMEOUT_SECONDS
    retries: int = MAX_RETRIES
    max_workers: int = 16
    codec: object = field(default_factory=XorCodec)


class FileServer:
    def __init__(self, config: ServerConfig, store: Optional[FileStore] = None):
        self.config = config
        self.codec = config.codec
        self.store = store or FileStore(config.storage_dir, config.backup_dir)
        self.sock: Optional[socket.socket] = None
        self._send_lock = threading.Lock()
        self._sessions: Dict[Address, SessionChannel] = {}
        self._sessions_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._stop = threading.Event()
        self._handlers = {
            Operation.READ: self._handle_read,
            Operation.WRITE: self._handle_write,
            Operation.DELETE: self._handle_delete,
        }

    def __enter__(self) -> "FileServer":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

    @property
    def server_address(self) -> Address:
        if self.sock is None:
            raise RuntimeError("Server is not started")
        return self.sock.getsockname()

    # Creates directories, binds the socket and starts the worker pool
    def start(self) -> None:
        if self.sock is not None:
            return
        self.store.ensure_directories()
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as exc:
            logger.error("Socket creation failed: %s", exc)
            raise TransportUnavailable(f"Socket creation failed: {exc}") from exc
        try:
            sock.bind((self.config.host, self.config.port))
        except OSError as exc:
            sock.close()
            logger.error("Bind failed on %s:%d: %s", self.config.host, self.config.port, exc)
            raise TransportUnavailable(f"Bind failed on {self.config.host}:{self.config.port}: {exc}") from exc
        sock.settimeout(POLL_INTERVAL)
        self.sock = sock
        self._stop.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="udpft-worker",
        )
        logger.info("listening on %s", format_peer(self.server_address))

    # Receives one packet at a time and hands it to the session layer
    def serve_forever(self) -> None:
        self.start()
        try:
            while not self._stop.is_set():
                try:
                    data, addr = self.sock.recvfrom(RECV_BUFFER)
                except socket.timeout:
                    continue
                except (ConnectionResetError, ConnectionRefusedError):
                    continue
                try:
                    packet = Packet.decode(data)
                except PacketError as exc:
                    logger.warning("dropped malformed datagram peer=%s: %s", format_peer(addr), exc)
                    continue
                self._dispatch(packet, addr)
        finally:
            self._close()

    def shutdown(self) -> None:
        self._stop.set()

    def _close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        if self.sock is not None:
            self.sock.close()
            self.sock = None
        logger.info("server stopped")

    def _dispatch(self, packet: Packet, addr: Address) -> None:
        with self._sessions_lock:
            channel = self._sessions.get(addr)
            if channel is not None:
                channel.deliver(packet)
                return
            if packet.operation in (Operation.ACK, Operation.ERROR):
                channel = None
            else:
                channel = SessionChannel(self.sock, addr, self._send_lock, request=packet)
                self._sessions[addr] = channel
        if channel is None:
            logger.warning(
                "stray %s with no active transfer peer=%s",
                operation_name(packet.operation),
                format_peer(addr),
            )
            return
        executor = self._executor
        try:
            if executor is None:
                raise RuntimeError("worker pool is closed")
            executor.submit(self._run_session, channel, packet)
        except RuntimeError:
            with self._sessions_lock:
                self._sessions.pop(addr, None)
            logger.warning("server stopping; dropped %s peer=%s", operation_name(packet.operation), format_peer(addr))

    def _run_session(self, channel: SessionChannel, request: Packet) -> None:
        handler = self._handlers.get(request.operation)
        try:
            if handler is None:
                raise UnknownOperation(f"Unknown operation ID: {int(request.operation)}")
            handler(channel, request)
        except UnknownOperation as exc:
            logger.error("%s peer=%s", exc, format_peer(channel.peer))
            channel.send(Packet.error(MSG_UNKNOWN_OP, self.codec))
        except Exception:
            logger.exception(
                "unhandled error serving %s %s peer=%s",
                operation_name(request.operation),
                request.filename,
                format_peer(channel.peer),
            )
        finally:
            self._end_session(channel)

    # Unregisters the session; requests that queued up behind it start new sessions
    def _end_session(self, channel: SessionChannel) -> None:
        with self._sessions_lock:
            if self._sessions.get(channel.peer) is channel:
                del self._sessions[channel.peer]
            leftover = channel.drain()
        for packet in leftover:
            if packet.is_request and not self._stop.is_set():
                self._dispatch(packet, channel.peer)

    def _handle_read(self, channel: SessionChannel, request: Packet) -> None:
        name = request.filename
        peer = format_peer(channel.peer)
        try:
            source = self.store.open_for_read(name)
        except (OSError, ValueError) as exc:
            logger.error("File not found: %s peer=%s (%s)", name, peer, exc)
            channel.send(Packet.error(MSG_NOT_FOUND, self.codec))
            return

        sent = 0
        with source:
            while True:
                chunk = source.read(CHUNK_SIZE)
                result = send_with_retry(
                    channel,
                    Packet.build(Operation.ACK, chunk, self.codec),
                    timeout=self.config.timeout,
                    retries=self.config.retries,
                    accept=replies(Operation.ACK, Operation.ERROR),
                )
                if not result.acknowledged:
                    logger.error(
                        "Read of %s aborted: no acknowledgment after %d attempts peer=%s",
                        name,
                        result.attempts,
                        peer,
                    )
                    return
                if result.reply.operation == Operation.ERROR:
                    logger.error("Read of %s aborted by peer=%s", name, peer)
                    return
                sent += len(chunk)
                if len(chunk) < CHUNK_SIZE:
                    break
        logger.info("sent %s (%d bytes) peer=%s", name, sent, peer)

    def _handle_write(self, channel: SessionChannel, request: Packet) -> None:
        name = request.filename
        peer = format_peer(channel.peer)
        try:
            out = self.store.open_for_write(name)
        except (OSError, ValueError) as exc:
            logger.error("Could not create file: %s peer=%s (%s)", name, peer, exc)
            channel.send(Packet.error(MSG_CREATE_FAILED, self.codec))
            return

        received = 0
        chunks = 0
        final: Optional[Packet] = None
        packet: Optional[Packet] = request
        with out:
            while packet is not None:
                try:
                    plain = packet.open(self.codec)
                except IntegrityMismatch as exc:
                    # Left unacknowledged: only the sender's retransmission can recover it.
                    logger.error("Checksum mismatch for file: %s peer=%s (%s)", name, peer, exc)
                else:
                    out.write(plain)
                    out.flush()
                    received += len(plain)
                    chunks += 1
                    if len(plain) < CHUNK_SIZE:
                        final = packet
                        break
                    channel.send(Packet.ack(self.codec))
                packet = self._next_chunk(channel, name)

        if final is None:
            logger.error("Write of %s interrupted after %d bytes peer=%s", name, received, peer)
            return
        logger.info("received %s (%d bytes, %d chunks) peer=%s", name, received, chunks, peer)
        if self.config.backup_uploads:
            try:
                target = self.store.backup(name)
            except OSError as exc:
                logger.error("Backup of %s failed peer=%s: %s", name, peer, exc)
            else:
                logger.info("backed up %s to %s", name, target)
        channel.send(Packet.ack(self.codec))
        self._linger(channel, final)

    # Re-acknowledges a resent final chunk whose ACK was lost, without writing it again
    def _linger(self, channel: SessionChannel, final: Packet) -> None:
        wait = idle_timeout(self.config.timeout, self.config.retries)
        while True:
            packet = wait_for_packet(channel, wait)
            if packet is None:
                return
            if packet != final:
                if packet.is_request:
                    channel.held.append(packet)
                return
            logger.info("re-acknowledged final chunk of %s peer=%s", final.filename, format_peer(channel.peer))
            channel.send(Packet.ack(self.codec))

    # Waits for the next WRITE chunk of the same file; None when the sender went quiet
    def _next_chunk(self, channel: SessionChannel, name: str) -> Optional[Packet]:
        wait = idle_timeout(self.config.timeout, self.config.retries)
        while True:
            packet = wait_for_packet(channel, wait)
            if packet is None:
                return None
            if packet.operation == Operation.WRITE and packet.filename == name:
                return packet
            if packet.operation == Operation.ERROR:
                logger.error("Write of %s cancelled by peer=%s", name, format_peer(channel.peer))
                return None
            if packet.is_request:
                channel.hold(packet)
            else:
                logger.warning(
                    "unexpected %s during write of %s peer=%s",
                    operation_name(packet.operation),
                    name,
                    format_peer(channel.peer),
                )

    def _handle_delete(self, channel: SessionChannel, request: Packet) -> None:
        name = request.filename
        peer = format_peer(channel.peer)
        try:
            self.store.remove(name)
        except (OSError, ValueError) as exc:
            logger.error("Failed to delete file: %s peer=%s (%s)", name, peer, exc)
            channel.send(Packet.error(MSG_DELETE_FAILED, self.codec))
            return
        logger.info("deleted %s peer=%s", name, peer)
        channel.send(Packet.ack(self.codec, MSG_DELETED.encode("utf-8")))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reliable UDP file transfer server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--storage", default="server_files")
    parser.add_argument("--backup", default="backup_files", help="Directory for versioned copies of uploads")
    parser.add_argument("--no-backup", action="store_true", help="Do not copy finished uploads to the backup directory")
    parser.add_argument("--log-file", default="server_error.log")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--timeout", type=float, default=TIMEOUT_SECONDS, help="Seconds to wait for each ACK")
    parser.add_argument("--retries", type=int, default=MAX_RETRIES)
    parser.add_argument("--workers", type=int, default=16)
    parser.add_argument("--cipher", choices=["none", "xor", "aes"], default="xor")
    parser.add_argument("--key", default=None, help="Cipher key (hex); one byte for xor, 16/24/32 bytes for aes")
    parser.add_argument("--iv", default=None, help="AES IV (hex, 16 bytes)")
    parser.add_argument("--trace", action="store_true", help="Print every packet sent and received")
    return parser


# Runs the CLI entrypoint for the server
def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        codec = build_codec(args.cipher, args.key, args.iv)
    except ValueError as exc:
        parser.error(str(exc))
    configure_logging(args.log_level, args.log_file)
    set_wire_trace(args.trace, "SERVER")

    config = ServerConfig(
        host=args.host,
        port=args.port,
        storage_dir=args.storage,
        backup_dir=args.backup,
        backup_uploads=not args.no_backup,
        timeout=args.timeout,
        retries=args.retries,
        max_workers=args.workers,
        codec=codec,
    )
    server = FileServer(config)
    try:
        server.start()
    except TransportUnavailable as exc:
        print(f"[server] {exc}")
        raise SystemExit(1)

    section("Server Ready")
    print(f"[server] listening on {args.host}:{args.port} cipher={codec.name}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\n[server] terminated by user")


if __name__ == "__main__":
    main()
