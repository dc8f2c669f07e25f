import argparse
import logging
import os
import socket
from typing import BinaryIO, Callable, Optional

from .codec import AesCtrCodec, XorCodec, build_codec
from .console import ANSI_RED, configure_logging, paint, section
from .errors import (
    DeleteFailed,
    FileCreateFailed,
    IntegrityMismatch,
    LocalFileError,
    PeerUnreachable,
    RemoteFileNotFound,
    TransferError,
    TransportUnavailable,
)
from .protocol import DEFAULT_PORT, Operation, Packet, operation_name
from .rdt import (
    CHUNK_SIZE,
    MAX_RETRIES,
    TIMEOUT_SECONDS,
    SocketChannel,
    idle_timeout,
    replies,
    send_with_retry,
    set_wire_trace,
    wait_for_packet,
)

# Called with the unacknowledged packet and the attempt count; True retries once more
ExhaustedHook = Callable[[Packet, int], bool]

logger = logging.getLogger(__name__)


class FileClient:
    """Issues one request at a time to a file server and drives it to completion.

    The client is fully synchronous: every call blocks until the transfer
    finishes, the server reports an error, or the retry budget runs out.
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        codec=None,
        timeout: float = TIMEOUT_SECONDS,
        retries: int = MAX_RETRIES,
        on_exhausted: Optional[ExhaustedHook] = None,
    ):
        self.codec = codec or XorCodec()
        self.timeout = timeout
        self.retries = retries
        self.on_exhausted = on_exhausted
        try:
            self.server_addr = (socket.gethostbyname(host), port)
            self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            self.sock.bind(("0.0.0.0", 0))
        except OSError as exc:
            raise TransportUnavailable(f"Cannot open client socket for {host}:{port}: {exc}") from exc
        self.channel = SocketChannel(self.sock, self.server_addr)

    def __enter__(self) -> "FileClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self.sock.close()

    # Runs the bounded retry sequence, restarting it while the exhaustion hook agrees
    def _request(self, packet: Packet) -> Packet:
        while True:
            result = send_with_retry(
                self.channel,
                packet,
                timeout=self.timeout,
                retries=self.retries,
                accept=replies(Operation.ACK, Operation.ERROR),
            )
            if result.acknowledged:
                return result.reply
            if self.on_exhausted is None or not self.on_exhausted(packet, result.attempts):
                target = f" {packet.filename}" if packet.filename else ""
                raise PeerUnreachable(
                    f"No acknowledgment for {operation_name(packet.operation)}{target} "
                    f"after {result.attempts} attempts"
                )

    def _status_text(self, packet: Packet) -> str:
        try:
            return packet.text(self.codec)
        except IntegrityMismatch:
            return f"unreadable {operation_name(packet.operation)} reply (checksum mismatch)"

    @staticmethod
    def _open_local(path: str, mode: str) -> BinaryIO:
        try:
            return open(path, mode)
        except OSError as exc:
            raise LocalFileError(f"Cannot open local file {path}: {exc}") from exc

    def read(self, remote_name: str, local_path: Optional[str] = None) -> int:
        """Download ``remote_name`` into ``local_path``; returns the byte count.

        The local file is created on the first verified chunk, so a missing
        remote file leaves nothing behind.
        """
        local_path = local_path or os.path.basename(remote_name)
        reply: Optional[Packet] = self._request(Packet(Operation.READ, remote_name))
        out: Optional[BinaryIO] = None
        received = 0
        try:
            while True:
                if reply.operation == Operation.ERROR:
                    text = self._status_text(reply)
                    if out is None:
                        raise RemoteFileNotFound(text)
                    raise TransferError(f"Server aborted read of {remote_name}: {text}")
                try:
                    chunk = reply.open(self.codec)
                except IntegrityMismatch as exc:
                    # Not acknowledged, so the server re-sends it.
                    logger.warning("dropped corrupt chunk of %s: %s", remote_name, exc)
                else:
                    if out is None:
                        out = self._open_local(local_path, "wb")
                    out.write(chunk)
                    received += len(chunk)
                    self.channel.send(Packet.ack(self.codec))
                    if len(chunk) < CHUNK_SIZE:
                        return received
                reply = wait_for_packet(
                    self.channel,
                    idle_timeout(self.timeout, self.retries),
                    replies(Operation.ACK, Operation.ERROR),
                )
                if reply is None:
                    raise PeerUnreachable(f"Read of {remote_name} stalled after {received} bytes")
        finally:
            if out is not None:
                out.close()

    def write(self, local_path: str, remote_name: Optional[str] = None) -> int:
        """Upload ``local_path`` as ``remote_name``, one acknowledged chunk at a time."""
        remote_name = remote_name or os.path.basename(local_path)
        sent = 0
        with self._open_local(local_path, "rb") as source:
            while True:
                chunk = source.read(CHUNK_SIZE)
                packet = Packet.build(Operation.WRITE, chunk, self.codec, filename=remote_name)
                reply = self._request(packet)
                if reply.operation == Operation.ERROR:
                    raise FileCreateFailed(self._status_text(reply))
                sent += len(chunk)
                if len(chunk) < CHUNK_SIZE:
                    return sent

    def delete(self, remote_name: str) -> str:
        reply = self._request(Packet(Operation.DELETE, remote_name))
        text = self._status_text(reply)
        if reply.operation == Operation.ERROR:
            raise DeleteFailed(text)
        return text


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reliable UDP file transfer client")
    parser.add_argument("--server-host", default="127.0.0.1")
    parser.add_argument("--server-port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--op", choices=["read", "write", "delete", "genkey"], required=True)
    parser.add_argument("--remote-file", default="")
    parser.add_argument("--local-file", default="")
    parser.add_argument("--timeout", type=float, default=TIMEOUT_SECONDS, help="Seconds to wait for each ACK")
    parser.add_argument("--retries", type=int, default=MAX_RETRIES)
    parser.add_argument("--cipher", choices=["none", "xor", "aes"], default="xor")
    parser.add_argument("--key", default=None, help="Cipher key (hex); one byte for xor, 16/24/32 bytes for aes")
    parser.add_argument("--iv", default=None, help="AES IV (hex, 16 bytes)")
    parser.add_argument("--trace", action="store_true", help="Print every packet sent and received")
    parser.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    return parser


# Runs one client operation; returns a process exit code
def run(args: argparse.Namespace, on_exhausted: Optional[ExhaustedHook] = None) -> int:
    if args.op == "genkey":
        generated = AesCtrCodec.generate()
        print(f"--cipher aes --key {generated.key.hex()} --iv {generated.iv.hex()}")
        return 0

    codec = build_codec(args.cipher, args.key, args.iv)
    remote_file = args.remote_file or os.path.basename(args.local_file)
    if not remote_file:
        print("[client] a remote or local filename is required")
        return 2

    try:
        with FileClient(
            args.server_host,
            args.server_port,
            codec=codec,
            timeout=args.timeout,
            retries=args.retries,
            on_exhausted=on_exhausted,
        ) as client:
            if args.op == "read":
                section(f"Download (RRQ): {remote_file}")
                received = client.read(remote_file, args.local_file or None)
                print(f"[client] downloaded {received} bytes -> {args.local_file or os.path.basename(remote_file)}")
            elif args.op == "write":
                local_file = args.local_file or remote_file
                section(f"Upload (WRQ): {local_file}")
                sent = client.write(local_file, remote_file)
                print(f"[client] uploaded {sent} bytes <- {local_file}")
            else:
                section(f"Delete (DEL): {remote_file}")
                print(f"[client] {client.delete(remote_file)}")
        return 0
    except KeyboardInterrupt:
        print("\n[client] terminated by user")
    except RemoteFileNotFound as exc:
        print(f"[client] file not found on server: {exc}")
    except LocalFileError as exc:
        print(f"[client] {exc}")
    except PeerUnreachable as exc:
        print(paint(f"[client] timeout: {exc}", ANSI_RED))
    except (FileCreateFailed, DeleteFailed) as exc:
        print(f"[client] server refused: {exc}")
    except TransferError as exc:
        print(paint(f"[client] protocol error: {exc}", ANSI_RED))
    except ValueError as exc:
        print(f"[client] invalid request: {exc}")
    return 1


# Runs the CLI entrypoint for non-interactive client mode
def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    set_wire_trace(args.trace, "CLIENT")
    if args.op != "genkey":
        try:
            build_codec(args.cipher, args.key, args.iv)
        except ValueError as exc:
            parser.error(str(exc))
    raise SystemExit(run(args))


if __name__ == "__main__":
    main()
