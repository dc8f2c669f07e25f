"""
Reliable Data Transfer (RDT) engine for the UDP file transfer protocol.

This module provides:
- Channels: a client-side socket channel and a server-side session channel
  fed by the dispatch loop
- Stop-and-wait reliability: send, wait with timeout, re-send the identical
  packet, give up after a fixed number of attempts
- An explicit result type so callers decide what happens after exhaustion
- Optional wire tracing of every packet sent or received

NOTES:
- Any accepted inbound packet counts as the acknowledgment; there are no
  sequence numbers in the wire layout, so a re-sent chunk whose ACK was lost
  is indistinguishable from a new chunk.
- Checksum verification of data chunks is the caller's job (Packet.open).
"""

import enum
import logging
import queue
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .console import (
    ANSI_BLUE,
    ANSI_CYAN,
    ANSI_MAGENTA,
    ANSI_RED,
    ANSI_WHITE,
    format_peer,
    paint,
)
from .protocol import MAX_PAYLOAD, Operation, Packet, PacketError, operation_name


TIMEOUT_SECONDS = 1.0
MAX_RETRIES = 3
CHUNK_SIZE = MAX_PAYLOAD
RECV_BUFFER = 4096
WIRE_TRACE_ENABLED = False
WIRE_TRACE_ROLE = "APP"

Address = Tuple[str, int]
Accept = Callable[[Packet], bool]

logger = logging.getLogger(__name__)


class Outcome(enum.Enum):
    ACKNOWLEDGED = "acknowledged"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class SendResult:
    outcome: Outcome
    attempts: int
    reply: Optional[Packet] = None

    @property
    def acknowledged(self) -> bool:
        return self.outcome is Outcome.ACKNOWLEDGED


# Enables or disables the per-packet wire trace
def set_wire_trace(enabled: bool, role: str = "APP") -> None:
    global WIRE_TRACE_ENABLED, WIRE_TRACE_ROLE
    WIRE_TRACE_ENABLED = enabled
    WIRE_TRACE_ROLE = role.upper()


# Maps operations to display colors for wire tracing
def _op_style(operation) -> str:
    return {
        Operation.READ: ANSI_BLUE,
        Operation.WRITE: ANSI_MAGENTA,
        Operation.DELETE: ANSI_MAGENTA,
        Operation.ACK: ANSI_CYAN,
        Operation.ERROR: ANSI_RED,
    }.get(operation, ANSI_WHITE)


# Builds a compact trace string for a packet
def _format_packet(packet: Packet) -> str:
    name = operation_name(packet.operation)
    return (
        f"[Op={paint(name, _op_style(packet.operation))}, "
        f"File={packet.filename or '-'}, DataSize={packet.data_size}, Checksum={packet.checksum}]"
    )


def _trace(direction: str, addr: Address, packet: Packet) -> None:
    if WIRE_TRACE_ENABLED:
        arrow = "to" if direction == "SEND" else "from"
        print(f"[{WIRE_TRACE_ROLE}][{direction}] {arrow}={format_peer(addr)}, {_format_packet(packet)}")


# Returns a predicate accepting only the given operations
def replies(*operations: Operation) -> Accept:
    wanted = tuple(operations)
    return lambda packet: packet.operation in wanted


# Client-side channel: talks to exactly one peer over its own socket
class SocketChannel:
    def __init__(self, sock: socket.socket, peer: Address):
        self.sock = sock
        self.peer = peer

    def send(self, packet: Packet) -> None:
        _trace("SEND", self.peer, packet)
        self.sock.sendto(packet.encode(), self.peer)

    # Waits for one decodable packet from the peer; None on timeout
    def receive(self, timeout: float) -> Optional[Packet]:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            self.sock.settimeout(remaining)
            try:
                data, addr = self.sock.recvfrom(RECV_BUFFER)
            except socket.timeout:
                return None
            except (ConnectionResetError, ConnectionRefusedError):
                # ICMP port-unreachable from a previous send; the peer may come back.
                continue
            if addr != self.peer:
                logger.debug("ignored datagram from unexpected peer %s", format_peer(addr))
                continue
            try:
                packet = Packet.decode(data)
            except PacketError as exc:
                logger.warning("dropped malformed datagram from %s: %s", format_peer(addr), exc)
                continue
            _trace("RECV", addr, packet)
            return packet

    # Nothing else is expected from the peer, so unaccepted packets are dropped
    def hold(self, packet: Packet) -> None:
        logger.debug("ignored %s while waiting for a reply", operation_name(packet.operation))


# Server-side channel: shares the listening socket, inbound packets arrive
# through the dispatch loop
class SessionChannel:
    def __init__(self, sock: socket.socket, peer: Address, send_lock: threading.Lock, request: Optional[Packet] = None):
        self.sock = sock
        self.peer = peer
        self.send_lock = send_lock
        self.request = request
        self.inbox: "queue.Queue[Packet]" = queue.Queue()
        self.held: List[Packet] = []

    def send(self, packet: Packet) -> None:
        _trace("SEND", self.peer, packet)
        with self.send_lock:
            self.sock.sendto(packet.encode(), self.peer)

    def deliver(self, packet: Packet) -> None:
        self.inbox.put(packet)

    def receive(self, timeout: float) -> Optional[Packet]:
        try:
            return self.inbox.get(timeout=max(0.0, timeout))
        except queue.Empty:
            return None

    # Keeps a new request that arrived mid-transfer; retransmissions of the
    # opening request and stray replies are dropped
    def hold(self, packet: Packet) -> None:
        if not packet.is_request or packet == self.request:
            logger.debug("ignored %s while waiting for a reply", operation_name(packet.operation))
            return
        self.held.append(packet)

    # Removes and returns held packets plus anything still queued
    def drain(self) -> List[Packet]:
        leftover, self.held = self.held, []
        while True:
            try:
                leftover.append(self.inbox.get_nowait())
            except queue.Empty:
                return leftover


# Waits until an accepted packet arrives or the timeout elapses
def wait_for_packet(channel, timeout: float, accept: Optional[Accept] = None) -> Optional[Packet]:
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        packet = channel.receive(remaining)
        if packet is None:
            return None
        if accept is None or accept(packet):
            return packet
        channel.hold(packet)


# Sends a packet with stop-and-wait retransmission until a reply or the retry limit
def send_with_retry(
    channel,
    packet: Packet,
    timeout: float = TIMEOUT_SECONDS,
    retries: int = MAX_RETRIES,
    accept: Optional[Accept] = None,
) -> SendResult:
    if retries < 1:
        raise ValueError(f"retries must be at least 1, got {retries}")
    name = operation_name(packet.operation)
    for attempt in range(1, retries + 1):
        if attempt > 1:
            logger.info("retransmit %s to %s attempt=%d/%d", name, format_peer(channel.peer), attempt, retries)
        channel.send(packet)
        reply = wait_for_packet(channel, timeout, accept)
        if reply is not None:
            return SendResult(Outcome.ACKNOWLEDGED, attempt, reply)
        logger.debug("timeout waiting for reply to %s attempt=%d/%d", name, attempt, retries)
    return SendResult(Outcome.EXHAUSTED, retries)


# How long the streaming side waits for the next chunk before giving up
def idle_timeout(timeout: float = TIMEOUT_SECONDS, retries: int = MAX_RETRIES) -> float:
    return timeout * (retries + 1)

