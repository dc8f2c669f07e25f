import enum
import struct
from dataclasses import dataclass
from typing import Union

from .codec import checksum as compute_checksum, verify_checksum
from .errors import IntegrityMismatch


FILENAME_SIZE = 256
MAX_PAYLOAD = 512
DEFAULT_PORT = 12345
# operation, filename, data, checksum, data_size
PACKET_FMT = f"!i{FILENAME_SIZE}s{MAX_PAYLOAD}sII"
PACKET_STRUCT = struct.Struct(PACKET_FMT)
PACKET_SIZE = PACKET_STRUCT.size


# Defines operation codes carried in the first field of every packet
class Operation(enum.IntEnum):
    READ = 1
    WRITE = 2
    DELETE = 3
    ACK = 4
    ERROR = 5


REQUESTS = (Operation.READ, Operation.WRITE, Operation.DELETE)


class PacketError(ValueError):
    pass


# Returns the operation name, or the raw code when it is not a known operation
def operation_name(code: int) -> str:
    try:
        return Operation(code).name
    except ValueError:
        return f"UNKNOWN({code})"


# Defines the fixed-layout packet with encode/decode helpers
@dataclass(frozen=True)
class Packet:
    operation: Union[Operation, int]
    filename: str = ""
    payload: bytes = b""
    checksum: int = 0

    def __post_init__(self) -> None:
        if len(self.payload) > MAX_PAYLOAD:
            raise PacketError(f"Payload too large: {len(self.payload)} > {MAX_PAYLOAD}")
        if len(self.filename.encode("utf-8")) >= FILENAME_SIZE:
            raise PacketError(f"Filename too long: {self.filename[:32]}...")

    @property
    def data_size(self) -> int:
        return len(self.payload)

    # Serializes into the 780-byte wire record; struct pads filename/data with NULs
    def encode(self) -> bytes:
        return PACKET_STRUCT.pack(
            int(self.operation),
            self.filename.encode("utf-8"),
            self.payload,
            self.checksum,
            self.data_size,
        )

    # Parses one datagram; unknown operation codes are kept as plain ints
    @staticmethod
    def decode(datagram: bytes) -> "Packet":
        if len(datagram) != PACKET_SIZE:
            raise PacketError(f"Datagram size {len(datagram)} != {PACKET_SIZE}")
        code, raw_name, data, cksum, data_size = PACKET_STRUCT.unpack(datagram)
        if data_size > MAX_PAYLOAD:
            raise PacketError(f"Declared data size too large: {data_size}")
        try:
            filename = raw_name.split(b"\x00", 1)[0].decode("utf-8")
        except UnicodeDecodeError as exc:
            raise PacketError("Filename is not valid UTF-8") from exc
        try:
            operation: Union[Operation, int] = Operation(code)
        except ValueError:
            operation = code
        return Packet(operation, filename, data[:data_size], cksum)

    # Encrypts plaintext with the codec and checksums the ciphertext
    @classmethod
    def build(cls, operation: Union[Operation, int], plaintext: bytes, codec, filename: str = "") -> "Packet":
        wire = codec.encrypt(plaintext)
        return cls(operation, filename, wire, compute_checksum(wire))

    @classmethod
    def ack(cls, codec, plaintext: bytes = b"") -> "Packet":
        return cls.build(Operation.ACK, plaintext, codec)

    @classmethod
    def error(cls, message: str, codec) -> "Packet":
        return cls.build(Operation.ERROR, message.encode("utf-8"), codec)

    # Verifies the checksum over the wire bytes, then decrypts
    def open(self, codec) -> bytes:
        if not verify_checksum(self.payload, self.checksum):
            raise IntegrityMismatch(
                f"Checksum mismatch: expected={self.checksum} actual={compute_checksum(self.payload)}"
            )
        return codec.decrypt(self.payload)

    # Decodes an ACK/ERROR status payload into text
    def text(self, codec) -> str:
        return self.open(codec).decode("utf-8", errors="replace")

    @property
    def is_request(self) -> bool:
        return self.operation in REQUESTS
