"""
Payload codec for the file transfer packets.

Every cipher here is length-preserving so an encrypted chunk still fits the
fixed 512-byte data field. The checksum is a plain additive sum: it detects
transmission corruption, it is not a security boundary.
"""

import os
from typing import Optional

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes


XOR_KEY = 0xAA
AES_KEY_SIZES = (16, 24, 32)
AES_IV_SIZE = 16


# Sums every byte into an unsigned 32-bit value
def checksum(data: bytes) -> int:
    return sum(data) & 0xFFFFFFFF


def verify_checksum(data: bytes, expected: int) -> bool:
    return checksum(data) == expected


class NullCodec:
    name = "none"

    def encrypt(self, data: bytes) -> bytes:
        return bytes(data)

    def decrypt(self, data: bytes) -> bytes:
        return bytes(data)


class XorCodec:
    """Fixed single-byte XOR. Weak, but its own inverse."""

    name = "xor"

    def __init__(self, key: int = XOR_KEY):
        if not 0 <= key <= 0xFF:
            raise ValueError(f"XOR key must fit in one byte: {key}")
        self.key = key
        self._table = bytes(b ^ key for b in range(256))

    def encrypt(self, data: bytes) -> bytes:
        return bytes(data).translate(self._table)

    def decrypt(self, data: bytes) -> bytes:
        return self.encrypt(data)


class AesCtrCodec:
    """AES stream cipher keyed by a shared secret and IV.

    Each payload starts from the beginning of the keystream, since the wire
    layout carries no per-packet nonce.
    """

    name = "aes"

    def __init__(self, key: bytes, iv: bytes):
        if len(key) not in AES_KEY_SIZES:
            raise ValueError(f"AES key must be 16, 24 or 32 bytes, got {len(key)}")
        if len(iv) != AES_IV_SIZE:
            raise ValueError(f"AES IV must be {AES_IV_SIZE} bytes, got {len(iv)}")
        self.key = key
        self.iv = iv

    @classmethod
    def generate(cls, key_size: int = 32) -> "AesCtrCodec":
        return cls(os.urandom(key_size), os.urandom(AES_IV_SIZE))

    def _cipher(self) -> Cipher:
        return Cipher(algorithms.AES(self.key), modes.CTR(self.iv))

    def encrypt(self, data: bytes) -> bytes:
        enc = self._cipher().encryptor()
        return enc.update(data) + enc.finalize()

    def decrypt(self, data: bytes) -> bytes:
        dec = self._cipher().decryptor()
        return dec.update(data) + dec.finalize()


# Builds a codec from CLI-style options; key and IV are hex strings
def build_codec(name: str, key_hex: Optional[str] = None, iv_hex: Optional[str] = None):
    name = (name or "").strip().lower()
    if name == "none":
        return NullCodec()
    if name == "xor":
        return XorCodec(int(key_hex, 16) if key_hex else XOR_KEY)
    if name == "aes":
        if not key_hex or not iv_hex:
            raise ValueError("AES cipher requires both a key and an IV (hex)")
        try:
            key = bytes.fromhex(key_hex)
            iv = bytes.fromhex(iv_hex)
        except ValueError as exc:
            raise ValueError("AES key and IV must be hex strings") from exc
        return AesCtrCodec(key, iv)
    raise ValueError(f"Unknown cipher: {name!r}")
