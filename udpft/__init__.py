"""UDP file transfer: read, write and delete files over a connectionless transport.

Fixed 780-byte packets carry an operation code, a filename and up to 512 bytes
of (optionally encrypted) payload with an additive checksum. Every packet is
acknowledged individually; unacknowledged packets are re-sent a bounded number
of times.
"""

__version__ = "0.1.0"
