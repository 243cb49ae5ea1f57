"""
otp_utils.py - One-time-pad primitives for umail.

Design:
  - Message frame   : [2 B little-endian payload length | payload | zero padding]
  - Chunk length    : 35 bytes by default (one boundary = 70 hex characters)
  - OTP combination : XOR of two equal-length byte strings (self-inverse)
  - Boundary        : ciphertext chunk rendered as lowercase hex, carried as the
                      MIME multipart boundary of an ordinary-looking email
  - Fingerprint     : SHA-256 over the key region, for out-of-band comparison
"""

import os
import struct
from typing import BinaryIO, List, Sequence, Union

from cryptography.hazmat.primitives import hashes

# ── Frame constants ───────────────────────────────────────────────────────────
BOUNDARY_LENGTH   = 35                   # bytes per chunk; do not change between peers
LENGTH_PREFIX     = struct.Struct("<H")  # little-endian uint16
MAX_PAYLOAD_SIZE  = 0xFFFF               # 65535, bounded by the length prefix

FINGERPRINT_CHARS = 16                   # hex chars shown, grouped by 4


class PayloadTooLarge(ValueError):
    pass


class CorruptFrame(ValueError):
    pass


class LengthMismatch(ValueError):
    """Two byte strings that must be combined have different lengths."""


# ─────────────────────────────────────────────────────────────────────────────
# Cipher
# ─────────────────────────────────────────────────────────────────────────────

def combine(a: bytes, b: bytes) -> bytes:
    """
    XOR `a` with `b`, byte for byte.

    Used identically for encryption (plaintext chunk, key chunk) and for
    decryption (ciphertext chunk, key chunk).
    """
    if len(a) != len(b):
        raise LengthMismatch(
            f"Cannot combine {len(a)} bytes with {len(b)} bytes: lengths differ")
    return bytes(x ^ y for x, y in zip(a, b))


def boundary_to_hex(chunk: bytes) -> str:
    return chunk.hex()


def boundary_from_hex(text: str) -> bytes:
    """Decode a hex boundary. Raises ValueError if `text` is not hexadecimal."""
    try:
        return bytes.fromhex(text.strip())
    except ValueError:
        raise ValueError(f"Invalid boundary (not a hexadecimal string): {text!r}")


# ─────────────────────────────────────────────────────────────────────────────
# Message framing
# ─────────────────────────────────────────────────────────────────────────────

def frame_message(payload: bytes, chunk_length: int = BOUNDARY_LENGTH) -> List[bytes]:
    """
    Frame `payload` into fixed-size chunks ready for ciphering.

    Layout:
      1. Prepend the payload length as a 2-byte little-endian integer.
      2. Split into chunks of `chunk_length` bytes.
      3. Zero-pad the last chunk only.

    The chunk count is ceil((2 + len(payload)) / chunk_length).

    Raises PayloadTooLarge if the payload does not fit the length prefix.
    """
    if chunk_length <= 0:
        raise ValueError(f"Invalid chunk length: {chunk_length}")
    if len(payload) > MAX_PAYLOAD_SIZE:
        raise PayloadTooLarge(
            f"Message too long: {len(payload)} bytes "
            f"(maximum is {MAX_PAYLOAD_SIZE} bytes)")

    framed    = LENGTH_PREFIX.pack(len(payload)) + payload
    remainder = len(framed) % chunk_length
    if remainder:
        framed += bytes(chunk_length - remainder)

    return [framed[i : i + chunk_length] for i in range(0, len(framed), chunk_length)]


def unframe_message(chunks: Sequence[bytes]) -> bytes:
    """Reassemble chunks produced by frame_message() and return the payload."""
    framed = b"".join(chunks)
    if len(framed) < LENGTH_PREFIX.size:
        raise CorruptFrame(f"Frame too short: {len(framed)} bytes")

    (length,) = LENGTH_PREFIX.unpack_from(framed)
    end = LENGTH_PREFIX.size + length
    if end > len(framed):
        raise CorruptFrame(
            f"Declared length {length} exceeds the {len(framed) - LENGTH_PREFIX.size} "
            "bytes available")
    return framed[LENGTH_PREFIX.size : end]


def load_message(source: Union[str, os.PathLike, BinaryIO]) -> bytes:
    """Read a payload from a file path or an already-open binary stream."""
    if hasattr(source, "read"):
        return source.read()
    with open(source, "rb") as f:
        return f.read()


def decode_boundaries(cipher_chunks: Sequence[bytes], key_chunks: Sequence[bytes]) -> bytes:
    """Combine each ciphertext chunk with its key chunk and unframe the result."""
    if len(cipher_chunks) != len(key_chunks):
        raise LengthMismatch(
            f"{len(cipher_chunks)} ciphertext chunks but {len(key_chunks)} key chunks")
    return unframe_message([combine(c, k) for c, k in zip(cipher_chunks, key_chunks)])


# ─────────────────────────────────────────────────────────────────────────────
# Key material
# ─────────────────────────────────────────────────────────────────────────────

def generate_key_material(size: int) -> bytes:
    """Return `size` bytes from os.urandom (CSPRNG), suitable as a pool source."""
    if size <= 0:
        raise ValueError(f"Invalid key size: {size}")
    return os.urandom(size)


def format_fingerprint(digest: bytes) -> str:
    """Format: XXXX:XXXX:XXXX:XXXX (first 16 hex chars of the digest)."""
    h = digest.hex()[:FINGERPRINT_CHARS]
    return ":".join(h[i : i + 4] for i in range(0, FINGERPRINT_CHARS, 4))


def key_fingerprint(data: bytes) -> str:
    """Short, human-readable SHA-256 fingerprint of key material."""
    h = hashes.Hash(hashes.SHA256())
    h.update(data)
    return format_fingerprint(h.finalize())
