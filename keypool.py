"""
keypool.py - File-backed one-time-pad key pools for umail.

A pool is a file holding a persisted read cursor followed by raw key bytes.
Key bytes are consumed strictly in order and each byte is handed out at most
once.

On-disk format:
  [8 B little-endian unsigned cursor] [N B key material]

The cursor counts the key bytes already consumed from the start of the key
region.  It is rewritten in place (and fsynced) on every successful draw; the
key region itself is never modified after creation.

Crash safety:
  take() reads the requested bytes, then persists the advanced cursor, and only
  then updates the in-memory cursor and returns the bytes.  If persisting the
  cursor fails, the in-memory cursor is re-read from the header so both agree
  before the error propagates.  Callers must not assume the bytes of a failed
  draw are still unused.

Concurrency:
  There is no locking.  Two processes drawing from the same pool at the same
  time can both read the same cursor and reuse key bytes.  Access to a pool
  must be serialised externally (one operator, one process).
"""

import os
import struct
import logging
from typing import BinaryIO, List, Union

from cryptography.hazmat.primitives import hashes

from otp_utils import format_fingerprint

HEADER        = struct.Struct("<Q")   # consumed-bytes cursor
HEADER_SIZE   = HEADER.size           # 8
COPY_BUFFER   = 64 * 1024

log = logging.getLogger("umail.keypool")


# ─────────────────────────────────────────────────────────────────────────────

class PoolError(Exception):
    pass


class PoolExists(PoolError):
    pass


class PoolNotFound(PoolError):
    pass


class CorruptPool(PoolError):
    pass


class KeyExhausted(PoolError):
    """Not enough key bytes remain.  Nothing was consumed."""

    def __init__(self, path: str, requested: int, available: int) -> None:
        super().__init__(
            f"Not enough bytes left in key pool \"{path}\": "
            f"requested {requested}, {available} available")
        self.path      = path
        self.requested = requested
        self.available = available


def _copy_source(source: Union[str, os.PathLike, BinaryIO], out: BinaryIO) -> int:
    if not hasattr(source, "read"):
        with open(source, "rb") as f:
            return _copy_source(f, out)
    copied = 0
    while True:
        buf = source.read(COPY_BUFFER)
        if not buf:
            return copied
        out.write(buf)
        copied += len(buf)


class KeyPool:
    """
    One open key pool: exactly one file handle and one in-memory mirror of
    the persisted cursor.

    Usage:
        pool = KeyPool.create("keys/alice", "random-data.bin")   # once
        # - or -
        with KeyPool.open("keys/alice") as pool:
            chunks = pool.take_chunks(4, 35)
    """

    def __init__(self, path: str, fd: BinaryIO) -> None:
        self.path = path
        self._fd  = fd
        self._size     = os.fstat(fd.fileno()).st_size - HEADER_SIZE
        self._position = 0

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    @classmethod
    def create(
        cls,
        path: Union[str, os.PathLike],
        source: Union[str, os.PathLike, BinaryIO],
        overwrite: bool = False,
    ) -> "KeyPool":
        """
        Create a new pool from `source` (a file path or a readable binary
        stream) and return it opened.  The cursor starts at 0.

        Raises PoolExists if `path` exists and `overwrite` is false.  A pool
        file left incomplete by a failure is removed.
        """
        path = os.fspath(path)
        try:
            out = open(path, "wb" if overwrite else "xb")
        except FileExistsError:
            raise PoolExists(f"Key pool \"{path}\" already exists")

        try:
            with out:
                out.write(HEADER.pack(0))
                copied = _copy_source(source, out)
                if copied == 0:
                    raise ValueError("Key source is empty")
                out.flush()
                os.fsync(out.fileno())
        except BaseException:
            if os.path.exists(path):
                os.unlink(path)
            raise

        log.info("Created key pool %s (%d key bytes)", path, copied)
        return cls.open(path)

    @classmethod
    def open(cls, path: Union[str, os.PathLike]) -> "KeyPool":
        """Open an existing pool and load its persisted cursor."""
        path = os.fspath(path)
        try:
            fd = open(path, "r+b", buffering=0)
        except FileNotFoundError:
            raise PoolNotFound(f"Key pool \"{path}\" not found")

        pool = cls(path, fd)
        try:
            pool._position = pool.current_offset()
        except BaseException:
            fd.close()
            raise
        log.debug("Opened key pool %s at position %d/%d", path, pool._position, pool._size)
        return pool

    def close(self) -> None:
        if self._fd is not None:
            self._fd.close()
            self._fd = None

    def __enter__(self) -> "KeyPool":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── Inspection ────────────────────────────────────────────────────────────

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    @property
    def size(self) -> int:
        """Total number of key bytes (consumed or not)."""
        return self._size

    @property
    def position(self) -> int:
        """In-memory mirror of the persisted cursor."""
        return self._position

    @property
    def remaining(self) -> int:
        return self._size - self._position

    def current_offset(self) -> int:
        """Read the persisted cursor from the header.  Consumes nothing."""
        self._fd.seek(0)
        header = self._fd.read(HEADER_SIZE)
        if len(header) != HEADER_SIZE:
            raise CorruptPool(f"Invalid key pool \"{self.path}\": no position found")
        (position,) = HEADER.unpack(header)
        if position > self._size:
            raise CorruptPool(
                f"Invalid key pool \"{self.path}\": position {position} is beyond "
                f"the {self._size} key bytes")
        return position

    def read_at(self, offset: int, count: int) -> bytes:
        """
        Read `count` key bytes starting at `offset` without touching the
        cursor.  Used to audit which key bytes a session relied on.
        """
        if count <= 0:
            raise ValueError(f"Invalid number of bytes ({count})")
        if offset < 0 or offset + count > self._size:
            raise ValueError(
                f"Range {offset}..{offset + count} is outside key pool \"{self.path}\" "
                f"({self._size} key bytes)")
        return self._read_region(offset, count)

    def fingerprint(self) -> str:
        """SHA-256 fingerprint of the whole key region, for out-of-band checks."""
        h = hashes.Hash(hashes.SHA256())
        self._fd.seek(HEADER_SIZE)
        while True:
            buf = self._fd.read(COPY_BUFFER)
            if not buf:
                break
            h.update(buf)
        return format_fingerprint(h.finalize())

    # ── Consumption ───────────────────────────────────────────────────────────

    def take(self, count: int) -> bytes:
        """
        Consume and return the next `count` key bytes.

        Raises KeyExhausted (cursor unchanged) if fewer than `count` bytes
        remain.  The advanced cursor is durably persisted before the bytes
        are returned.
        """
        if count <= 0:
            raise ValueError(f"Invalid number of bytes ({count})")
        if count > self.remaining:
            raise KeyExhausted(self.path, count, self.remaining)

        data         = self._read_region(self._position, count)
        new_position = self._position + count
        try:
            self._write_position(new_position)
        except OSError:
            self._resync_position(new_position)
            raise
        self._position = new_position

        log.debug("Took %d bytes from %s (position now %d/%d)",
                  count, self.path, new_position, self._size)
        return data

    def take_chunks(self, chunk_count: int, chunk_length: int) -> List[bytes]:
        """Consume chunk_count * chunk_length bytes and split them in order."""
        if chunk_count <= 0 or chunk_length <= 0:
            raise ValueError(
                f"Invalid chunk request ({chunk_count} chunks of {chunk_length} bytes)")
        data = self.take(chunk_count * chunk_length)
        return [data[i * chunk_length : (i + 1) * chunk_length] for i in range(chunk_count)]

    def set_offset(self, position: int) -> None:
        """
        Operator override: rewrite the persisted cursor.

        Moving the cursor backwards makes already-used key bytes available
        again, which breaks the one-time-pad guarantee for any message they
        encrypted.
        """
        if position < 0 or position > self._size:
            raise ValueError(
                f"Invalid position {position} for key pool \"{self.path}\" "
                f"(0..{self._size})")
        if position < self._position:
            log.warning("Rewinding key pool %s from %d to %d: key bytes %d..%d will be reused",
                        self.path, self._position, position, position, self._position)
        self._write_position(position)
        self._position = position
        log.info("Key pool %s position set to %d", self.path, position)

    # ── Internal ──────────────────────────────────────────────────────────────

    def _read_region(self, offset: int, count: int) -> bytes:
        self._fd.seek(HEADER_SIZE + offset)
        data = self._fd.read(count)
        if len(data) != count:
            raise CorruptPool(
                f"Cannot read {count} bytes from key pool \"{self.path}\" at position "
                f"{offset}: file is truncated")
        return data

    def _resync_position(self, attempted: int) -> None:
        # After a failed cursor write the header may or may not hold `attempted`.
        # Mirror whatever landed; if it cannot be read, assume the bytes are spent.
        try:
            persisted = self.current_offset()
        except (OSError, PoolError):
            persisted = attempted
        self._position = max(self._position, min(persisted, attempted))
        log.error("Failed to persist cursor %d for key pool %s; position is now %d",
                  attempted, self.path, self._position)

    def _write_position(self, position: int) -> None:
        self._fd.seek(0)
        self._fd.write(HEADER.pack(position))
        self._fd.flush()
        os.fsync(self._fd.fileno())
