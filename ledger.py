"""
ledger.py - Mailing sessions: which ciphertext chunks a message produced,
where their key bytes came from, and how many of them were delivered.

On-disk format (one file per session, compact JSON, fixed field order):
  {"email-index":1,"pool-name":"alice","pool-position":70,"boundaries":[[12,250,...],...]}

  email-index    number of chunks already delivered
  pool-name      name of the key pool the key bytes were drawn from
  pool-position  pool cursor *before* the draw
  boundaries     ciphertext chunks, each a list of byte values

Field names and order are a compatibility contract with tools reading
sessions written by older runs.  Saves are atomic: a .tmp file is written,
fsynced and renamed into place.
"""

import os
import re
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence, Union

from keypool import KeyPool
from otp_utils import (
    BOUNDARY_LENGTH,
    LengthMismatch,
    combine,
    decode_boundaries,
    frame_message,
)

STATE_CREATED     = "created"
STATE_IN_PROGRESS = "in-progress"
STATE_COMPLETE    = "complete"

_NAME_RE = re.compile(r'^[A-Za-z0-9_-][A-Za-z0-9_.-]{0,63}$')

log = logging.getLogger("umail.ledger")


class SessionError(Exception):
    pass


class SessionExists(SessionError):
    pass


class SessionNotFound(SessionError):
    pass


class CorruptSession(SessionError):
    pass


class AlreadyComplete(SessionError):
    pass


def validate_name(name: str) -> bool:
    """Letters, digits, '_', '-' and '.', 1-64 characters, no leading dot."""
    return bool(_NAME_RE.match(name)) and ".." not in name


# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class Session:
    name:          str
    pool_name:     str
    pool_position: int
    boundaries:    List[bytes] = field(default_factory=list)
    email_index:   int = 0

    # ── Progress ──────────────────────────────────────────────────────────────

    @property
    def total(self) -> int:
        return len(self.boundaries)

    @property
    def chunk_length(self) -> int:
        return len(self.boundaries[0]) if self.boundaries else 0

    @property
    def state(self) -> str:
        if self.email_index == 0:
            return STATE_CREATED
        if self.email_index < self.total:
            return STATE_IN_PROGRESS
        return STATE_COMPLETE

    @property
    def is_complete(self) -> bool:
        return self.email_index >= self.total

    def remaining(self) -> int:
        return self.total - self.email_index

    def current_boundary(self) -> bytes:
        """The next chunk to deliver."""
        if self.is_complete:
            raise AlreadyComplete(f"The session \"{self.name}\" has already been processed")
        return self.boundaries[self.email_index]

    def advance(self) -> None:
        """Record one successful delivery."""
        if self.is_complete:
            raise AlreadyComplete(
                f"The session \"{self.name}\" has already been processed "
                f"({self.email_index} of {self.total} chunks sent)")
        self.email_index += 1

    def reset_progress(self) -> None:
        """Start delivering again from the first chunk.  Key material is not redrawn."""
        self.email_index = 0

    # ── Serialization ─────────────────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "email-index":   self.email_index,
            "pool-name":     self.pool_name,
            "pool-position": self.pool_position,
            "boundaries":    [list(b) for b in self.boundaries],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "Session":
        if not isinstance(data, dict):
            raise CorruptSession(f"Session \"{name}\": record is not an object")
        try:
            email_index   = data["email-index"]
            pool_name     = data["pool-name"]
            pool_position = data["pool-position"]
            raw           = data["boundaries"]
        except KeyError as e:
            raise CorruptSession(f"Session \"{name}\": missing field {e}")

        if not _is_int(email_index) or not _is_int(pool_position) or pool_position < 0:
            raise CorruptSession(f"Session \"{name}\": invalid email index or pool position")
        if not isinstance(pool_name, str):
            raise CorruptSession(f"Session \"{name}\": invalid pool name")
        if not isinstance(raw, list) or not raw:
            raise CorruptSession(f"Session \"{name}\": no boundaries")

        boundaries = []
        for i, chunk in enumerate(raw):
            if (not isinstance(chunk, list) or not chunk
                    or not all(_is_int(v) and 0 <= v <= 255 for v in chunk)):
                raise CorruptSession(f"Session \"{name}\": boundary {i} is not a list of bytes")
            boundaries.append(bytes(chunk))
        if len({len(b) for b in boundaries}) != 1:
            raise CorruptSession(f"Session \"{name}\": boundaries have different lengths")
        if not 0 <= email_index <= len(boundaries):
            raise CorruptSession(
                f"Session \"{name}\": email index {email_index} outside 0..{len(boundaries)}")

        return cls(name, pool_name, pool_position, boundaries, email_index)

    @classmethod
    def from_json(cls, name: str, text: str) -> "Session":
        try:
            data = json.loads(text)
        except ValueError as e:
            raise CorruptSession(f"Session \"{name}\": invalid JSON ({e})")
        return cls.from_dict(name, data)


def _is_int(v) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def start(
    name: str,
    pool_name: str,
    pool_offset: int,
    plaintext_chunks: Sequence[bytes],
    key_chunks: Sequence[bytes],
) -> Session:
    """
    Encrypt each plaintext chunk with its key chunk and return a new session
    with nothing sent.  `pool_offset` is the pool cursor before the draw.
    """
    if len(plaintext_chunks) != len(key_chunks):
        raise LengthMismatch(
            f"{len(plaintext_chunks)} plaintext chunks but {len(key_chunks)} key chunks")
    boundaries = [combine(m, k) for m, k in zip(plaintext_chunks, key_chunks)]
    return Session(name, pool_name, pool_offset, boundaries)


def decode_session(session: Session, pool: KeyPool) -> bytes:
    """
    Recover a session's plaintext by re-reading the key bytes it was
    encrypted with.  The pool cursor is not moved.
    """
    key = pool.read_at(session.pool_position, session.total * session.chunk_length)
    n = session.chunk_length
    key_chunks = [key[i * n : (i + 1) * n] for i in range(session.total)]
    return decode_boundaries(session.boundaries, key_chunks)


# ─────────────────────────────────────────────────────────────────────────────

class SessionStore:
    """Sessions stored as one JSON file each under `sessions_dir`."""

    def __init__(self, sessions_dir: Union[str, os.PathLike]) -> None:
        self.sessions_dir = Path(sessions_dir)
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

    def path(self, name: str) -> Path:
        if not validate_name(name):
            raise ValueError(f"Invalid session name: {name!r}")
        return self.sessions_dir / name

    def exists(self, name: str) -> bool:
        return self.path(name).exists()

    def names(self) -> List[str]:
        return sorted(f.name for f in self.sessions_dir.iterdir()
                      if f.is_file() and not f.name.startswith('.')
                      and f.suffix != '.tmp')

    def save(self, session: Session) -> None:
        target = self.path(session.name)
        tmp    = target.with_name(target.name + '.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            f.write(session.to_json())
            f.flush()
            os.fsync(f.fileno())
        os.replace(str(tmp), str(target))
        log.debug("Saved session %s (%d/%d sent)", session.name, session.email_index, session.total)

    def load(self, name: str) -> Session:
        fp = self.path(name)
        try:
            text = fp.read_text(encoding='utf-8')
        except FileNotFoundError:
            raise SessionNotFound(f"Session \"{name}\" not found ({fp})")
        except UnicodeDecodeError:
            raise CorruptSession(f"Session \"{name}\": not a text file")
        return Session.from_json(name, text)

    def create(
        self,
        name: str,
        pool: KeyPool,
        payload: bytes,
        chunk_length: int = BOUNDARY_LENGTH,
        overwrite: bool = False,
    ) -> Session:
        """
        Frame `payload`, draw the matching key bytes from `pool`, encrypt and
        save the new session.

        Everything that can be checked is checked before key bytes are drawn.
        Once drawn they stay consumed, even if the save fails.
        """
        if self.exists(name) and not overwrite:
            raise SessionExists(f"Session \"{name}\" already exists")

        chunks     = frame_message(payload, chunk_length)
        offset     = pool.position
        key_chunks = pool.take_chunks(len(chunks), chunk_length)
        session    = start(name, pool.name, offset, chunks, key_chunks)

        try:
            self.save(session)
        except OSError:
            log.error("Key bytes %d..%d of pool %s were consumed but session %s was not saved",
                      offset, offset + len(chunks) * chunk_length, pool.name, name)
            raise

        log.info("Created session %s: %d boundaries from pool %s at position %d",
                 name, session.total, pool.name, offset)
        return session
