#!/usr/bin/env python3

"""Tests for key pools: ordered, at-most-once consumption of key bytes."""

import io
import os
import struct
import tempfile
import unittest
from unittest import mock

from keypool import (
    HEADER_SIZE,
    CorruptPool,
    KeyExhausted,
    KeyPool,
    PoolExists,
    PoolNotFound,
)
from otp_utils import key_fingerprint


def _fsync_failing_once():
    real_fsync = os.fsync
    failed = []

    def fsync(fd):
        if not failed:
            failed.append(fd)
            raise OSError(5, "Input/output error")
        return real_fsync(fd)
    return fsync


class PoolTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = self._tmp.name
        self.path = os.path.join(self.dir, "pool")

    def tearDown(self):
        self._tmp.cleanup()

    def make_pool(self, data):
        pool = KeyPool.create(self.path, io.BytesIO(data))
        self.addCleanup(pool.close)
        return pool


class TestCreateOpen(PoolTestCase):

    def test_file_layout(self):
        data = bytes(range(16))
        self.make_pool(data).close()
        with open(self.path, "rb") as f:
            raw = f.read()
        self.assertEqual(raw[:HEADER_SIZE], b"\x00" * 8)
        self.assertEqual(raw[HEADER_SIZE:], data)

    def test_create_from_path(self):
        src = os.path.join(self.dir, "random-data.bin")
        with open(src, "wb") as f:
            f.write(b"\x01" * 100)
        with KeyPool.create(self.path, src) as pool:
            self.assertEqual(pool.size, 100)
            self.assertEqual(pool.current_offset(), 0)
            self.assertEqual(pool.name, "pool")

    def test_create_refuses_existing(self):
        self.make_pool(b"abc").close()
        with self.assertRaises(PoolExists):
            KeyPool.create(self.path, io.BytesIO(b"xyz"))
        with KeyPool.create(self.path, io.BytesIO(b"xyz"), overwrite=True) as pool:
            self.assertEqual(pool.take(3), b"xyz")

    def test_create_missing_source_leaves_nothing(self):
        with self.assertRaises(FileNotFoundError):
            KeyPool.create(self.path, os.path.join(self.dir, "missing"))
        self.assertFalse(os.path.exists(self.path))

    def test_create_empty_source(self):
        with self.assertRaises(ValueError):
            KeyPool.create(self.path, io.BytesIO(b""))
        self.assertFalse(os.path.exists(self.path))

    def test_open_missing(self):
        with self.assertRaises(PoolNotFound):
            KeyPool.open(self.path)

    def test_open_short_header(self):
        with open(self.path, "wb") as f:
            f.write(b"\x00\x00\x00")
        with self.assertRaises(CorruptPool):
            KeyPool.open(self.path)

    def test_open_position_beyond_data(self):
        with open(self.path, "wb") as f:
            f.write(struct.pack("<Q", 11) + bytes(10))
        with self.assertRaises(CorruptPool):
            KeyPool.open(self.path)


class TestTake(PoolTestCase):

    def test_256_byte_pool_in_pairs(self):
        pool = self.make_pool(bytes(range(256)))
        for i in range(128):
            self.assertEqual(pool.take(2), bytes([2 * i, 2 * i + 1]))
        with self.assertRaises(KeyExhausted):
            pool.take(2)
        self.assertEqual(pool.current_offset(), 256)

    def test_draws_are_contiguous_and_disjoint(self):
        data = os.urandom(100)
        pool = self.make_pool(data)
        drawn = [pool.take(n) for n in (1, 7, 13, 30)]
        self.assertEqual(b"".join(drawn), data[:51])
        self.assertEqual(pool.current_offset(), 51)

    def test_reopen_continues_at_persisted_cursor(self):
        data = bytes(range(20))
        pool = self.make_pool(data)
        self.assertEqual(pool.take(5), data[:5])
        pool.close()

        with KeyPool.open(self.path) as pool:
            self.assertEqual(pool.position, 5)
            self.assertEqual(pool.take(5), data[5:10])
        with open(self.path, "rb") as f:
            self.assertEqual(struct.unpack("<Q", f.read(8))[0], 10)

    def test_exhaustion_is_exact_and_commits_nothing(self):
        pool = self.make_pool(bytes(10))
        pool.take(3)
        with self.assertRaises(KeyExhausted) as cm:
            pool.take(8)
        self.assertEqual(cm.exception.requested, 8)
        self.assertEqual(cm.exception.available, 7)
        self.assertEqual(pool.current_offset(), 3)
        self.assertEqual(len(pool.take(7)), 7)
        self.assertEqual(pool.remaining, 0)

    def test_non_positive_count(self):
        pool = self.make_pool(bytes(10))
        for n in (0, -1):
            with self.assertRaises(ValueError):
                pool.take(n)
        self.assertEqual(pool.current_offset(), 0)

    def test_truncated_file(self):
        pool = self.make_pool(bytes(10))
        with open(self.path, "r+b") as f:
            f.truncate(HEADER_SIZE + 4)
        with self.assertRaises(CorruptPool):
            pool.take(6)
        self.assertEqual(pool.current_offset(), 0)

    def test_failed_cursor_sync_keeps_mirror_in_line(self):
        data = os.urandom(256)
        pool = self.make_pool(data)
        with mock.patch("keypool.os.fsync", side_effect=_fsync_failing_once()):
            with self.assertRaises(OSError):
                pool.take(35)
        self.assertEqual(pool.position, pool.current_offset())
        self.assertEqual(pool.position, 35)
        self.assertEqual(pool.take(5), data[35:40])
        self.assertEqual(pool.current_offset(), 40)

    def test_take_chunks(self):
        data = bytes(range(12))
        pool = self.make_pool(data)
        self.assertEqual(pool.take_chunks(3, 4), [data[0:4], data[4:8], data[8:12]])

    def test_take_chunks_all_or_nothing(self):
        pool = self.make_pool(bytes(10))
        with self.assertRaises(KeyExhausted):
            pool.take_chunks(3, 4)
        self.assertEqual(pool.current_offset(), 0)


class TestOperatorAccess(PoolTestCase):

    def test_set_offset_rewinds(self):
        data = bytes(range(10))
        pool = self.make_pool(data)
        pool.take(4)
        pool.set_offset(0)
        self.assertEqual(pool.current_offset(), 0)
        self.assertEqual(pool.take(4), data[:4])

    def test_set_offset_forward_skips(self):
        data = bytes(range(10))
        pool = self.make_pool(data)
        pool.set_offset(8)
        self.assertEqual(pool.take(2), data[8:])

    def test_set_offset_range(self):
        pool = self.make_pool(bytes(10))
        for bad in (-1, 11):
            with self.assertRaises(ValueError):
                pool.set_offset(bad)
        pool.set_offset(10)
        self.assertEqual(pool.remaining, 0)

    def test_read_at_consumes_nothing(self):
        data = bytes(range(10))
        pool = self.make_pool(data)
        self.assertEqual(pool.read_at(2, 3), data[2:5])
        self.assertEqual(pool.current_offset(), 0)
        with self.assertRaises(ValueError):
            pool.read_at(8, 3)

    def test_fingerprint_covers_key_region(self):
        data = os.urandom(200 * 1024)
        pool = self.make_pool(data)
        before = pool.fingerprint()
        pool.take(10)
        self.assertEqual(pool.fingerprint(), before)
        self.assertEqual(before, key_fingerprint(data))


if __name__ == '__main__':
    unittest.main()
