#!/usr/bin/env python3

"""Tests for the OTP primitives: XOR combination, framing and boundaries."""

import io
import os
import re
import tempfile
import unittest

from otp_utils import (
    BOUNDARY_LENGTH,
    CorruptFrame,
    LengthMismatch,
    MAX_PAYLOAD_SIZE,
    PayloadTooLarge,
    boundary_from_hex,
    boundary_to_hex,
    combine,
    decode_boundaries,
    frame_message,
    generate_key_material,
    key_fingerprint,
    load_message,
    unframe_message,
)


class TestCombine(unittest.TestCase):

    def test_involution(self):
        for n in (1, 2, 35, 1000):
            p = os.urandom(n)
            k = os.urandom(n)
            self.assertEqual(combine(combine(p, k), k), p)

    def test_known_values(self):
        self.assertEqual(combine(b"\x00\xff\x0f", b"\xff\xff\xf0"), b"\xff\x00\xff")
        self.assertEqual(combine(b"", b""), b"")

    def test_length_mismatch_is_a_precondition_error(self):
        with self.assertRaises(LengthMismatch):
            combine(b"abc", b"ab")
        self.assertTrue(issubclass(LengthMismatch, ValueError))


class TestFraming(unittest.TestCase):

    def test_two_byte_payload_fits_one_chunk(self):
        self.assertEqual(frame_message(b"AB", 4), [bytes([0x02, 0x00, ord('A'), ord('B')])])

    def test_last_chunk_is_zero_padded(self):
        self.assertEqual(frame_message(b"A", 4), [b"\x01\x00A\x00"])
        self.assertEqual(frame_message(b"ABCDE", 4), [b"\x05\x00AB", b"CDE\x00"])

    def test_round_trip_lengths(self):
        L = BOUNDARY_LENGTH
        for n in (0, L - 1, L, L + 1, MAX_PAYLOAD_SIZE):
            payload = os.urandom(n)
            chunks = frame_message(payload, L)
            self.assertEqual(len(chunks), -(-(2 + n) // L), "length %d" % n)
            self.assertTrue(all(len(c) == L for c in chunks))

            joined = b"".join(chunks)
            self.assertEqual(int.from_bytes(joined[:2], "little"), n)
            self.assertEqual(joined[2:2 + n], payload)
            self.assertEqual(unframe_message(chunks), payload)

    def test_deterministic(self):
        self.assertEqual(frame_message(b"hello world", 5), frame_message(b"hello world", 5))

    def test_payload_too_large(self):
        with self.assertRaises(PayloadTooLarge):
            frame_message(bytes(MAX_PAYLOAD_SIZE + 1))

    def test_invalid_chunk_length(self):
        with self.assertRaises(ValueError):
            frame_message(b"x", 0)

    def test_unframe_rejects_bad_length(self):
        with self.assertRaises(CorruptFrame):
            unframe_message([b"\x10\x00ab"])
        with self.assertRaises(CorruptFrame):
            unframe_message([b"\x01"])

    def test_load_message_from_path_and_stream(self):
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, "message.txt")
            with open(path, "wb") as f:
                f.write(b"secret")
            self.assertEqual(load_message(path), b"secret")
        self.assertEqual(load_message(io.BytesIO(b"stream")), b"stream")


class TestBoundaries(unittest.TestCase):

    def test_hex_is_lowercase_and_reversible(self):
        chunk = bytes([0x00, 0xAB, 0xFF])
        self.assertEqual(boundary_to_hex(chunk), "00abff")
        self.assertEqual(boundary_from_hex("00abff"), chunk)
        self.assertEqual(boundary_from_hex("00ABFF"), chunk)

    def test_invalid_hex(self):
        with self.assertRaises(ValueError):
            boundary_from_hex("not-hex")

    def test_decode_boundaries(self):
        payload = b"meet at noon"
        chunks = frame_message(payload, 8)
        keys = [os.urandom(8) for _ in chunks]
        cipher = [combine(m, k) for m, k in zip(chunks, keys)]
        self.assertEqual(decode_boundaries(cipher, keys), payload)
        with self.assertRaises(LengthMismatch):
            decode_boundaries(cipher, keys[:-1])


class TestKeyMaterial(unittest.TestCase):

    def test_generate(self):
        self.assertEqual(len(generate_key_material(64)), 64)
        with self.assertRaises(ValueError):
            generate_key_material(0)

    def test_fingerprint_format(self):
        fp = key_fingerprint(b"abc")
        self.assertRegex(fp, re.compile(r'^[0-9a-f]{4}(:[0-9a-f]{4}){3}$'))
        # SHA-256("abc") = ba7816bf8f01cfea...
        self.assertEqual(fp, "ba78:16bf:8f01:cfea")


if __name__ == '__main__':
    unittest.main()
