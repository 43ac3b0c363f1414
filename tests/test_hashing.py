"""
Fingerprint Test Suite

Determinism, sensitivity, display forms and scheme versioning.
"""

import hashlib
import unittest

from custodychain import (
    CURRENT_SCHEME_VERSION,
    EncodingError,
    FingerprintScheme,
    canonicalize,
    display_fingerprint,
    fingerprint,
    fingerprint_of_bytes,
    fingerprints_match,
    get_scheme,
    parse_fingerprint,
    register_scheme,
)
from custodychain.hashing import available_schemes, is_valid_fingerprint


def _prefixed_encoder(record):
    return b"v2:" + canonicalize(record)


class TestFingerprint(unittest.TestCase):

    def setUp(self):
        self.record = {
            "batchId": "b-1",
            "quantity": {"weight": 25.5, "unit": "kg"},
            "documentIds": ["d-1", "d-2"],
        }

    def test_format(self):
        """Stored form is 64 lowercase hex characters, no prefix."""
        h = fingerprint(self.record)
        self.assertEqual(len(h), 64)
        self.assertTrue(is_valid_fingerprint(h))
        self.assertEqual(h, hashlib.sha256(canonicalize(self.record)).hexdigest())

    def test_determinism(self):
        self.assertEqual(fingerprint(self.record), fingerprint(self.record))

    def test_key_permutation_invariant(self):
        permuted = {
            "documentIds": ["d-1", "d-2"],
            "quantity": {"unit": "kg", "weight": 25.5},
            "batchId": "b-1",
        }
        self.assertEqual(fingerprint(self.record), fingerprint(permuted))

    def test_single_field_sensitivity(self):
        base = fingerprint(self.record)
        variants = [
            dict(self.record, batchId="b-2"),
            dict(self.record, quantity={"weight": 25.6, "unit": "kg"}),
            dict(self.record, quantity={"weight": 25.5, "unit": "t"}),
            dict(self.record, documentIds=["d-2", "d-1"]),
            dict(self.record, extra=None),
        ]
        digests = {fingerprint(v) for v in variants}
        self.assertEqual(len(digests), len(variants))
        self.assertNotIn(base, digests)

    def test_encoding_errors_propagate(self):
        with self.assertRaises(EncodingError):
            fingerprint({"weight": float("nan")})

    def test_fingerprint_of_bytes_bypasses_canonicalization(self):
        raw = b"%PDF-1.7 assay report"
        self.assertEqual(fingerprint_of_bytes(raw), hashlib.sha256(raw).hexdigest())
        self.assertEqual(fingerprint_of_bytes("abc"), hashlib.sha256(b"abc").hexdigest())
        self.assertNotEqual(fingerprint_of_bytes("abc"), fingerprint("abc"))


class TestDisplayForm(unittest.TestCase):

    def test_display_prefix(self):
        h = fingerprint({"a": 1})
        self.assertEqual(display_fingerprint(h), "sha256:" + h)

    def test_parse_accepts_display_and_hex_prefixes(self):
        h = fingerprint({"a": 1})
        self.assertEqual(parse_fingerprint("sha256:" + h), h)
        self.assertEqual(parse_fingerprint("0x" + h.upper()), h)
        self.assertEqual(parse_fingerprint(h), h)

    def test_parse_rejects_malformed(self):
        for bad in ["", "sha256:abc", "z" * 64, "a" * 63]:
            with self.assertRaises(ValueError):
                parse_fingerprint(bad)

    def test_match(self):
        h = fingerprint({"a": 1})
        self.assertTrue(fingerprints_match(h, h))
        self.assertFalse(fingerprints_match(h, fingerprint({"a": 2})))
        self.assertFalse(fingerprints_match(h, None))


class TestSchemeVersioning(unittest.TestCase):

    def setUp(self):
        self.scheme = FingerprintScheme(version="test-v2", encoder=_prefixed_encoder)
        register_scheme(self.scheme)

    def test_current_scheme_registered(self):
        self.assertIn(CURRENT_SCHEME_VERSION, available_schemes())
        self.assertEqual(get_scheme().version, CURRENT_SCHEME_VERSION)

    def test_versions_produce_different_digests(self):
        record = {"a": 1}
        self.assertNotEqual(fingerprint(record, "test-v2"), fingerprint(record, CURRENT_SCHEME_VERSION))
        self.assertEqual(fingerprint(record, "test-v2"), hashlib.sha256(b'v2:{"a":1}').hexdigest())

    def test_reregistering_identical_scheme_is_allowed(self):
        register_scheme(FingerprintScheme(version="test-v2", encoder=_prefixed_encoder))

    def test_redefinition_rejected(self):
        with self.assertRaises(ValueError):
            register_scheme(FingerprintScheme(version=CURRENT_SCHEME_VERSION, encoder=_prefixed_encoder))

    def test_non_256_bit_digest_rejected(self):
        with self.assertRaises(ValueError):
            register_scheme(FingerprintScheme(version="weak", encoder=canonicalize, algorithm="md5"))

    def test_unknown_version(self):
        with self.assertRaises(EncodingError):
            fingerprint({"a": 1}, "no-such-version")


if __name__ == "__main__":
    unittest.main()
