import hashlib
import ssl
import unittest

from cryptography.hazmat.primitives import serialization

from fakes import make_certificate
from shared import (verify_fingerprint, certificate_fingerprint, format_fingerprint, HandshakeError, NoCertificate,
                    FingerprintMismatch)


class FakeTLSSocket:
    def __init__(self, der_cert: bytes | None, handshake_error: Exception | None = None) -> None:
        self.der_cert = der_cert
        self.handshake_error = handshake_error
        self.handshakes = 0

    def do_handshake(self) -> None:
        self.handshakes += 1
        if self.handshake_error is not None:
            raise self.handshake_error

    def getpeercert(self, binary_form: bool = False) -> bytes | None:
        assert binary_form
        return self.der_cert


class FingerprintTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        _, _, cert = make_certificate()
        cls.der = cert.public_bytes(serialization.Encoding.DER)
        cls.fingerprint = hashlib.sha256(cls.der).hexdigest()
        _, _, other = make_certificate("other.example")
        cls.other_fingerprint = hashlib.sha256(other.public_bytes(serialization.Encoding.DER)).hexdigest()

    def test_fingerprint_is_sha256_of_the_der_certificate(self):
        self.assertEqual(certificate_fingerprint(self.der), self.fingerprint)
        self.assertEqual(self.fingerprint, self.fingerprint.lower())

    def test_unpinned_connection_is_accepted_and_reports_fingerprint(self):
        sock = FakeTLSSocket(self.der)
        result = verify_fingerprint(sock, "")
        self.assertEqual(result.fingerprint, self.fingerprint)
        self.assertFalse(result.pinned)
        self.assertEqual(sock.handshakes, 1)

    def test_unpinned_never_fails_on_any_certificate(self):
        for expected in ("", "   "):
            self.assertFalse(verify_fingerprint(FakeTLSSocket(self.der), expected).pinned)

    def test_pinned_match(self):
        result = verify_fingerprint(FakeTLSSocket(self.der), self.fingerprint)
        self.assertTrue(result.pinned)

    def test_pin_comparison_ignores_case_and_colons(self):
        self.assertTrue(verify_fingerprint(FakeTLSSocket(self.der), self.fingerprint.upper()).pinned)
        self.assertTrue(verify_fingerprint(FakeTLSSocket(self.der), format_fingerprint(self.fingerprint)).pinned)

    def test_pinned_mismatch(self):
        with self.assertRaises(FingerprintMismatch) as context:
            verify_fingerprint(FakeTLSSocket(self.der), self.other_fingerprint)
        self.assertEqual(context.exception.actual, self.fingerprint)
        self.assertEqual(context.exception.expected, self.other_fingerprint)

    def test_single_changed_digit_is_a_mismatch(self):
        last = "0" if self.fingerprint[-1] != "0" else "1"
        with self.assertRaises(FingerprintMismatch):
            verify_fingerprint(FakeTLSSocket(self.der), self.fingerprint[:-1] + last)

    def test_handshake_failure(self):
        with self.assertRaises(HandshakeError):
            verify_fingerprint(FakeTLSSocket(self.der, ssl.SSLError("boom")), "")
        with self.assertRaises(HandshakeError):
            verify_fingerprint(FakeTLSSocket(self.der, TimeoutError("timed out")), "")

    def test_no_certificate(self):
        with self.assertRaises(NoCertificate):
            verify_fingerprint(FakeTLSSocket(None), "")

    def test_unreadable_certificate(self):
        with self.assertRaises(HandshakeError):
            verify_fingerprint(FakeTLSSocket(b"not a certificate"), "")


if __name__ == "__main__":
    unittest.main()
