#!/usr/bin/env python3
"""
Unit tests for client secret and certificate credentials.

A throwaway RSA key and self-signed certificate are generated once and stored
as PEM and PFX files in a temporary directory.
"""

import os
import sys
import json
import base64
import shutil
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs12

# Add parent directory to path to import group_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from group_sync.config import ConfigurationError, SideSettings
from group_sync.gateways.credentials import (
    CLIENT_ASSERTION_TYPE,
    CertificateCredential,
    SecretCredential,
    build_credential,
    is_pem_file,
    load_certificate,
)


def b64url_decode(value):
    return base64.urlsafe_b64decode(value + '=' * (-len(value) % 4))


class TestCredentials(unittest.TestCase):
    """Test cases for credential construction."""

    @classmethod
    def setUpClass(cls):
        cls.temp_dir = tempfile.mkdtemp(prefix='group_sync_certs_')
        cls.key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, 'group-sync-test')])
        now = datetime.now(timezone.utc)
        cls.certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(cls.key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=30))
            .sign(cls.key, hashes.SHA256())
        )

        cls.pem_path = os.path.join(cls.temp_dir, 'app.pem')
        with open(cls.pem_path, 'wb') as f:
            f.write(cls.key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption()
            ))
            f.write(cls.certificate.public_bytes(serialization.Encoding.PEM))

        cls.pfx_path = os.path.join(cls.temp_dir, 'app.pfx')
        with open(cls.pfx_path, 'wb') as f:
            f.write(pkcs12.serialize_key_and_certificates(
                b'group-sync', cls.key, cls.certificate, None,
                serialization.BestAvailableEncryption(b'pfx-password')
            ))

    @classmethod
    def tearDownClass(cls):
        shutil.rmtree(cls.temp_dir, ignore_errors=True)

    def test_is_pem_file(self):
        self.assertTrue(is_pem_file(self.pem_path))
        self.assertFalse(is_pem_file(self.pfx_path))
        self.assertFalse(is_pem_file(os.path.join(self.temp_dir, 'absent.pem')))
        self.assertFalse(is_pem_file(None))
        self.assertFalse(is_pem_file('  '))

    def test_load_pem_and_pfx(self):
        for path, password in ((self.pem_path, None), (self.pfx_path, 'pfx-password')):
            key, certificate = load_certificate(path, password)
            self.assertEqual(certificate, self.certificate)
            self.assertEqual(key.public_key().public_numbers(), self.key.public_key().public_numbers())

    def test_wrong_pfx_password(self):
        with self.assertRaises(ConfigurationError):
            load_certificate(self.pfx_path, 'wrong')

    def test_pem_without_key(self):
        path = os.path.join(self.temp_dir, 'cert-only.pem')
        with open(path, 'wb') as f:
            f.write(self.certificate.public_bytes(serialization.Encoding.PEM))
        with self.assertRaises(ConfigurationError):
            load_certificate(path)

    def test_missing_file(self):
        with self.assertRaises(ConfigurationError):
            load_certificate(os.path.join(self.temp_dir, 'absent.pfx'))

    def test_client_assertion_is_signed_jwt(self):
        credential = CertificateCredential('tenant-1', 'client-1', self.pfx_path, 'pfx-password')

        assertion = credential.client_assertion(now=1700000000)
        header_part, payload_part, signature_part = assertion.split('.')
        header = json.loads(b64url_decode(header_part))
        payload = json.loads(b64url_decode(payload_part))

        self.assertEqual(header['alg'], 'RS256')
        self.assertEqual(header['x5t'], credential.thumbprint)
        self.assertEqual(payload['aud'], 'https://login.microsoftonline.com/tenant-1/oauth2/v2.0/token')
        self.assertEqual(payload['iss'], 'client-1')
        self.assertEqual(payload['sub'], 'client-1')
        self.assertEqual(payload['exp'] - payload['nbf'], 600)

        # Raises InvalidSignature if the assertion was not signed by the certificate key
        self.certificate.public_key().verify(
            b64url_decode(signature_part),
            f"{header_part}.{payload_part}".encode('ascii'),
            padding.PKCS1v15(),
            hashes.SHA256()
        )

    def test_thumbprint_is_sha1_of_certificate(self):
        credential = CertificateCredential('tenant-1', 'client-1', self.pem_path)
        expected = self.certificate.fingerprint(hashes.SHA1())
        self.assertEqual(b64url_decode(credential.thumbprint), expected)

    def test_certificate_token_request_body(self):
        body = CertificateCredential('tenant-1', 'client-1', self.pem_path).token_request_body()

        self.assertEqual(body['grant_type'], 'client_credentials')
        self.assertEqual(body['client_assertion_type'], CLIENT_ASSERTION_TYPE)
        self.assertNotIn('client_secret', body)
        self.assertEqual(body['scope'], 'https://graph.microsoft.com/.default')

    def test_secret_token_request_body(self):
        body = SecretCredential('tenant-1', 'client-1', 's3cret').token_request_body()

        self.assertEqual(body['client_secret'], 's3cret')
        self.assertEqual(body['client_id'], 'client-1')

    def test_build_credential_prefers_certificate(self):
        side = SideSettings('destination', tenant_id='t', client_id='c', client_secret='s',
                            certificate=self.pfx_path, certificate_password='pfx-password')
        self.assertIsInstance(build_credential(side), CertificateCredential)

        side = SideSettings('destination', tenant_id='t', client_id='c', client_secret='very-secret')
        credential = build_credential(side)
        self.assertIsInstance(credential, SecretCredential)
        self.assertNotIn('very-secret', repr(credential))

        with self.assertRaises(ConfigurationError):
            build_credential(SideSettings('destination', tenant_id='t', client_id='c'))


if __name__ == '__main__':
    unittest.main()
