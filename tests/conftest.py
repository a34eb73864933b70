from __future__ import annotations

import datetime
from pathlib import Path
from typing import Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID


def make_cert(
    key,
    common_name: str,
    issuer_key=None,
    issuer_cert: Optional[x509.Certificate] = None,
    expired: bool = False,
) -> x509.Certificate:
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    issuer = issuer_cert.subject if issuer_cert is not None else subject
    now = datetime.datetime.now(datetime.timezone.utc)
    if expired:
        not_before, not_after = now - datetime.timedelta(days=60), now - datetime.timedelta(days=30)
    else:
        not_before, not_after = now - datetime.timedelta(days=1), now + datetime.timedelta(days=365)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    return builder.sign(issuer_key if issuer_key is not None else key, hashes.SHA256())


def der(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.DER)


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def ec_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def rsa_cert(rsa_key) -> x509.Certificate:
    return make_cert(rsa_key, "Bob")


@pytest.fixture(scope="session")
def ec_cert(ec_key) -> x509.Certificate:
    return make_cert(ec_key, "Alice")


@pytest.fixture
def bob_cer(tmp_path: Path, rsa_cert) -> Path:
    p = tmp_path / "bob.cer"
    p.write_bytes(der(rsa_cert))
    return p


@pytest.fixture
def alice_cer(tmp_path: Path, ec_cert) -> Path:
    p = tmp_path / "alice.cer"
    p.write_bytes(der(ec_cert))
    return p


@pytest.fixture
def input_files(tmp_path: Path) -> list[Path]:
    f1 = tmp_path / "file1.txt"
    f2 = tmp_path / "file2.txt"
    f1.write_bytes(b"first secret payload\n")
    f2.write_bytes(b"second secret payload\n" * 100)
    return [f1, f2]
