from __future__ import annotations

import os
import struct
import sys

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding
from cryptography.hazmat.primitives.keywrap import aes_key_unwrap

import cdoc_tool
from cdoc_tool import ContainerVersion, ContainerWriter, LockMethod, RcptInfo, RecipientKind, ToolConf
from conftest import der, make_cert


def cert_rcpt(cert, label: str = "", name: str = "bob.cer") -> RcptInfo:
    return RcptInfo(kind=RecipientKind.CERTIFICATE, label=label, cert=der(cert), key_file_name=name)


def request(tmp_path, input_files, **kwargs) -> ToolConf:
    conf = ToolConf(input_files=[str(p) for p in input_files], out=str(tmp_path / "out" / "out.cdoc"))
    for k, v in kwargs.items():
        setattr(conf, k, v)
    return conf


def test_rsa_lock_unwraps_with_private_key(rsa_key, rsa_cert):
    fmk = bytes(range(32))
    lock = cdoc_tool.lock_for_certificate("bob", rsa_cert, fmk)
    assert lock.method == LockMethod.RSA_OAEP
    assert lock.cert == der(rsa_cert)
    unwrapped = rsa_key.decrypt(
        lock.wrapped_key,
        padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None),
    )
    assert unwrapped == fmk


def test_ec_lock_unwraps_with_private_key(ec_key, ec_cert):
    fmk = bytes(range(32))
    lock = cdoc_tool.lock_for_certificate("alice", ec_cert, fmk)
    assert lock.method == LockMethod.ECDH_ES

    ephemeral = ec.EllipticCurvePublicKey.from_encoded_point(ec_key.curve, lock.ephemeral_key)
    shared = ec_key.exchange(ec.ECDH(), ephemeral)
    kek = cdoc_tool.hkdf_derive(shared, salt=lock.ephemeral_key, length=32, info=cdoc_tool.KEK_INFO)
    assert aes_key_unwrap(kek, lock.wrapped_key) == fmk


def test_secret_lock_unwraps():
    fmk = bytes(range(32))
    secret = b"\x42" * 32
    lock = cdoc_tool.lock_for_secret("k", secret, fmk)
    kek = cdoc_tool.hkdf_derive(secret, salt=lock.salt, length=32, info=cdoc_tool.KEK_INFO)
    assert aes_key_unwrap(kek, lock.wrapped_key) == fmk


def test_generated_label_uses_common_name_and_file(rsa_cert):
    assert cdoc_tool.generate_label(cert_rcpt(rsa_cert), rsa_cert) == "Bob (bob.cer)"
    rcpt = RcptInfo(kind=RecipientKind.PASSWORD, password="x")
    assert cdoc_tool.generate_label(rcpt) == "Password"


def test_writes_container(tmp_path, rsa_cert, ec_cert, input_files):
    conf = request(tmp_path, input_files)
    rcpts = [cert_rcpt(rsa_cert), cert_rcpt(ec_cert, label="alice", name="alice.cer")]

    assert ContainerWriter(chunk_size=4096).encrypt(conf, rcpts) == cdoc_tool.ExitCode.OK

    out = tmp_path / "out" / "out.cdoc"
    data = out.read_bytes()
    magic, version, salt_len = struct.unpack_from("<4sBH", data)
    assert magic == cdoc_tool.MAGIC
    assert version == ContainerVersion.V1
    assert salt_len == cdoc_tool.SALT_LEN
    (lock_count,) = struct.unpack_from("<H", data, 7 + salt_len)
    assert lock_count == 2

    assert b"Bob (bob.cer)" in data
    assert b"alice" in data
    assert b"file1.txt" in data and b"file2.txt" in data
    assert data.index(b"file1.txt") < data.index(b"file2.txt")
    assert b"secret payload" not in data
    assert data[-1] == cdoc_tool.RecordType.EOF
    assert [p.name for p in out.parent.iterdir()] == ["out.cdoc"]


def test_no_label_generation_keeps_empty_label(tmp_path, rsa_cert, input_files):
    conf = request(tmp_path, input_files, gen_label=False)
    ContainerWriter().encrypt(conf, [cert_rcpt(rsa_cert)])
    assert b"Bob (bob.cer)" not in (tmp_path / "out" / "out.cdoc").read_bytes()


def test_v2_with_key_and_password(tmp_path, input_files):
    conf = request(tmp_path, input_files, version=ContainerVersion.V2)
    rcpts = [
        RcptInfo(kind=RecipientKind.SYMMETRIC_KEY, label="k", secret=b"\x01" * 32),
        RcptInfo(kind=RecipientKind.PASSWORD, password="hunter2"),
    ]
    assert ContainerWriter().encrypt(conf, rcpts) == 0
    data = (tmp_path / "out" / "out.cdoc").read_bytes()
    assert data[4] == ContainerVersion.V2
    assert b"Password" in data


def test_empty_input_file(tmp_path, rsa_cert):
    empty = tmp_path / "empty.txt"
    empty.write_bytes(b"")
    assert ContainerWriter().encrypt(request(tmp_path, [empty]), [cert_rcpt(rsa_cert)]) == 0


def test_refuses_existing_output(tmp_path, rsa_cert, input_files):
    conf = request(tmp_path, input_files)
    ContainerWriter().encrypt(conf, [cert_rcpt(rsa_cert)])
    with pytest.raises(cdoc_tool.EncryptorError, match="already exists"):
        ContainerWriter().encrypt(conf, [cert_rcpt(rsa_cert)])
    ContainerWriter(overwrite=True).encrypt(conf, [cert_rcpt(rsa_cert)])


def test_missing_input_file(tmp_path, rsa_cert):
    conf = request(tmp_path, [tmp_path / "missing.txt"])
    with pytest.raises(cdoc_tool.EncryptorError, match="not found"):
        ContainerWriter().encrypt(conf, [cert_rcpt(rsa_cert)])
    assert not (tmp_path / "out" / "out.cdoc").exists()


def test_duplicate_file_names(tmp_path, rsa_cert):
    (tmp_path / "a").mkdir()
    (tmp_path / "b").mkdir()
    first = tmp_path / "a" / "same.txt"
    second = tmp_path / "b" / "same.txt"
    first.write_bytes(b"1")
    second.write_bytes(b"2")
    with pytest.raises(cdoc_tool.EncryptorError, match="Duplicate"):
        ContainerWriter().encrypt(request(tmp_path, [first, second]), [cert_rcpt(rsa_cert)])


def test_invalid_certificate(tmp_path, input_files):
    rcpt = RcptInfo(kind=RecipientKind.CERTIFICATE, cert=b"garbage", key_file_name="bad.cer")
    with pytest.raises(cdoc_tool.CertificateError, match="bad.cer"):
        ContainerWriter().encrypt(request(tmp_path, input_files), [rcpt])


def test_accepted_issuer(tmp_path, rsa_key, ec_key, input_files):
    ca_cert = make_cert(rsa_key, "Test CA")
    leaf = make_cert(ec_key, "Carol", issuer_key=rsa_key, issuer_cert=ca_cert)

    conf = request(tmp_path, input_files, accept_certs=[der(ca_cert)])
    assert ContainerWriter().encrypt(conf, [cert_rcpt(leaf, name="carol.cer")]) == 0


def test_unaccepted_issuer(tmp_path, rsa_cert, ec_cert, input_files):
    conf = request(tmp_path, input_files, accept_certs=[der(ec_cert)])
    with pytest.raises(cdoc_tool.CertificateError, match="not issued by an accepted certificate"):
        ContainerWriter().encrypt(conf, [cert_rcpt(rsa_cert)])


def test_expired_certificate_warns(tmp_path, rsa_key, input_files, caplog):
    expired = make_cert(rsa_key, "Old", expired=True)
    assert ContainerWriter().encrypt(request(tmp_path, input_files), [cert_rcpt(expired, name="old.cer")]) == 0
    assert "old.cer has expired" in caplog.text


def test_pkcs11_recipient_not_supported(tmp_path, input_files):
    conf = request(tmp_path, input_files, version=ContainerVersion.V2, library="/opt/p11.so")
    rcpt = RcptInfo(kind=RecipientKind.P11_SECRET, label="card", slot=1)
    with pytest.raises(cdoc_tool.EncryptorError, match="not supported"):
        ContainerWriter().encrypt(conf, [rcpt])


def test_chunk_size_bounds():
    with pytest.raises(cdoc_tool.EncryptorError):
        ContainerWriter(chunk_size=10)


needs_byte_file_names = pytest.mark.skipif(
    sys.platform in ("win32", "darwin"), reason="file system must accept non-UTF-8 names"
)


@needs_byte_file_names
def test_undecodable_input_file_name(tmp_path, rsa_cert):
    raw_name = os.path.join(os.fsencode(tmp_path), b"caf\xe9.txt")
    with open(raw_name, "wb") as f:
        f.write(b"data")

    conf = request(tmp_path, [os.fsdecode(raw_name)])
    with pytest.raises(cdoc_tool.EncryptorError, match="Input file name is not valid UTF-8"):
        ContainerWriter().encrypt(conf, [cert_rcpt(rsa_cert)])
    assert not (tmp_path / "out" / "out.cdoc").exists()


def test_generated_label_with_undecodable_certificate_name(tmp_path, rsa_cert, input_files):
    rcpt = cert_rcpt(rsa_cert, name=os.fsdecode(b"b\xffb.cer"))
    assert cdoc_tool.generate_label(rcpt, rsa_cert) == "Bob (b\ufffdb.cer)"
    assert ContainerWriter().encrypt(request(tmp_path, input_files), [rcpt]) == 0


def test_temp_file_removed_after_write_failure(tmp_path, rsa_cert, input_files, monkeypatch):
    def fail(f):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(cdoc_tool, "write_record_eof", fail)
    conf = request(tmp_path, input_files)
    with pytest.raises(cdoc_tool.EncryptorError, match="I/O error"):
        ContainerWriter().encrypt(conf, [cert_rcpt(rsa_cert)])

    out_dir = tmp_path / "out"
    assert not (out_dir / "out.cdoc").exists()
    assert [p.name for p in out_dir.iterdir() if ".contmp" in p.name] == []
