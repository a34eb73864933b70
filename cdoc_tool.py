#!/usr/bin/env python3
# cdoc_tool.py
#
# Encrypt-only container tool: packages files for one or more recipients.
# Recipients are addressed by X.509 certificate, symmetric key, password or PKCS#11 token slot.
# Container format: authenticated header with per-recipient locks (HMAC-SHA256) + per-chunk AES-256-GCM.
#
# Dependencies: stdlib + cryptography + pydantic

from __future__ import annotations

import base64
import abc
import binascii
import contextlib
import datetime
import functools
import hashlib
import logging
import os
import re
import secrets
import struct
import sys
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, List, Optional, Sequence, TextIO, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from cryptography.hazmat.primitives.keywrap import aes_key_wrap
from cryptography.x509.oid import NameOID
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, ValidationError, field_validator


log = logging.getLogger("cdoc_tool")


# =========================
# Constants / Limits
# =========================

VERSION_STR = "1.0.0"

MAGIC = b"CDOC"

FMK_LEN = 32
KEY_LEN = 32
MASTER_SEED_LEN = 64
SALT_LEN = 16
HMAC_LEN = 32
NONCE_PREFIX_LEN = 8
COUNTER_MAX = 0xFFFFFFFF

DEFAULT_CHUNK_SIZE = 1_048_576
MIN_CHUNK_SIZE = 4096
MAX_CHUNK_SIZE = 16_777_216

MAX_PATH_LEN = 4096

SCRYPT_N = 1 << 15
SCRYPT_R = 8
SCRYPT_P = 1

HKDF_INFO = b"CDOCv1"
KEK_INFO = b"CDOCv1 kek"

# First bytes of a base64-armored DER certificate ("0\x82" SEQUENCE header)
BUNDLE_SIGNATURE = b"MII"
CERT_MARKER = ":cert:"

# label:KIND:VALUE, label must not contain ':'
_EXTENDED_RCPT_RE = re.compile(r"^(?P<label>[^:]*):(?P<kind>key|pw|p11sk|p11pk):(?P<value>.*)$", re.DOTALL)


# =========================
# Enums / Data
# =========================

class ExitCode(IntEnum):
    OK = 0
    ERROR = 1
    USAGE = 2


class ContainerVersion(IntEnum):
    V1 = 1
    V2 = 2


class RecipientKind(IntEnum):
    CERTIFICATE = 1
    SYMMETRIC_KEY = 2
    PASSWORD = 3
    P11_SECRET = 4
    P11_PUBLIC = 5

    def human(self) -> str:
        if self == RecipientKind.CERTIFICATE:
            return "Certificate"
        if self == RecipientKind.SYMMETRIC_KEY:
            return "Symmetric key"
        if self == RecipientKind.PASSWORD:
            return "Password"
        if self == RecipientKind.P11_SECRET:
            return "PKCS#11 secret key"
        return "PKCS#11 public key"

    def requires_library(self) -> bool:
        return self in (RecipientKind.P11_SECRET, RecipientKind.P11_PUBLIC)


class LockMethod(IntEnum):
    RSA_OAEP = 1
    ECDH_ES = 2
    HKDF_KEYWRAP = 3
    SCRYPT_KEYWRAP = 4


class RecordType(IntEnum):
    FILE_BEGIN = 1
    FILE_END = 2
    EOF = 255


@dataclass(frozen=True)
class ScryptParams:
    n: int
    r: int
    p: int


@dataclass(frozen=True)
class ServerData:
    id: str
    url: str


@dataclass(frozen=True)
class RcptInfo:
    """One parsed recipient. Only the fields of its kind are meaningful."""

    kind: RecipientKind
    label: str = ""
    cert: bytes = b""
    key_file_name: str = ""
    secret: bytes = b""
    password: str = ""
    slot: int = -1
    pin: str = ""
    key_id: bytes = b""
    key_label: str = ""

    def __post_init__(self) -> None:
        if self.kind == RecipientKind.CERTIFICATE and not self.cert:
            raise ValueError("Internal: certificate recipient requires certificate bytes.")
        if self.kind == RecipientKind.SYMMETRIC_KEY and not self.secret:
            raise ValueError("Internal: key recipient requires key bytes.")
        if self.kind == RecipientKind.PASSWORD and not self.password:
            raise ValueError("Internal: password recipient requires a password.")
        if self.kind.requires_library() and self.slot < 0:
            raise ValueError("Internal: PKCS#11 recipient requires a slot.")


@dataclass(frozen=True)
class Lock:
    kind: RecipientKind
    method: LockMethod
    label: str
    wrapped_key: bytes
    cert: bytes = b""
    ephemeral_key: bytes = b""
    salt: bytes = b""
    scrypt_params: Optional[ScryptParams] = None

    def encode(self) -> bytes:
        label_b = self.label.encode("utf-8")
        if len(label_b) > 0xFFFF:
            raise EncryptorError(f"Recipient label too long: {self.label[:32]!r}...")

        parts = [
            struct.pack("<BBH", int(self.kind), int(self.method), len(label_b)),
            label_b,
            struct.pack("<I", len(self.cert)),
            self.cert,
            struct.pack("<H", len(self.ephemeral_key)),
            self.ephemeral_key,
            struct.pack("<H", len(self.salt)),
            self.salt,
        ]
        if self.method == LockMethod.SCRYPT_KEYWRAP:
            if self.scrypt_params is None:
                raise EncryptorError("Internal: scrypt params required for password lock.")
            parts.append(struct.pack("<III", self.scrypt_params.n, self.scrypt_params.r, self.scrypt_params.p))
        parts.append(struct.pack("<H", len(self.wrapped_key)))
        parts.append(self.wrapped_key)
        return b"".join(parts)


# =========================
# Errors
# =========================

class CdocToolError(Exception):
    exit_code: ExitCode = ExitCode.ERROR

    def __init__(self, message: str, exit_code: Optional[ExitCode] = None) -> None:
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class UsageError(CdocToolError):
    exit_code = ExitCode.USAGE


class ConfigurationError(CdocToolError):
    pass


class ReadError(CdocToolError):
    pass


class BundleError(ReadError):
    def __init__(self, path: Path, line_no: int) -> None:
        super().__init__(f"Malformed certificate bundle {path} at line {line_no}.")
        self.path = path
        self.line_no = line_no


class CertificateError(CdocToolError):
    pass


class EncryptorError(CdocToolError):
    pass


# =========================
# Helpers
# =========================

def read_all_bytes(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except FileNotFoundError as ex:
        raise ReadError(f"File not found: {path}") from ex
    except OSError as ex:
        raise ReadError(f"Failed to read file: {path} ({ex})") from ex


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def ensure_utf8(value: str, what: str, error: type = EncryptorError) -> str:
    # os.fsdecode() keeps undecodable bytes as lone surrogates
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as ex:
        raise error(f"{what} is not valid UTF-8: {value!r}") from ex
    return value


def _ensure_chunk_size_ok(chunk_size: int) -> None:
    if not (MIN_CHUNK_SIZE <= chunk_size <= MAX_CHUNK_SIZE):
        raise EncryptorError(
            f"Chunk size must be in [{MIN_CHUNK_SIZE} .. {MAX_CHUNK_SIZE}], got {chunk_size}"
        )


def _fsync_fileobj_best_effort(f: BinaryIO) -> None:
    try:
        f.flush()
        os.fsync(f.fileno())
    except OSError:
        pass


def _fsync_dir_best_effort(dir_path: Path) -> None:
    if os.name != "posix":
        return
    try:
        fd = os.open(str(dir_path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _unlink_best_effort(p: Path) -> None:
    try:
        p.unlink()
    except OSError:
        pass


def _secure_create_tmp_file(parent_dir: Path, base_name: str, *, suffix: str) -> Tuple[Path, BinaryIO]:
    parent_dir = parent_dir.resolve()
    if not parent_dir.is_dir():
        raise EncryptorError(f"Internal: temp parent is not a directory: {parent_dir}")

    flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL
    if os.name == "posix":
        flags |= getattr(os, "O_NOFOLLOW", 0)

    for _ in range(128):
        tmp_path = parent_dir / f".{base_name}{suffix}.{secrets.token_hex(8)}"
        try:
            fd = os.open(str(tmp_path), flags, 0o600)
        except FileExistsError:
            continue
        except OSError as ex:
            raise EncryptorError(f"Failed to create temporary file in {parent_dir}: {ex}") from ex
        return tmp_path, os.fdopen(fd, "wb", closefd=True)

    raise EncryptorError(f"Failed to create a unique temporary file in {parent_dir} (too many collisions).")


def _atomic_replace_file(tmp_path: Path, final_path: Path) -> None:
    os.replace(tmp_path, final_path)
    _fsync_dir_best_effort(final_path.parent)


# =========================
# Certificate bundles
# =========================

def load_certs(path: Path) -> List[bytes]:
    """
    Load certificates from a file:
    - content starting with "MII" is a bundle of base64 DER certificates, one per line;
      lines of 3 characters or fewer are skipped
    - anything else is a single raw certificate, returned as-is (possibly empty)
    """
    content = read_all_bytes(path)
    if len(content) <= 3 or not content.startswith(BUNDLE_SIGNATURE):
        return [content]

    certs: List[bytes] = []
    for line_no, raw_line in enumerate(content.split(b"\n"), start=1):
        line = raw_line.strip()
        if len(line) <= 3:
            continue
        try:
            certs.append(base64.b64decode(line, validate=True))
        except binascii.Error as ex:
            raise BundleError(path, line_no) from ex

    log.debug("Loaded %d certificate(s) from bundle %s", len(certs), path)
    return certs


def parse_certificate(data: bytes, source: str = "") -> x509.Certificate:
    try:
        if data.lstrip().startswith(b"-----BEGIN"):
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)
    except ValueError as ex:
        raise CertificateError(f"Invalid certificate {source or '(unnamed)'}: {ex}") from ex


def check_issuer(cert: x509.Certificate, trusted: Sequence[x509.Certificate], source: str) -> None:
    for issuer in trusted:
        if cert == issuer:
            return
        try:
            cert.verify_directly_issued_by(issuer)
        except (ValueError, TypeError, InvalidSignature):
            continue
        return
    raise CertificateError(f"Recipient certificate {source} is not issued by an accepted certificate.")


# =========================
# Request configuration
# =========================

class ServerEntry(BaseModel):
    id: str
    url: str


class ConfFile(BaseModel):
    """JSON configuration file; every key is optional, unknown keys are kept for logging."""

    model_config = ConfigDict(extra="allow")

    library: Optional[str] = None
    servers: List[ServerEntry] = Field(default_factory=list)
    accept: List[str] = Field(default_factory=list)
    version: Optional[StrictInt] = None
    genlabel: Optional[StrictBool] = None
    out: Optional[str] = None
    files: List[str] = Field(default_factory=list)

    @field_validator("version")
    @classmethod
    def check_version(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v not in (1, 2):
            raise ValueError(f"unsupported container version {v}")
        return v


@dataclass
class ToolConf:
    library: str = ""
    servers: List[ServerData] = field(default_factory=list)
    accept_certs: List[bytes] = field(default_factory=list)
    version: ContainerVersion = ContainerVersion.V1
    gen_label: bool = True
    input_files: List[str] = field(default_factory=list)
    out: str = ""

    def load_file(self, path: Path) -> None:
        """
        Merge a JSON configuration file into this request.

        Keys: library, servers ([{"id", "url"}]), accept (bundle paths, relative to the
        configuration file), version (1 or 2), genlabel, out, files.
        """
        raw = read_all_bytes(path)
        try:
            data = ConfFile.model_validate_json(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValidationError) as ex:
            raise ConfigurationError(f"Invalid configuration file: {path} ({ex})") from ex

        if data.library is not None:
            self.library = data.library
        self.servers.extend(ServerData(id=s.id, url=s.url) for s in data.servers)
        for name in data.accept:
            self.accept_certs.extend(load_certs(path.parent / name))
        if data.version is not None:
            self.version = ContainerVersion(data.version)
        if data.genlabel is not None:
            self.gen_label = data.genlabel
        if data.out is not None:
            self.out = data.out
        self.input_files.extend(data.files)

        for key in data.model_extra or {}:
            log.warning("Ignoring unknown configuration key %r in %s", key, path)
        log.debug("Loaded configuration %s", path)


# =========================
# Argument parsing
# =========================

# Every parse step returns the number of arguments consumed; 0 means "not mine".
ParseStep = Callable[[Sequence[str], int], int]


def parse_common(conf: ToolConf, args: Sequence[str], idx: int) -> int:
    arg = args[idx]
    remaining = len(args) - idx - 1
    if arg == "--library" and remaining >= 1:
        conf.library = args[idx + 1]
        return 2
    if arg == "--server" and remaining >= 2:
        conf.servers.append(ServerData(id=args[idx + 1], url=args[idx + 2]))
        return 3
    if arg == "--accept" and remaining >= 1:
        conf.accept_certs.extend(load_certs(Path(args[idx + 1])))
        return 2
    if arg == "--conf" and remaining >= 1:
        conf.load_file(Path(args[idx + 1]))
        return 2
    return 0


def _parse_hex(value: str, what: str) -> bytes:
    try:
        return bytes.fromhex(value)
    except ValueError as ex:
        raise UsageError(f"Invalid hex value for {what}: {value!r}") from ex


def _parse_extended_recipient(label: str, kind: str, value: str) -> RcptInfo:
    ensure_utf8(label, "Recipient label", UsageError)
    if kind == "key":
        secret = _parse_hex(value, "recipient key")
        if not secret:
            raise UsageError(f"Recipient key is empty (label {label!r}).")
        return RcptInfo(kind=RecipientKind.SYMMETRIC_KEY, label=label, secret=secret)

    if kind == "pw":
        if value == "":
            raise UsageError(f"Recipient password is empty (label {label!r}).")
        ensure_utf8(value, "Recipient password", UsageError)
        return RcptInfo(kind=RecipientKind.PASSWORD, label=label, password=value)

    # SLOT:[PIN]:[ID]:[LABEL]
    slot_s, pin, key_id_hex, key_label = (value.split(":", 3) + ["", "", ""])[:4]
    try:
        slot = int(slot_s)
    except ValueError as ex:
        raise UsageError(f"Invalid PKCS#11 slot: {slot_s!r}") from ex
    if slot < 0:
        raise UsageError(f"Invalid PKCS#11 slot: {slot_s!r}")

    return RcptInfo(
        kind=RecipientKind.P11_SECRET if kind == "p11sk" else RecipientKind.P11_PUBLIC,
        label=label,
        slot=slot,
        pin=pin,
        key_id=_parse_hex(key_id_hex, "PKCS#11 key id"),
        key_label=key_label,
    )


def parse_recipient(value: str) -> RcptInfo:
    """
    Parse one --rcpt value.

    [LABEL:cert:]CERT_PATH     certificate read from CERT_PATH (label may be empty)
    LABEL:key:HEX              symmetric key
    LABEL:pw:PASSWORD          password
    LABEL:p11sk:SLOT:[PIN]:[ID]:[LABEL]
    LABEL:p11pk:SLOT:[PIN]:[ID]:[LABEL]

    A bare path that itself matches LABEL:KIND:... is read as that recipient kind;
    use ":cert:PATH" for such files.
    """
    label, marker, path = value.partition(CERT_MARKER)
    if not marker:
        m = _EXTENDED_RCPT_RE.match(value)
        if m:
            return _parse_extended_recipient(m.group("label"), m.group("kind"), m.group("value"))
        label, path = "", value

    if not path:
        raise UsageError("Recipient certificate path is empty.")
    ensure_utf8(label, "Recipient label", UsageError)

    cert_path = Path(path)
    cert = read_all_bytes(cert_path)
    if not cert:
        raise ReadError(f"Certificate file is empty: {cert_path}")

    return RcptInfo(
        kind=RecipientKind.CERTIFICATE,
        label=label,
        cert=cert,
        key_file_name=cert_path.name,
    )


def parse_rcpt(rcpts: List[RcptInfo], args: Sequence[str], idx: int) -> int:
    if args[idx] != "--rcpt" or idx + 1 >= len(args):
        return 0
    rcpts.append(parse_recipient(args[idx + 1]))
    return 2


def parse_encrypt_arg(conf: ToolConf, args: Sequence[str], idx: int) -> int:
    arg = args[idx]
    has_value = idx + 1 < len(args)
    if arg == "--out" and has_value:
        conf.out = args[idx + 1]
        return 2
    if arg == "--in" and has_value:
        conf.input_files.append(args[idx + 1])
        return 2
    if arg == "-v1":
        conf.version = ContainerVersion.V1
        return 1
    if arg == "-v2":
        conf.version = ContainerVersion.V2
        return 1
    if arg == "--genlabel":
        conf.gen_label = True
        return 1
    if arg.startswith("-"):
        raise UsageError(f"Unknown argument: {arg}")
    conf.input_files.append(arg)
    return 1


class RequestBuilder:
    """Walks the encrypt arguments once, left to right, filling a ToolConf and recipient list."""

    def __init__(self, conf: Optional[ToolConf] = None) -> None:
        self.conf = conf if conf is not None else ToolConf()
        self.rcpts: List[RcptInfo] = []
        self.steps: Tuple[ParseStep, ...] = (
            functools.partial(parse_common, self.conf),
            functools.partial(parse_rcpt, self.rcpts),
            functools.partial(parse_encrypt_arg, self.conf),
        )

    def build(self, args: Sequence[str]) -> Tuple[ToolConf, List[RcptInfo]]:
        idx = 0
        while idx < len(args):
            for step in self.steps:
                consumed = step(args, idx)
                if consumed > 0:
                    idx += consumed
                    break
            else:
                raise UsageError(f"Unknown argument: {args[idx]}")
        return self.conf, self.rcpts


# =========================
# Validation
# =========================

def library_required(rcpts: Sequence[RcptInfo]) -> bool:
    return any(r.kind.requires_library() for r in rcpts)


def validate_request(conf: ToolConf, rcpts: Sequence[RcptInfo]) -> None:
    if not rcpts:
        raise UsageError("No recipients.")

    if not conf.gen_label and any(not r.label for r in rcpts):
        if len(rcpts) > 1:
            raise UsageError("Not all recipients have a label.")
        raise UsageError("Label not provided.")

    if not conf.input_files:
        raise ConfigurationError("No files specified.", exit_code=ExitCode.USAGE)
    if not conf.out:
        raise ConfigurationError("No output specified.", exit_code=ExitCode.USAGE)

    if library_required(rcpts) and not conf.library:
        raise ConfigurationError("Cryptographic library is required.", exit_code=ExitCode.USAGE)

    if conf.version == ContainerVersion.V1 and any(r.kind != RecipientKind.CERTIFICATE for r in rcpts):
        raise ConfigurationError("Version 1 containers support certificate-based recipients only.")

    if any(not c for c in conf.accept_certs):
        raise ConfigurationError("Accepted certificate is empty.")


# =========================
# KDF / Keys / MAC
# =========================

def scrypt_derive(password: str, salt: bytes, params: ScryptParams, length: int) -> bytes:
    kdf = Scrypt(salt=salt, length=length, n=params.n, r=params.r, p=params.p)
    return kdf.derive(password.encode("utf-8"))


def hkdf_derive(ikm: bytes, salt: bytes, length: int, info: bytes = HKDF_INFO) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info,
    )
    return hkdf.derive(ikm)


def split_seed(master_seed: bytes) -> Tuple[bytes, bytes]:
    if len(master_seed) != MASTER_SEED_LEN:
        raise ValueError("Internal: master_seed length mismatch.")
    return master_seed[:32], master_seed[32:]


def compute_header_hmac(mac_key: bytes, header_without_hmac: bytes) -> bytes:
    h = hmac.HMAC(mac_key, hashes.SHA256())
    h.update(header_without_hmac)
    return h.finalize()


# =========================
# Recipient locks
# =========================

def lock_for_certificate(label: str, cert: x509.Certificate, fmk: bytes) -> Lock:
    public_key = cert.public_key()
    der = cert.public_bytes(serialization.Encoding.DER)

    if isinstance(public_key, rsa.RSAPublicKey):
        wrapped = public_key.encrypt(
            fmk,
            padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None),
        )
        return Lock(RecipientKind.CERTIFICATE, LockMethod.RSA_OAEP, label, wrapped, cert=der)

    if isinstance(public_key, ec.EllipticCurvePublicKey):
        ephemeral = ec.generate_private_key(public_key.curve)
        shared = ephemeral.exchange(ec.ECDH(), public_key)
        ephemeral_pub = ephemeral.public_key().public_bytes(
            serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
        )
        kek = hkdf_derive(shared, salt=ephemeral_pub, length=KEY_LEN, info=KEK_INFO)
        return Lock(
            RecipientKind.CERTIFICATE,
            LockMethod.ECDH_ES,
            label,
            aes_key_wrap(kek, fmk),
            cert=der,
            ephemeral_key=ephemeral_pub,
        )

    raise CertificateError(f"Unsupported certificate key type: {type(public_key).__name__}")


def lock_for_secret(label: str, secret: bytes, fmk: bytes) -> Lock:
    salt = os.urandom(SALT_LEN)
    kek = hkdf_derive(secret, salt=salt, length=KEY_LEN, info=KEK_INFO)
    return Lock(RecipientKind.SYMMETRIC_KEY, LockMethod.HKDF_KEYWRAP, label, aes_key_wrap(kek, fmk), salt=salt)


def lock_for_password(label: str, password: str, fmk: bytes) -> Lock:
    salt = os.urandom(SALT_LEN)
    params = ScryptParams(SCRYPT_N, SCRYPT_R, SCRYPT_P)
    kek = scrypt_derive(password, salt, params, KEY_LEN)
    return Lock(
        RecipientKind.PASSWORD,
        LockMethod.SCRYPT_KEYWRAP,
        label,
        aes_key_wrap(kek, fmk),
        salt=salt,
        scrypt_params=params,
    )


def generate_label(rcpt: RcptInfo, cert: Optional[x509.Certificate] = None) -> str:
    if cert is None:
        return rcpt.kind.human()
    names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    cn = str(names[0].value) if names else ""
    # the certificate file name may hold undecodable bytes; the label must be UTF-8
    file_name = os.fsencode(rcpt.key_file_name).decode("utf-8", "replace")
    if cn and file_name:
        return f"{cn} ({file_name})"
    return cn or file_name or rcpt.kind.human()


# =========================
# Header encode / AEAD
# =========================

def build_header_without_hmac(
    version: ContainerVersion,
    salt: bytes,
    locks: Sequence[Lock],
    chunk_size: int,
) -> bytes:
    if len(salt) != SALT_LEN:
        raise EncryptorError("Internal: salt must be 16 bytes.")
    if not locks:
        raise EncryptorError("Internal: container needs at least one recipient lock.")
    if len(locks) > 0xFFFF:
        raise EncryptorError("Too many recipients for one container.")
    _ensure_chunk_size_ok(chunk_size)

    parts = [struct.pack("<4sBH", MAGIC, int(version), len(salt)), salt, struct.pack("<H", len(locks))]
    parts.extend(lock.encode() for lock in locks)
    parts.append(struct.pack("<I", chunk_size))
    return b"".join(parts)


def write_header(f: BinaryIO, header_without_hmac: bytes, header_hmac: bytes) -> None:
    if len(header_hmac) != HMAC_LEN:
        raise EncryptorError("Internal: header HMAC must be 32 bytes.")
    f.write(header_without_hmac)
    f.write(struct.pack("<H", len(header_hmac)))
    f.write(header_hmac)


def build_aad_prefix(version: ContainerVersion, header_hash: bytes, name: str, orig_size: int) -> bytes:
    name_b = name.encode("utf-8")
    aad = bytearray()
    aad += MAGIC
    aad += struct.pack("<B", int(version))
    aad += header_hash
    aad += struct.pack("<H", len(name_b))
    aad += name_b
    aad += struct.pack("<Q", orig_size)
    return bytes(aad)


def make_nonce(prefix8: bytes, counter: int) -> bytes:
    if len(prefix8) != NONCE_PREFIX_LEN:
        raise EncryptorError("Internal: nonce prefix must be 8 bytes.")
    if not (0 <= counter <= COUNTER_MAX):
        raise EncryptorError("Chunk counter overflow.")
    return prefix8 + struct.pack(">I", counter)  # counter big-endian


# =========================
# Container records IO
# =========================

def write_record_file_begin(f: BinaryIO, name: str, orig_size: int, nonce_prefix: bytes) -> None:
    name_b = name.encode("utf-8")
    if len(name_b) > MAX_PATH_LEN:
        raise EncryptorError(f"File name too long (>{MAX_PATH_LEN}): {name}")
    f.write(struct.pack("<B", int(RecordType.FILE_BEGIN)))
    f.write(struct.pack("<H", len(name_b)))
    f.write(name_b)
    f.write(struct.pack("<Q", orig_size))
    f.write(nonce_prefix)


def write_record_file_end(f: BinaryIO) -> None:
    f.write(struct.pack("<B", int(RecordType.FILE_END)))


def write_record_eof(f: BinaryIO) -> None:
    f.write(struct.pack("<B", int(RecordType.EOF)))


def write_chunk_record(f: BinaryIO, chunk_index: int, plain_len: int, ciphertext: bytes) -> None:
    if chunk_index < 0 or chunk_index > COUNTER_MAX:
        raise EncryptorError("Chunk counter overflow.")
    f.write(struct.pack("<III", chunk_index, plain_len, len(ciphertext)))
    f.write(ciphertext)


def collect_files(input_files: Sequence[str]) -> List[Tuple[Path, str]]:
    """Resolve input paths to (path, name in container); order is preserved."""
    files: List[Tuple[Path, str]] = []
    seen: set[str] = set()
    for raw in input_files:
        p = Path(raw).expanduser()
        if not p.is_file():
            raise EncryptorError(f"Input file not found (or not a regular file): {raw}")
        name = p.name
        ensure_utf8(name, "Input file name")
        key = name.casefold() if os.name == "nt" else name
        if key in seen:
            raise EncryptorError(f"Duplicate file name in container: {name}")
        seen.add(key)
        files.append((p, name))
    return files


# =========================
# Encrypt
# =========================

class Orchestrator(abc.ABC):
    """Receives a validated request; returns the process exit code."""

    @abc.abstractmethod
    def encrypt(self, conf: ToolConf, rcpts: Sequence[RcptInfo]) -> int:
        ...


class ContainerWriter(Orchestrator):
    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE, overwrite: bool = False) -> None:
        _ensure_chunk_size_ok(chunk_size)
        self.chunk_size = chunk_size
        self.overwrite = overwrite

    def make_lock(
        self,
        conf: ToolConf,
        rcpt: RcptInfo,
        fmk: bytes,
        trusted: Sequence[x509.Certificate],
    ) -> Lock:
        if rcpt.kind == RecipientKind.CERTIFICATE:
            cert = parse_certificate(rcpt.cert, rcpt.key_file_name)
            if trusted:
                check_issuer(cert, trusted, rcpt.key_file_name)
            if cert.not_valid_after_utc < datetime.datetime.now(datetime.timezone.utc):
                log.warning("Recipient certificate %s has expired", rcpt.key_file_name)
            label = rcpt.label or (generate_label(rcpt, cert) if conf.gen_label else "")
            return lock_for_certificate(label, cert, fmk)

        label = rcpt.label or (generate_label(rcpt) if conf.gen_label else "")
        if rcpt.kind == RecipientKind.SYMMETRIC_KEY:
            return lock_for_secret(label, rcpt.secret, fmk)
        if rcpt.kind == RecipientKind.PASSWORD:
            return lock_for_password(label, rcpt.password, fmk)
        raise EncryptorError(f"{rcpt.kind.human()} recipients are not supported (slot {rcpt.slot}).")

    def encrypt(self, conf: ToolConf, rcpts: Sequence[RcptInfo]) -> int:
        out_path = Path(conf.out)
        if out_path.exists() and not self.overwrite:
            raise EncryptorError(f"Output container already exists: {out_path}")

        files = collect_files(conf.input_files)
        trusted = [parse_certificate(c, "(accepted)") for c in conf.accept_certs]
        for server in conf.servers:
            log.info("Key server %s (%s) is not used for local recipient locks", server.id, server.url)

        fmk = os.urandom(FMK_LEN)
        locks = [self.make_lock(conf, rcpt, fmk, trusted) for rcpt in rcpts]

        salt = os.urandom(SALT_LEN)
        enc_key, mac_key = split_seed(hkdf_derive(fmk, salt=salt, length=MASTER_SEED_LEN))
        header_wo = build_header_without_hmac(conf.version, salt, locks, self.chunk_size)
        header_mac = compute_header_hmac(mac_key, header_wo)
        header_hash = sha256(header_wo)
        aead = AESGCM(enc_key)

        try:
            out_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path, tmp_f = _secure_create_tmp_file(out_path.parent, out_path.name, suffix=".contmp")
        except OSError as ex:
            raise EncryptorError(f"Failed to prepare output: {out_path} ({ex})") from ex

        try:
            with tmp_f as out_f:
                write_header(out_f, header_wo, header_mac)
                for path, name in files:
                    self._write_file(out_f, aead, conf.version, header_hash, path, name)
                write_record_eof(out_f)
                _fsync_fileobj_best_effort(out_f)
            _atomic_replace_file(tmp_path, out_path)
        except OSError as ex:
            _unlink_best_effort(tmp_path)
            raise EncryptorError(f"I/O error while writing container {out_path}: {ex}") from ex
        except Exception:
            _unlink_best_effort(tmp_path)
            raise

        log.info("Encrypted %d file(s) for %d recipient(s) into %s", len(files), len(locks), out_path)
        return ExitCode.OK

    def _write_file(
        self,
        out_f: BinaryIO,
        aead: AESGCM,
        version: ContainerVersion,
        header_hash: bytes,
        path: Path,
        name: str,
    ) -> None:
        orig_size = int(path.stat().st_size)
        nonce_prefix = os.urandom(NONCE_PREFIX_LEN)
        write_record_file_begin(out_f, name, orig_size, nonce_prefix)
        aad_prefix = build_aad_prefix(version, header_hash, name, orig_size)

        chunk_index = 0
        written_plain = 0
        with open(path, "rb") as in_f:
            while True:
                plain = in_f.read(self.chunk_size)
                # An empty file still gets one (empty) authenticated chunk
                if plain == b"" and not (orig_size == 0 and chunk_index == 0):
                    break

                nonce = make_nonce(nonce_prefix, chunk_index)
                ct = aead.encrypt(nonce, plain, aad_prefix + struct.pack("<I", chunk_index))
                if len(ct) != len(plain) + 16:
                    raise EncryptorError("Internal: unexpected AEAD ciphertext length.")
                write_chunk_record(out_f, chunk_index, len(plain), ct)

                written_plain += len(plain)
                chunk_index += 1
                if orig_size == 0:
                    break

        if written_plain != orig_size:
            raise EncryptorError(f"Size mismatch while encrypting {path}: expected {orig_size}, read {written_plain}")
        write_record_file_end(out_f)
        log.debug("Added %s (%d bytes, %d chunk(s))", name, orig_size, chunk_index)


def parse_and_encrypt(args: Sequence[str], orchestrator: Optional[Orchestrator] = None) -> int:
    log.info("Encrypting")
    conf, rcpts = RequestBuilder().build(args)
    validate_request(conf, rcpts)
    if orchestrator is None:
        orchestrator = ContainerWriter()
    return orchestrator.encrypt(conf, rcpts)


# =========================
# Console / CLI
# =========================

def print_usage(stream: TextIO) -> None:
    print(f"cdoc-tool version: {VERSION_STR}", file=stream)
    print("cdoc-tool [encrypt] --rcpt RECIPIENT [--rcpt...] --out OUTPUTFILE [--in] FILE [FILE...]", file=stream)
    print("  Encrypt files for one or more recipients", file=stream)
    print("  RECIPIENT: [LABEL:cert:]CERT_PATH | LABEL:key:HEX | LABEL:pw:PASSWORD", file=stream)
    print("             LABEL:p11sk:SLOT:[PIN]:[ID]:[LABEL] | LABEL:p11pk:SLOT:[PIN]:[ID]:[LABEL]", file=stream)
    print("             a CERT_PATH containing ':key:', ':pw:', ':p11sk:' or ':p11pk:' must be given", file=stream)
    print("             as LABEL:cert:CERT_PATH (LABEL may be empty, e.g. :cert:old:pw:x.cer)", file=stream)
    print("  --library PATH      PKCS#11 library (required for p11 recipients)", file=stream)
    print("  --server ID URL     key server", file=stream)
    print("  --accept CERTFILE   accepted issuer certificate(s), DER or base64 bundle", file=stream)
    print("  --conf CONFFILE     JSON configuration file", file=stream)
    print("  -v1 | -v2           container version (default 1, certificates only)", file=stream)
    print("  --genlabel          generate labels for unlabeled recipients (default)", file=stream)
    print("  --verbose           print log messages", file=stream)


@dataclass
class Console:
    """Process-wide output settings; nothing reaches the terminal unless verbose."""

    verbose: bool = False
    stdout: TextIO = field(default_factory=lambda: sys.stdout)
    stderr: TextIO = field(default_factory=lambda: sys.stderr)

    @classmethod
    def from_args(cls, args: Sequence[str]) -> "Console":
        return cls(verbose="--verbose" in args)

    @contextlib.contextmanager
    def installed(self) -> Iterator["Console"]:
        handler: logging.Handler
        if self.verbose:
            handler = logging.StreamHandler(self.stderr)
            handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        else:
            handler = logging.NullHandler()
        previous_level = log.level
        log.setLevel(logging.DEBUG)
        log.addHandler(handler)
        try:
            yield self
        finally:
            log.removeHandler(handler)
            log.setLevel(previous_level)

    def print_usage(self) -> None:
        if self.verbose:
            print_usage(self.stdout)


def main(argv: Optional[Sequence[str]] = None, orchestrator: Optional[Orchestrator] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        print_usage(sys.stderr)
        return ExitCode.ERROR

    console = Console.from_args(args)
    args = [a for a in args if a != "--verbose"]

    with console.installed():
        # "encrypt" is the only command and may be omitted
        if args and args[0] == "encrypt":
            command, cmd_args = args[0], args[1:]
        else:
            command, cmd_args = "encrypt", args
        log.info("Command: %s", command)

        try:
            result = parse_and_encrypt(cmd_args, orchestrator)
        except CdocToolError as ex:
            log.error("%s", ex)
            result = ex.exit_code

        if result == ExitCode.USAGE:
            console.print_usage()
        return int(result)


def run() -> None:
    try:
        raise SystemExit(main())
    except KeyboardInterrupt:
        raise SystemExit(130)


if __name__ == "__main__":
    run()
