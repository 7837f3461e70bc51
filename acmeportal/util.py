import asyncio
import contextlib
import logging
import re
import time
import typing
from datetime import datetime, timedelta, timezone
from pathlib import Path
from time import perf_counter

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from cryptography.x509 import NameOID

logger = logging.getLogger(__name__)

KEY_FILE_MODE = 0o600

DEFAULT_VALIDITY = timedelta(days=90)
"""Validity assumed for a certificate whose *notAfter* cannot be read."""


def generate_csr(
    CN: str,
    private_key: rsa.RSAPrivateKey,
    names: typing.List[str],
    path: Path = None,
) -> x509.CertificateSigningRequest:
    """Generates a certificate signing request.

    :param CN: The requested common name.
    :param private_key: The private key to sign the CSR with.
    :param names: The requested names in the CSR.
    :param path: Optional path to write the PEM-serialized CSR to.
    :return: The generated CSR.
    """
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, CN)]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in names]),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )

    if path:
        with open(path, "wb") as pem_out:
            pem_out.write(csr.public_bytes(serialization.Encoding.PEM))

    return csr


def serialize_key(private_key: typing.Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def write_private(path: Path, data: bytes) -> None:
    """Writes *data* to *path*, making sure only the owner may read it."""
    path.touch(KEY_FILE_MODE) if not path.exists() else path.chmod(KEY_FILE_MODE)

    with open(path, "wb") as pem_out:
        pem_out.write(data)


def generate_rsa_key(path: Path = None, key_size=2048) -> rsa.RSAPrivateKey:
    """Generates an RSA private key and optionally saves it to the given path as PEM.

    :param path: The path to write the PEM-serialized key to.
    :param key_size: The RSA key size.
    :return: The generated private key.
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

    if path:
        path.parent.mkdir(parents=True, exist_ok=True)
        write_private(path, serialize_key(private_key))

    return private_key


def generate_ec_key(path: Path = None, key_size=256) -> ec.EllipticCurvePrivateKey:
    """Generates an EC private key and optionally saves it to the given path as PEM.

    :param path: The path to write the PEM-serialized key to.
    :param key_size: The EC key size.
    :return: The generated private key.
    """
    curve = getattr(ec, f"SECP{key_size}R1")
    private_key = ec.generate_private_key(curve())

    if path:
        path.parent.mkdir(parents=True, exist_ok=True)
        write_private(path, serialize_key(private_key))

    return private_key


def safe_filename(domain: str) -> str:
    """Turns a domain into something usable as a file name.

    Wildcard labels become *wildcard*, everything that is not alphanumeric becomes an underscore.
    """
    return re.sub(r"[^a-z0-9]", "_", domain.replace("*", "wildcard"), flags=re.IGNORECASE)


def timestamp_ms() -> int:
    return int(time.time() * 1000)


def not_after(pem: str, issued_at: datetime = None) -> datetime:
    """Returns the *notAfter* date of the first certificate in the given PEM chain.

    Falls back to *issued_at* plus :data:`DEFAULT_VALIDITY` if the chain does not contain
    a parseable certificate.
    """
    certs = [obj for obj in pem_split(pem) if isinstance(obj, x509.Certificate)]
    if certs:
        return certs[0].not_valid_after_utc

    logger.warning("Could not read notAfter from the issued certificate, assuming %s", DEFAULT_VALIDITY)
    return (issued_at or datetime.now(timezone.utc)) + DEFAULT_VALIDITY


def pem_split(
    pem: str,
) -> typing.List[
    typing.Union[
        "cryptography.x509.CertificateSigningRequest", "cryptography.x509.Certificate"
    ]
]:
    """Parses a PEM encoded string and returns all contained CSRs, certificates and keys.

    :param pem: The concatenated PEM encoded objects.
    :return: List of all objects found in the PEM string.
    """
    _PEM_TO_CLASS = {
        b"CERTIFICATE": x509.load_pem_x509_certificate,
        b"CERTIFICATE REQUEST": x509.load_pem_x509_csr,
        b"EC PRIVATE KEY": lambda x: serialization.load_pem_private_key(
            x, password=None
        ),
        b"RSA PRIVATE KEY": lambda x: serialization.load_pem_private_key(
            x, password=None
        ),
    }

    _PEM_RE = re.compile(
        b"-----BEGIN (?P<cls>"
        + b"|".join(_PEM_TO_CLASS.keys())
        + b""")-----"""
        + b"""\r?
.+?\r?
-----END \\1-----\r?\n?""",
        re.DOTALL,
    )

    return [
        _PEM_TO_CLASS[match.groupdict()["cls"]](match.group(0))
        for match in _PEM_RE.finditer(pem.encode())
    ]


class PerformanceMeasure:
    """Async context manager that logs how long the wrapped block took.

    Used as the instrumentation hook around the orchestrator's public operations.
    """

    def __init__(self, mnemonic: str, log: logging.Logger = logger):
        self.mnemonic = mnemonic
        self.log = log
        self.end = None

    async def __aenter__(self):
        self.begin = perf_counter()
        self.log.info("%s started", self.mnemonic)
        return self

    async def __aexit__(self, type, value, traceback):
        self.end = perf_counter()
        if value is None:
            self.log.info("%s finished in %.1fs", self.mnemonic, self.duration)
        else:
            self.log.info(
                "%s failed after %.1fs: %s: %s",
                self.mnemonic,
                self.duration,
                type.__name__,
                value,
            )

    @property
    def duration(self):
        return (self.end or perf_counter()) - self.begin


class KeyedLock:
    """One :class:`asyncio.Lock` per key, created on first use.

    A key's lock is dropped again once nobody holds or waits for it, so the number of
    locks is bounded by the number of keys in use rather than the number of keys ever seen.
    """

    def __init__(self):
        self._locks: typing.Dict[str, asyncio.Lock] = {}
        self._users: typing.Dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def __call__(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self):
        return len(self._locks)
