"""TLS context construction from key-store / trust-store files.

Stores are located through an ordered list of locator strategies (filesystem
first, then bundled package resources) and parsed with ``cryptography``.
Every failure – missing file, unsupported store type, wrong password,
malformed content – is logged and turned into "no context"; nothing raised
while loading a store escapes this module.
"""

from __future__ import annotations

import os
import ssl
import tempfile
from contextlib import suppress
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional, Protocol, Sequence

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from policy_agent.errors import StoreLoadError
from policy_agent.models import SecureChannelConfig
from policy_agent.utils.credentials import SecretResolver
from policy_agent.utils.logger import logger
from policy_agent.utils.utils import is_empty

__all__ = [
    "StoreLocator",
    "FilesystemLocator",
    "PackageResourceLocator",
    "DEFAULT_LOCATORS",
    "KeyMaterial",
    "SecureChannelBuilder",
    "read_store_bytes",
    "load_key_material",
    "load_trust_certificates",
    "verify_hostname",
]

PKCS12_TYPES = {"pkcs12", "p12", "pfx"}
PEM_TYPES = {"pem"}

# ---------------------------------------------------------------------------
# Store locators
# ---------------------------------------------------------------------------


class StoreLocator(Protocol):
    name: str

    def open(self, path: str) -> Optional[BinaryIO]: ...


class FilesystemLocator:
    name = "filesystem"

    def open(self, path: str) -> Optional[BinaryIO]:
        candidate = Path(path).expanduser()
        if not candidate.is_file():
            return None
        return candidate.open("rb")


class PackageResourceLocator:
    """Look the store up as a resource bundled inside an installed package.

    ``path`` is resolved relative to each package root in turn.
    """

    name = "package-resource"

    def __init__(self, packages: Sequence[str] = ("policy_agent",)) -> None:
        self._packages = tuple(packages)

    def open(self, path: str) -> Optional[BinaryIO]:
        relative = path.lstrip("/")
        for package in self._packages:
            try:
                resource = resources.files(package).joinpath(relative)
            except (ModuleNotFoundError, TypeError):
                continue
            if resource.is_file():
                return resource.open("rb")
        return None


DEFAULT_LOCATORS: tuple[StoreLocator, ...] = (FilesystemLocator(), PackageResourceLocator())


def read_store_bytes(path: str, locators: Sequence[StoreLocator] = DEFAULT_LOCATORS) -> bytes:
    """Return the raw bytes of the first locator that finds ``path``."""
    for locator in locators:
        try:
            handle = locator.open(path)
        except OSError as exc:
            logger.warning(f"{locator.name} locator failed for {path}: {exc}")
            continue
        if handle is None:
            continue
        with handle:
            logger.debug(f"Loaded store {path} via {locator.name}")
            return handle.read()
    raise StoreLoadError(path, "not found on the filesystem or as a bundled resource")


# ---------------------------------------------------------------------------
# Store parsing
# ---------------------------------------------------------------------------


@dataclass
class KeyMaterial:
    private_key: object
    certificate: x509.Certificate
    chain: List[x509.Certificate] = field(default_factory=list)
    # password that unlocked the store
    password: str = field(default="", repr=False)


def load_key_material(data: bytes, store_type: str, password: str, path: str = "<memory>") -> KeyMaterial:
    store_type = store_type.lower()
    secret = password.encode()

    if store_type in PKCS12_TYPES:
        key, cert, additional = pkcs12.load_key_and_certificates(data, secret)
        if key is None or cert is None:
            raise StoreLoadError(path, "key-store holds no private key entry")
        return KeyMaterial(private_key=key, certificate=cert, chain=list(additional), password=password)

    if store_type in PEM_TYPES:
        try:
            key = serialization.load_pem_private_key(data, password=secret)
        except TypeError:
            # unencrypted PEM key
            key = serialization.load_pem_private_key(data, password=None)
        certs = x509.load_pem_x509_certificates(data)
        return KeyMaterial(private_key=key, certificate=certs[0], chain=certs[1:], password=password)

    raise StoreLoadError(path, f"unsupported store type '{store_type}'")


def load_trust_certificates(data: bytes, store_type: str, password: str, path: str = "<memory>") -> List[x509.Certificate]:
    store_type = store_type.lower()

    if store_type in PKCS12_TYPES:
        _key, cert, additional = pkcs12.load_key_and_certificates(data, password.encode())
        certs = ([cert] if cert is not None else []) + list(additional)
    elif store_type in PEM_TYPES:
        certs = x509.load_pem_x509_certificates(data)
    else:
        raise StoreLoadError(path, f"unsupported store type '{store_type}'")

    if not certs:
        raise StoreLoadError(path, "trust-store holds no certificates")
    return certs


def _certs_to_pem(certs: Sequence[x509.Certificate]) -> str:
    return "".join(c.public_bytes(serialization.Encoding.PEM).decode("ascii") for c in certs)


# ---------------------------------------------------------------------------
# Hostname verification
# ---------------------------------------------------------------------------


def _certificate_hosts(peer_cert: Dict) -> List[str]:
    hosts: List[str] = []
    for rdn in peer_cert.get("subject", ()):
        for key, value in rdn:
            if key == "commonName":
                hosts.append(value)
    for kind, value in peer_cert.get("subjectAltName", ()):
        if kind == "DNS":
            hosts.append(value)
    return hosts


def verify_hostname(hostname: str, peer_cert: Optional[Dict]) -> bool:
    """Accept only when the certificate names exactly ``hostname``.

    ``peer_cert`` is the dict returned by ``SSLSocket.getpeercert()``.  No
    wildcard expansion happens here.
    """
    if not hostname or not peer_cert:
        return False
    return hostname in _certificate_hosts(peer_cert)


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

_STORE_ERRORS = (StoreLoadError, ValueError, TypeError, UnsupportedAlgorithm)


class SecureChannelBuilder:
    """Build client TLS contexts using passwords from a secret resolver."""

    def __init__(self, resolver: SecretResolver, locators: Sequence[StoreLocator] = DEFAULT_LOCATORS) -> None:
        self._resolver = resolver
        self._locators = tuple(locators)

    @property
    def hostname_verifier(self) -> Callable[[str, Optional[Dict]], bool]:
        return verify_hostname

    def _secret(self, locator: Optional[str], alias: str) -> Optional[str]:
        secret = self._resolver.resolve(locator, alias)
        return None if is_empty(secret) else secret

    def get_key_material(self, config: SecureChannelConfig) -> Optional[KeyMaterial]:
        path = config.keystore_path
        if is_empty(path):
            return None

        secret = self._secret(config.keystore_credential, config.keystore_alias)
        if secret is None:
            logger.error(f"No credential for key-store {path} (alias {config.keystore_alias})")
            return None

        try:
            data = read_store_bytes(path, self._locators)
            return load_key_material(data, config.keystore_type, secret, path)
        except _STORE_ERRORS as exc:
            logger.error(f"Unable to obtain key material from key-store {path}: {exc}")
            return None

    def get_trust_certificates(self, config: SecureChannelConfig) -> Optional[List[x509.Certificate]]:
        path = config.truststore_path
        if is_empty(path):
            return None

        secret = self._secret(config.truststore_credential, config.truststore_alias)
        if secret is None:
            logger.error(f"No credential for trust-store {path} (alias {config.truststore_alias})")
            return None

        try:
            data = read_store_bytes(path, self._locators)
            return load_trust_certificates(data, config.truststore_type, secret, path)
        except _STORE_ERRORS as exc:
            logger.error(f"Unable to obtain trusted certificates from trust-store {path}: {exc}")
            return None

    def build_tls_context(self, config: SecureChannelConfig) -> Optional[ssl.SSLContext]:
        """Mutual-TLS context, or ``None`` unless both stores loaded."""
        key_material = self.get_key_material(config)
        trusted = self.get_trust_certificates(config)

        if key_material is None or trusted is None:
            return None

        try:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            context.load_verify_locations(cadata=_certs_to_pem(trusted))
            _load_cert_chain(context, key_material)
        except (ssl.SSLError, OSError, ValueError) as exc:
            logger.error(f"Unable to initialize the TLS context: {exc}")
            return None
        return context

    def build_server_auth_context(self, config: SecureChannelConfig) -> Optional[ssl.SSLContext]:
        """One-way TLS: trust-store if configured, system defaults otherwise."""
        if is_empty(config.truststore_path):
            return ssl.create_default_context()

        trusted = self.get_trust_certificates(config)
        if trusted is None:
            return None
        try:
            return ssl.create_default_context(cadata=_certs_to_pem(trusted))
        except (ssl.SSLError, ValueError) as exc:
            logger.error(f"Unable to initialize the TLS context: {exc}")
            return None

    def build_context(self, config: SecureChannelConfig) -> Optional[ssl.SSLContext]:
        if config.mutual_tls:
            return self.build_tls_context(config)
        return self.build_server_auth_context(config)


def _load_cert_chain(context: ssl.SSLContext, material: KeyMaterial) -> None:
    """Hand key + chain to OpenSSL, which only reads them from a file.

    The key is re-encrypted with the store password and the file removed
    before returning.
    """
    key_pem = material.private_key.private_bytes(  # type: ignore[attr-defined]
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(material.password.encode()),
    )
    chain_pem = _certs_to_pem([material.certificate, *material.chain]).encode("ascii")

    fd, temp_path = tempfile.mkstemp(suffix=".pem", prefix="policy_agent_")
    try:
        os.chmod(temp_path, 0o600)
        with os.fdopen(fd, "wb") as fp:
            fp.write(key_pem)
            fp.write(chain_pem)
        context.load_cert_chain(temp_path, password=material.password)
    finally:
        with suppress(FileNotFoundError, PermissionError, OSError):
            os.unlink(temp_path)
