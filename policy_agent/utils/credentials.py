"""Secret resolvers – the only way passwords enter the agent.

A resolver turns an opaque ``(locator, alias)`` pair into a secret string.
"Not found" is never an error: resolvers return ``None`` and let the caller
decide what a missing secret means (see ``ssl_helper``).

Resolvers are plain objects constructed at startup and passed in; there is no
process-wide credential provider.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple, runtime_checkable
from urllib.parse import urlparse

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from policy_agent.utils.logger import logger

__all__ = [
    "SecretResolver",
    "StaticSecretResolver",
    "EnvSecretResolver",
    "FileSecretResolver",
    "encrypt_secret",
    "decrypt_secret",
    "CREDSTORE_KEY_ENV",
]

CREDSTORE_KEY_ENV = "POLICY_AGENT_CREDSTORE_KEY"


@runtime_checkable
class SecretResolver(Protocol):
    def resolve(self, locator: Optional[str], alias: str) -> Optional[str]: ...


class StaticSecretResolver:
    """In-memory resolver keyed by ``(locator, alias)`` or by alias alone."""

    def __init__(self, secrets: Mapping[Any, str] | None = None) -> None:
        self._secrets: Dict[Any, str] = dict(secrets or {})

    def resolve(self, locator: Optional[str], alias: str) -> Optional[str]:
        if (locator, alias) in self._secrets:
            return self._secrets[(locator, alias)]
        return self._secrets.get(alias)


class EnvSecretResolver:
    """Read ``<prefix><ALIAS>`` from the environment; the locator is ignored."""

    def __init__(self, prefix: str = "POLICY_AGENT_SECRET_") -> None:
        self._prefix = prefix

    def resolve(self, locator: Optional[str], alias: str) -> Optional[str]:
        value = os.getenv(f"{self._prefix}{alias.upper()}")
        return value or None


# ---------------------------------------------------------------------------
# AES-GCM helpers (nonce ‖ ciphertext, base64)
# ---------------------------------------------------------------------------


def _b64decode_key(raw: str) -> bytes:
    padded = raw + "=" * (-len(raw) % 4)
    return base64.urlsafe_b64decode(padded)


def _get_store_key() -> bytes | None:
    raw = os.getenv(CREDSTORE_KEY_ENV)
    if not raw:
        return None
    key = _b64decode_key(raw)
    if len(key) != 32:
        raise ValueError(f"{CREDSTORE_KEY_ENV} must decode to 32 bytes")
    return key


def encrypt_secret(value: str, key: bytes | None = None) -> str | Dict[str, Any]:
    """Return the store representation of ``value``.

    Without a key the value is kept as an explicitly marked plain entry.
    """
    key = key if key is not None else _get_store_key()
    if key is None:
        return {"__plain__": True, "value": value}

    aes = AESGCM(key)
    nonce = os.urandom(12)
    ciphertext = aes.encrypt(nonce, value.encode(), None)
    return base64.b64encode(nonce + ciphertext).decode()


def decrypt_secret(entry: str | Dict[str, Any], key: bytes | None = None) -> str:
    if isinstance(entry, dict):
        if entry.get("__plain__") and isinstance(entry.get("value"), str):
            return entry["value"]
        raise ValueError("Unrecognised credential entry")
    if not isinstance(entry, str):
        raise ValueError(f"Unrecognised credential entry of type {type(entry).__name__}")

    key = key if key is not None else _get_store_key()
    if key is None:
        raise RuntimeError(f"Encrypted credential but {CREDSTORE_KEY_ENV} not set")

    raw = base64.b64decode(entry.encode())
    nonce, ciphertext = raw[:12], raw[12:]
    return AESGCM(key).decrypt(nonce, ciphertext, None).decode()


# ---------------------------------------------------------------------------
# File-backed credential store
# ---------------------------------------------------------------------------


def store_path_from_locator(locator: str) -> Path:
    """Map a credential locator to a filesystem path.

    Accepts plain paths, ``file://`` URLs and provider-style URLs such as
    ``jceks://file/etc/agent/cred.json`` (the path follows the ``file``
    segment).
    """
    parsed = urlparse(locator)
    if not parsed.scheme or len(parsed.scheme) == 1:  # plain or Windows path
        return Path(locator)
    return Path(parsed.path)


class FileSecretResolver:
    """Resolve secrets from a JSON credential-store file.

    The file maps alias → entry, where an entry is either an AES-GCM blob or a
    marked plain value (see :func:`encrypt_secret`).  Parsed contents are
    cached per path and reloaded when the file's mtime changes.
    """

    def __init__(self, key: bytes | None = None) -> None:
        self._key = key
        self._cache: Dict[Path, Tuple[int, Dict[str, Any]]] = {}

    def _entries(self, path: Path) -> Dict[str, Any] | None:
        try:
            mtime = path.stat().st_mtime_ns
        except OSError:
            logger.warning(f"Credential store not found: {path}")
            return None

        cached = self._cache.get(path)
        if cached and cached[0] == mtime:
            return cached[1]

        try:
            with path.open("r", encoding="utf-8") as fp:
                data = json.load(fp)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error(f"Unable to read credential store {path}: {exc}")
            return None

        if not isinstance(data, dict):
            logger.error(f"Credential store {path} is not a JSON object")
            return None

        self._cache[path] = (mtime, data)
        return data

    def resolve(self, locator: Optional[str], alias: str) -> Optional[str]:
        if not locator:
            return None

        entries = self._entries(store_path_from_locator(locator))
        if entries is None or alias not in entries:
            return None

        try:
            return decrypt_secret(entries[alias], self._key)
        except (ValueError, RuntimeError, InvalidTag, binascii.Error, UnicodeDecodeError) as exc:
            logger.error(f"Unable to decrypt credential '{alias}' from {locator}: {exc}")
            return None
