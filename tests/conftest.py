from __future__ import annotations

"""Shared fixtures and builders for the policy agent tests.

Nothing here touches the network: the remote authority is an
``httpx.MockTransport`` and key/trust stores are minted on the fly with
``cryptography``.
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, List, Optional, Sequence

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

# ---------------------------------------------------------------------------
# Runtime env for the agent
# ---------------------------------------------------------------------------

os.environ.setdefault("APP_ENV", "test")

# Ensure project root on PYTHONPATH so `import policy_agent` works when pytest is run
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from policy_agent.models import PolicySnapshot  # noqa: E402

STORE_PASSWORD = "changeit"
REPOSITORY = "hadoopdev"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def build_snapshot(
    resource: str = "/demo/data",
    recursive: bool = True,
    access: Sequence[str] = ("allow",),
    users: Sequence[str] = ("guest",),
    groups: Sequence[str] = ("sales",),
    ip_addresses: Optional[Sequence[str]] = None,
    enabled: bool = True,
    audit: bool = True,
    repository: str = REPOSITORY,
) -> PolicySnapshot:
    """One-rule snapshot, enough to exercise change detection."""
    return PolicySnapshot.model_validate(
        {
            "repository_name": repository,
            "acl": [
                {
                    "resource": resource,
                    "recursive": recursive,
                    "status": "Enabled" if enabled else "NotEnabled",
                    "audit": audit,
                    "permissions": [
                        {
                            "access": list(access),
                            "users": list(users),
                            "groups": list(groups),
                            "ip_addresses": list(ip_addresses) if ip_addresses is not None else None,
                        }
                    ],
                }
            ],
        }
    )


class RecordingListener:
    def __init__(self) -> None:
        self.calls: List[Any] = []

    def on_change(self, snapshot: Any) -> None:
        self.calls.append(snapshot)


class RecordingSink:
    def __init__(self) -> None:
        self.users: dict[str, list[str]] = {}
        self.calls = 0

    def add_or_update_user(self, user: str, groups: List[str]) -> None:
        self.calls += 1
        self.users[user] = groups


class ScriptedFetcher:
    """Fetcher returning queued results; exceptions in the queue are raised."""

    def __init__(self, *results: Any) -> None:
        self.results = list(results)
        self.calls = 0

    def push(self, *results: Any) -> None:
        self.results.extend(results)

    async def fetch(self) -> Any:
        self.calls += 1
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


# ---------------------------------------------------------------------------
# Certificates / stores
# ---------------------------------------------------------------------------

def make_identity(common_name: str = "localhost"):
    """Return ``(private_key, certificate)`` for a self-signed CA cert."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(common_name)]), critical=False)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return key, cert


@pytest.fixture(scope="session")
def identity():
    return make_identity()


@pytest.fixture()
def keystore_file(tmp_path, identity) -> Path:
    key, cert = identity
    data = pkcs12.serialize_key_and_certificates(
        b"agent", key, cert, None, serialization.BestAvailableEncryption(STORE_PASSWORD.encode())
    )
    path = tmp_path / "keystore.p12"
    path.write_bytes(data)
    return path


@pytest.fixture()
def truststore_file(tmp_path, identity) -> Path:
    _key, cert = identity
    data = pkcs12.serialize_key_and_certificates(
        None, None, None, [cert], serialization.BestAvailableEncryption(STORE_PASSWORD.encode())
    )
    path = tmp_path / "truststore.p12"
    path.write_bytes(data)
    return path


@pytest.fixture()
def cache_path(tmp_path) -> Path:
    return tmp_path / "cache" / "policy-cache.json"
