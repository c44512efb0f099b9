from __future__ import annotations

"""Unified models namespace – policy snapshots, source metadata and poller state.

Call-sites simply::

    from policy_agent.models import PolicySnapshot, SecureChannelConfig, TickResult

Snapshots are frozen pydantic models; equality is structural, which is what the
poller's change detection relies on.  ``canonical_bytes()`` is the one and only
serialization used for the on-disk cache and for ETags.
"""

import json
from datetime import datetime
from enum import Enum
from hashlib import sha256
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

__all__ = [
    "ChangeListener",
    "PolicyRule",
    "PolicySnapshot",
    "PolicyStatus",
    "PollerState",
    "PollerStatus",
    "RolePermission",
    "SecureChannelConfig",
    "SourceMetadata",
    "TickResult",
    "UNCHANGED",
    "UserGroupMapping",
    "UserGroupSink",
    "KEYSTORE_ALIAS",
    "TRUSTSTORE_ALIAS",
]

# Fixed credential aliases for the two TLS stores.
KEYSTORE_ALIAS = "sslKeyStore"
TRUSTSTORE_ALIAS = "sslTrustStore"

UserGroupMapping = Dict[str, List[str]]

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PolicyStatus(str, Enum):
    enabled = "Enabled"
    disabled = "NotEnabled"


class PollerState(str, Enum):
    initializing = "initializing"
    serving = "serving"
    refreshing = "refreshing"
    stopped = "stopped"


class _Unchanged(Enum):
    UNCHANGED = "unchanged"

    def __repr__(self) -> str:
        return "UNCHANGED"


# Returned by readers/fetchers when the source has not moved since last time.
UNCHANGED = _Unchanged.UNCHANGED


class TickResult(str, Enum):
    """Outcome of a single poll tick."""
    updated = "updated"
    unchanged = "unchanged"
    failed = "failed"
    skipped = "skipped"


# ---------------------------------------------------------------------------
# Policy snapshot
# ---------------------------------------------------------------------------

_SNAPSHOT_CONFIG = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)


class RolePermission(BaseModel):
    """Access types granted to a set of users and groups."""

    model_config = _SNAPSHOT_CONFIG

    access: Tuple[str, ...] = Field(default=(), validation_alias=AliasChoices("access", "accessTypes"))
    users: Tuple[str, ...] = ()
    groups: Tuple[str, ...] = ()
    ip_addresses: Optional[Tuple[str, ...]] = Field(
        default=None, validation_alias=AliasChoices("ip_addresses", "ipAddress")
    )


class PolicyRule(BaseModel):
    """One ACL entry of a snapshot."""

    model_config = _SNAPSHOT_CONFIG

    resource: str
    recursive: bool = Field(default=False, validation_alias=AliasChoices("recursive", "recursiveInd"))
    status: PolicyStatus = Field(default=PolicyStatus.enabled, validation_alias=AliasChoices("status", "policyStatus"))
    audit: bool = Field(default=True, validation_alias=AliasChoices("audit", "auditInd"))
    permissions: Tuple[RolePermission, ...] = ()

    @property
    def enabled(self) -> bool:
        return self.status is PolicyStatus.enabled


class PolicySnapshot(BaseModel):
    """Full, self-contained authorization state for one repository."""

    model_config = _SNAPSHOT_CONFIG

    repository_name: str = Field(validation_alias=AliasChoices("repository_name", "repositoryName"))
    acl: Tuple[PolicyRule, ...] = ()

    @field_validator("repository_name")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("repository_name must not be blank")
        return value

    def canonical_bytes(self) -> bytes:
        """Stable serialization: same snapshot → same bytes."""
        payload = self.model_dump(mode="json")
        return (json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False) + "\n").encode("utf-8")

    def etag(self) -> str:
        return sha256(self.canonical_bytes()).hexdigest()

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "PolicySnapshot":
        """Build a snapshot from a fetched document.

        The remote authority may return the snapshot as-is or nested under a
        ``policy`` key.
        """
        if isinstance(document.get("policy"), dict):
            document = document["policy"]
        return cls.model_validate(document)


# ---------------------------------------------------------------------------
# Source / channel configuration
# ---------------------------------------------------------------------------


class SourceMetadata(BaseModel):
    """Last observed modification marker of an external source.

    Only used to skip reparsing; a file whose mtime is unchanged but whose
    size or digest moved still counts as changed.
    """

    model_config = ConfigDict(frozen=True)

    mtime_ns: Optional[int] = None
    size: Optional[int] = None
    sha256: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None


class SecureChannelConfig(BaseModel):
    """Key-store / trust-store locations and their credential locators.

    No ``keystore_path`` means one-way (server-auth-only) TLS.
    """

    model_config = ConfigDict(frozen=True)

    keystore_path: Optional[str] = None
    keystore_type: str = "pkcs12"
    keystore_credential: Optional[str] = None
    keystore_alias: str = KEYSTORE_ALIAS
    truststore_path: Optional[str] = None
    truststore_type: str = "pkcs12"
    truststore_credential: Optional[str] = None
    truststore_alias: str = TRUSTSTORE_ALIAS

    @property
    def mutual_tls(self) -> bool:
        return bool(self.keystore_path and self.keystore_path.strip())


# ---------------------------------------------------------------------------
# Poller status (exposed via /v1/policy/status)
# ---------------------------------------------------------------------------


class PollerStatus(BaseModel):
    state: PollerState
    has_snapshot: bool
    interval_seconds: float
    etag: Optional[str] = None
    last_success_at: Optional[datetime] = None
    last_change_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    ticks: int = 0


# ---------------------------------------------------------------------------
# Consumer callbacks
# ---------------------------------------------------------------------------


@runtime_checkable
class ChangeListener(Protocol):
    def on_change(self, snapshot: Any) -> None: ...


@runtime_checkable
class UserGroupSink(Protocol):
    def add_or_update_user(self, user: str, groups: List[str]) -> None: ...
