"""Durable on-disk copy of the last successfully fetched policy snapshot.

The file is the snapshot's canonical JSON (sorted keys, two-space indent) so
it can be diffed across agent versions.  Writes go to a temporary file in the
same directory which is then ``os.replace``-d over the target, so a reader
never sees a half-written cache and a crash mid-write leaves the previous
file intact.
"""

from __future__ import annotations

import json
import os
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from policy_agent.models import PolicySnapshot
from policy_agent.utils.logger import logger

__all__ = ["PolicyCacheStore", "atomic_write_bytes"]


def atomic_write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fp:
            fp.write(data)
            fp.flush()
            os.fsync(fp.fileno())
        os.replace(temp_path, path)
    except BaseException:
        with suppress(FileNotFoundError):
            os.unlink(temp_path)
        raise


class PolicyCacheStore:
    """Save/load a :class:`PolicySnapshot` at a fixed path."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def save(self, snapshot: PolicySnapshot) -> None:
        atomic_write_bytes(self._path, snapshot.canonical_bytes())
        logger.info(
            "policy.cache.saved",
            extra={"path": str(self._path), "repository": snapshot.repository_name, "rules": len(snapshot.acl)},
        )

    def load(self) -> Optional[PolicySnapshot]:
        """Return the cached snapshot, or ``None`` when missing or corrupt."""
        try:
            with self._path.open("r", encoding="utf-8") as fp:
                document = json.load(fp)
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.error(f"Policy cache {self._path} is unreadable, ignoring it: {exc}")
            return None

        if not isinstance(document, dict):
            logger.error(f"Policy cache {self._path} is not a JSON object, ignoring it")
            return None

        try:
            return PolicySnapshot.model_validate(document)
        except ValidationError as exc:
            logger.error(f"Policy cache {self._path} does not hold a valid snapshot, ignoring it: {exc}")
            return None
