"""Change-detecting reader for user → groups sources.

A source is a local file or an ``http(s)`` URL.  Locators ending in ``.json``
hold a JSON object mapping each user to a list of groups; anything else is
delimited text, one user per line::

    alice,grpA,grpB
    "bob","grpA"

The reader remembers the last observed :class:`SourceMetadata` per locator and
returns :data:`UNCHANGED` – without parsing – when it has not moved.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import os
from hashlib import sha256
from pathlib import Path
from typing import Dict, List, Optional, Union
from urllib.parse import urlparse

import httpx

from policy_agent.errors import ConfigurationError, FetchError, SourceNotFoundError, SourceParseError
from policy_agent.models import UNCHANGED, SourceMetadata, UserGroupMapping, UserGroupSink, _Unchanged
from policy_agent.utils.logger import logger
from policy_agent.utils.utils import normalize_etag, strip_quotes

__all__ = ["UNCHANGED", "UserGroupSourceReader", "is_json_source", "is_url", "push_to_sink"]


ReadResult = Union[UserGroupMapping, _Unchanged]


def is_url(locator: str) -> bool:
    return urlparse(locator).scheme in {"http", "https"}


def is_json_source(locator: str) -> bool:
    path = urlparse(locator).path if is_url(locator) else locator
    return path.lower().endswith(".json")


class UserGroupSourceReader:
    """Read user/group sources, skipping the parse when nothing changed.

    Args:
        delimiter: Single character separating columns in delimited sources.
        quote: Character stripped from both ends of every delimited field.
        verify_digest: Also compare content digests when mtime and size are
            unchanged (guards against coarse filesystem timestamps).
        http_client: Client used for ``http(s)`` locators.
    """

    def __init__(
        self,
        delimiter: str = ",",
        quote: str = '"',
        verify_digest: bool = False,
        http_client: httpx.Client | None = None,
        timeout: float = 10.0,
    ) -> None:
        if len(delimiter) != 1:
            raise ConfigurationError(f"User/group delimiter must be a single character, got {delimiter!r}")
        self.delimiter = delimiter
        self.quote = quote
        self.verify_digest = verify_digest
        self._http_client = http_client
        self._timeout = timeout
        self._metadata: Dict[str, SourceMetadata] = {}
        self._current: Dict[str, UserGroupMapping] = {}
        self.parse_count = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def has_read(self, locator: str) -> bool:
        return locator in self._current

    def current(self, locator: str) -> Optional[UserGroupMapping]:
        """Last successfully parsed mapping for ``locator``."""
        return self._current.get(locator)

    def metadata(self, locator: str) -> Optional[SourceMetadata]:
        return self._metadata.get(locator)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read(self, locator: str) -> ReadResult:
        """Return a fresh mapping, or :data:`UNCHANGED`.

        Raises:
            SourceNotFoundError: the source is missing or unreadable.
            SourceParseError: the content is malformed; the previous mapping
                is kept.
            FetchError: a network source that was read before is unreachable.
        """
        if not locator:
            raise ConfigurationError("User/group source is not configured")
        if is_url(locator):
            return self._read_url(locator)
        return self._read_file(locator)

    def is_changed(self, locator: str) -> bool:
        """Cheap check for local files: has the stat marker moved?"""
        previous = self._metadata.get(locator)
        if previous is None or is_url(locator):
            return True
        try:
            stat = os.stat(locator)
        except OSError:
            return True
        return (stat.st_mtime_ns, stat.st_size) != (previous.mtime_ns, previous.size)

    def _read_file(self, locator: str) -> ReadResult:
        path = Path(locator)
        if not path.is_file() or not os.access(path, os.R_OK):
            raise SourceNotFoundError(locator)

        previous = self._metadata.get(locator)
        stat = path.stat()
        same_stat = previous is not None and (stat.st_mtime_ns, stat.st_size) == (previous.mtime_ns, previous.size)
        if same_stat and not self.verify_digest:
            return UNCHANGED

        try:
            with path.open("rb") as fp:
                content = fp.read()
        except OSError as exc:
            raise SourceNotFoundError(locator, str(exc)) from exc

        digest = sha256(content).hexdigest()
        if same_stat and previous is not None and previous.sha256 == digest:
            return UNCHANGED

        mapping = self._parse(locator, content)
        return self._commit(
            locator,
            mapping,
            SourceMetadata(mtime_ns=stat.st_mtime_ns, size=stat.st_size, sha256=digest),
        )

    def _read_url(self, locator: str) -> ReadResult:
        previous = self._metadata.get(locator)
        headers: Dict[str, str] = {}
        if previous is not None:
            if previous.etag:
                headers["If-None-Match"] = f'"{previous.etag}"'
            if previous.last_modified:
                headers["If-Modified-Since"] = previous.last_modified

        try:
            if self._http_client is not None:
                resp = self._http_client.get(locator, headers=headers)
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    resp = client.get(locator, headers=headers)
        except httpx.HTTPError as exc:
            if not self.has_read(locator):
                raise SourceNotFoundError(locator, str(exc)) from exc
            raise FetchError(f"Unable to fetch user/group source {locator}: {exc}") from exc

        if resp.status_code == 304 and self.has_read(locator):
            return UNCHANGED

        if resp.status_code != 200:
            reason = f"HTTP {resp.status_code}"
            if not self.has_read(locator):
                raise SourceNotFoundError(locator, reason)
            raise FetchError(f"Unable to fetch user/group source {locator}: {reason}", status_code=resp.status_code)

        content = resp.content
        digest = sha256(content).hexdigest()
        if previous is not None and previous.sha256 == digest:
            return UNCHANGED

        mapping = self._parse(locator, content)
        return self._commit(
            locator,
            mapping,
            SourceMetadata(
                sha256=digest,
                size=len(content),
                etag=normalize_etag(resp.headers.get("ETag")),
                last_modified=resp.headers.get("Last-Modified"),
            ),
        )

    def _commit(self, locator: str, mapping: UserGroupMapping, metadata: SourceMetadata) -> UserGroupMapping:
        self._current[locator] = mapping
        self._metadata[locator] = metadata
        logger.info("usergroup.source.read", extra={"source": locator, "users": len(mapping)})
        return mapping

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _parse(self, locator: str, content: bytes) -> UserGroupMapping:
        self.parse_count += 1
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise SourceParseError(locator, f"not valid UTF-8 ({exc})") from exc

        if is_json_source(locator):
            mapping = self._parse_json(locator, text)
        else:
            mapping = self._parse_delimited(text)

        if logger.isEnabledFor(logging.DEBUG):
            for user, groups in mapping.items():
                logger.debug(f"USER: {user} GROUPS: {groups}")
        return mapping

    @staticmethod
    def _parse_json(locator: str, text: str) -> UserGroupMapping:
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            raise SourceParseError(locator, str(exc)) from exc

        if not isinstance(document, dict):
            raise SourceParseError(locator, "expected a JSON object of user → groups")

        mapping: UserGroupMapping = {}
        for user, groups in document.items():
            if groups is None:
                groups = []
            if not isinstance(groups, list) or not all(isinstance(g, str) for g in groups):
                raise SourceParseError(locator, f"groups for user '{user}' must be a list of strings")
            mapping[str(user)] = list(dict.fromkeys(g for g in groups if g))
        return mapping

    def _parse_delimited(self, text: str) -> UserGroupMapping:
        mapping: UserGroupMapping = {}
        reader = csv.reader(io.StringIO(text), delimiter=self.delimiter, quoting=csv.QUOTE_NONE)
        for row in reader:
            if not row or all(not field.strip() for field in row):
                continue
            user = strip_quotes(row[0], self.quote)
            if not user:
                logger.warning(f"Skipping user/group record without a user: {row}")
                continue
            groups: List[str] = []
            for field in row[1:]:
                group = strip_quotes(field, self.quote) if field else ""
                if group and group not in groups:
                    groups.append(group)
            mapping[user] = groups
        return mapping

    # ------------------------------------------------------------------
    # Sink
    # ------------------------------------------------------------------

    def update_sink(self, locator: str, sink: UserGroupSink) -> int:
        """Read ``locator`` and push every user to ``sink``; returns the count."""
        result = self.read(locator)
        mapping = self.current(locator) if result is UNCHANGED else result
        return push_to_sink(mapping or {}, sink)


def push_to_sink(mapping: UserGroupMapping, sink: UserGroupSink) -> int:
    for user, groups in mapping.items():
        sink.add_or_update_user(user, list(groups))
    return len(mapping)
