"""Fetchers the poller drives: remote policy download and local user/group reads.

A fetcher exposes ``async fetch()`` returning fresh state, or ``UNCHANGED``
when the source says nothing moved.  Anything that goes wrong is raised as
:class:`FetchError`; the poller treats it as transient.
"""

from __future__ import annotations

import asyncio
import ssl
from typing import Any, Dict, Optional, Union
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from policy_agent.errors import FetchError, SourceNotFoundError, SourceParseError
from policy_agent.models import UNCHANGED, PolicySnapshot, SecureChannelConfig, UserGroupMapping
from policy_agent.utils.logger import logger
from policy_agent.utils.source_reader import UserGroupSourceReader
from policy_agent.utils.ssl_helper import SecureChannelBuilder, verify_hostname
from policy_agent.utils.utils import normalize_etag

__all__ = ["RemotePolicyFetcher", "UserGroupSyncFetcher"]


class RemotePolicyFetcher:
    """GET the policy document from the remote authority.

    The TLS context is built once from ``channel_config`` and reused; if it
    cannot be built the next fetch tries again.  Conditional requests use the
    last ``ETag`` the server sent.
    """

    def __init__(
        self,
        url: str,
        channel_builder: SecureChannelBuilder | None = None,
        channel_config: SecureChannelConfig | None = None,
        *,
        timeout: float = 10.0,
        headers: Dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self._builder = channel_builder
        self._config = channel_config or SecureChannelConfig()
        self._timeout = timeout
        self._headers = dict(headers or {})
        self._transport = transport
        self._context: Optional[ssl.SSLContext] = None
        self.etag: Optional[str] = None

    @property
    def is_tls(self) -> bool:
        return urlparse(self.url).scheme == "https"

    def reset_channel(self) -> None:
        """Drop the cached TLS context so the stores are re-read on next fetch."""
        self._context = None

    def _verify(self) -> Union[ssl.SSLContext, bool]:
        if not self.is_tls or self._builder is None:
            return True
        if self._context is None:
            self._context = self._builder.build_context(self._config)
        if self._context is None:
            raise FetchError("Secure channel unavailable: TLS context could not be built")
        return self._context

    def _check_peer(self, resp: httpx.Response) -> None:
        if not (self.is_tls and self._builder is not None and self._config.mutual_tls):
            return
        stream = resp.extensions.get("network_stream")
        ssl_object = stream.get_extra_info("ssl_object") if stream is not None else None
        if ssl_object is None:
            return
        host = urlparse(self.url).hostname or ""
        if not self._builder.hostname_verifier(host, ssl_object.getpeercert()):
            raise FetchError(f"Peer certificate does not match host '{host}'")

    async def fetch(self) -> Union[PolicySnapshot, Any]:
        verify = self._verify()

        headers = {"Accept": "application/json", **self._headers}
        if self.etag:
            headers["If-None-Match"] = f'"{self.etag}"'

        try:
            async with httpx.AsyncClient(timeout=self._timeout, verify=verify, transport=self._transport) as client:
                resp = await client.get(self.url, headers=headers)
                self._check_peer(resp)
        except httpx.HTTPError as exc:
            raise FetchError(f"Unable to reach policy authority at {self.url}: {exc}") from exc

        if resp.status_code == 304:
            return UNCHANGED

        if resp.status_code != 200:
            raise FetchError(
                f"Policy authority returned HTTP {resp.status_code} for {self.url}",
                status_code=resp.status_code,
            )

        try:
            document = resp.json()
        except ValueError as exc:
            raise FetchError(f"Policy authority returned a malformed body: {exc}") from exc

        if not isinstance(document, dict):
            raise FetchError("Policy authority returned a non-object document")

        try:
            snapshot = PolicySnapshot.from_document(document)
        except ValidationError as exc:
            raise FetchError(f"Policy document failed validation: {exc}") from exc

        self.etag = normalize_etag(resp.headers.get("ETag"))
        logger.debug(f"Fetched policy for {snapshot.repository_name} ({len(snapshot.acl)} rules)")
        return snapshot


class UserGroupSyncFetcher:
    """Adapt :class:`UserGroupSourceReader` to the poller's fetcher contract.

    Call :meth:`prime` once at startup: a source that cannot be read even
    once is a configuration error and must stop the agent.  After that, read
    and parse failures surface as :class:`FetchError` and the last good
    mapping keeps being served.
    """

    def __init__(self, reader: UserGroupSourceReader, locator: str) -> None:
        self._reader = reader
        self.locator = locator

    def prime(self) -> UserGroupMapping:
        result = self._reader.read(self.locator)
        if result is UNCHANGED:
            return self._reader.current(self.locator) or {}
        return result

    async def fetch(self) -> Union[UserGroupMapping, Any]:
        try:
            return await asyncio.to_thread(self._reader.read, self.locator)
        except SourceNotFoundError as exc:
            if not self._reader.has_read(self.locator):
                raise
            raise FetchError(exc.message) from exc
        except SourceParseError as exc:
            logger.error(exc.message)
            raise FetchError(exc.message) from exc
