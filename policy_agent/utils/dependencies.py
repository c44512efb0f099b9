"""Factories wiring settings into pollers, plus FastAPI dependency providers."""

from __future__ import annotations

from typing import List, Optional

import httpx
from fastapi import HTTPException, Request, status

from policy_agent.errors import ConfigurationError
from policy_agent.fetcher import RemotePolicyFetcher, UserGroupSyncFetcher
from policy_agent.models import PolicySnapshot, UserGroupMapping, UserGroupSink
from policy_agent.poller import ResilientPoller
from policy_agent.settings import AgentSettings
from policy_agent.utils.cache_store import PolicyCacheStore
from policy_agent.utils.credentials import FileSecretResolver, SecretResolver
from policy_agent.utils.logger import logger
from policy_agent.utils.source_reader import UserGroupSourceReader, push_to_sink
from policy_agent.utils.ssl_helper import SecureChannelBuilder

__all__ = [
    "SinkListener",
    "LoggingSink",
    "build_policy_poller",
    "build_usergroup_poller",
    "get_policy_poller",
    "get_usergroup_poller",
]


class SinkListener:
    """Change listener pushing every user of a new mapping into a sink."""

    def __init__(self, sink: UserGroupSink) -> None:
        self._sink = sink

    def on_change(self, mapping: UserGroupMapping) -> None:
        count = push_to_sink(mapping, self._sink)
        logger.info(f"Pushed {count} users to {type(self._sink).__name__}")


class LoggingSink:
    """Sink that only logs; handy for dry runs of the user/group sync."""

    def add_or_update_user(self, user: str, groups: List[str]) -> None:
        logger.info("usergroup.sink.update", extra={"user": user, "groups": groups})


def build_policy_poller(
    settings: AgentSettings,
    *,
    resolver: SecretResolver | None = None,
    listener=None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ResilientPoller[PolicySnapshot]:
    if not settings.policy_url:
        raise ConfigurationError("POLICY_AGENT_POLICY_URL is not configured")

    builder = SecureChannelBuilder(resolver or FileSecretResolver())
    fetcher = RemotePolicyFetcher(
        settings.policy_url,
        builder,
        settings.channel_config(),
        timeout=settings.http_timeout,
        transport=transport,
    )
    return ResilientPoller(
        fetcher,
        settings.poll_seconds,
        cache_store=PolicyCacheStore(settings.cache_file),
        listener=listener,
        name="policy",
    )


def build_usergroup_poller(
    settings: AgentSettings,
    sink: UserGroupSink,
    *,
    reader: UserGroupSourceReader | None = None,
) -> ResilientPoller[UserGroupMapping]:
    """Read the user/group source once, push it, and return its poller.

    Raises:
        ConfigurationError: the source is not configured or cannot be read.
    """
    if not settings.usergroup_file:
        raise ConfigurationError(
            "User/group source file is not configured; set POLICY_AGENT_USERGROUP_FILE"
        )

    reader = reader or UserGroupSourceReader(delimiter=settings.usergroup_delimiter, timeout=settings.http_timeout)
    fetcher = UserGroupSyncFetcher(reader, settings.usergroup_file)
    initial = fetcher.prime()
    push_to_sink(initial, sink)
    return ResilientPoller(
        fetcher,
        settings.poll_seconds,
        listener=SinkListener(sink),
        initial=initial,
        name="usergroup",
    )


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def _poller_from_state(request: Request, attr: str, detail: str) -> ResilientPoller:
    poller: Optional[ResilientPoller] = getattr(request.app.state, attr, None)
    if poller is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)
    return poller


async def get_policy_poller(request: Request) -> ResilientPoller[PolicySnapshot]:
    return _poller_from_state(request, "policy_poller", "policy_poller_not_configured")


async def get_usergroup_poller(request: Request) -> ResilientPoller[UserGroupMapping]:
    return _poller_from_state(request, "usergroup_poller", "usergroup_poller_not_configured")
