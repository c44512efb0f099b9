import json

import httpx
import pytest

from policy_agent.errors import FetchError, SourceNotFoundError
from policy_agent.fetcher import RemotePolicyFetcher, UserGroupSyncFetcher
from policy_agent.models import UNCHANGED, KEYSTORE_ALIAS, SecureChannelConfig
from policy_agent.utils.credentials import StaticSecretResolver
from policy_agent.utils.source_reader import UserGroupSourceReader
from policy_agent.utils.ssl_helper import SecureChannelBuilder
from tests.conftest import build_snapshot

URL = "http://authority.example/v1/policy/hadoopdev"


def _transport(*responses, seen=None):
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        result = queue.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    return httpx.MockTransport(handler)


def _document(snapshot):
    return json.loads(snapshot.canonical_bytes())


@pytest.mark.asyncio
async def test_fetch_then_not_modified():
    seen = []
    snapshot = build_snapshot()
    transport = _transport(
        httpx.Response(200, json=_document(snapshot), headers={"ETag": '"abc"'}),
        httpx.Response(304),
        seen=seen,
    )
    fetcher = RemotePolicyFetcher(URL, transport=transport)

    assert await fetcher.fetch() == snapshot
    assert fetcher.etag == "abc"
    assert await fetcher.fetch() is UNCHANGED
    assert seen[1].headers["if-none-match"] == '"abc"'


@pytest.mark.asyncio
async def test_nested_policy_document():
    snapshot = build_snapshot()
    fetcher = RemotePolicyFetcher(URL, transport=_transport(httpx.Response(200, json={"policy": _document(snapshot)})))

    assert await fetcher.fetch() == snapshot


@pytest.mark.asyncio
async def test_camel_case_document():
    document = {
        "repositoryName": "hadoopdev",
        "acl": [
            {
                "resource": "/demo/data",
                "recursiveInd": 1,
                "policyStatus": "Enabled",
                "auditInd": 1,
                "permissions": [
                    {"accessTypes": ["read"], "users": ["guest"], "groups": ["sales"], "ipAddress": ["10.0.0.1"]}
                ],
            }
        ],
    }
    fetcher = RemotePolicyFetcher(URL, transport=_transport(httpx.Response(200, json=document)))

    snapshot = await fetcher.fetch()

    assert snapshot == build_snapshot(access=["read"], ip_addresses=["10.0.0.1"])
    assert snapshot.acl[0].enabled


@pytest.mark.asyncio
async def test_disabled_rule_is_kept_but_not_enabled():
    document = _document(build_snapshot(enabled=False))
    fetcher = RemotePolicyFetcher(URL, transport=_transport(httpx.Response(200, json=document)))

    snapshot = await fetcher.fetch()

    assert not snapshot.acl[0].enabled


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="boom"),
        httpx.Response(200, content=b"{not json", headers={"Content-Type": "application/json"}),
        httpx.Response(200, json=[1, 2]),
        httpx.Response(200, json={"acl": []}),
        httpx.Response(200, json={"repository_name": "  "}),
        httpx.ConnectError("connection refused"),
    ],
)
async def test_failures_surface_as_fetch_error(response):
    fetcher = RemotePolicyFetcher(URL, transport=_transport(response))

    with pytest.raises(FetchError):
        await fetcher.fetch()
    assert fetcher.etag is None


@pytest.mark.asyncio
async def test_http_status_is_reported():
    fetcher = RemotePolicyFetcher(URL, transport=_transport(httpx.Response(503)))

    with pytest.raises(FetchError) as excinfo:
        await fetcher.fetch()
    assert excinfo.value.status_code == 503


@pytest.mark.asyncio
async def test_https_without_usable_stores_fails_before_connecting(keystore_file, truststore_file):
    seen = []
    config = SecureChannelConfig(keystore_path=str(keystore_file), truststore_path=str(truststore_file))
    builder = SecureChannelBuilder(StaticSecretResolver({KEYSTORE_ALIAS: "changeit"}))
    fetcher = RemotePolicyFetcher(
        "https://authority.example/policy", builder, config, transport=_transport(seen=seen)
    )

    with pytest.raises(FetchError):
        await fetcher.fetch()
    assert seen == []


# ---------------------------------------------------------------------------
# User/group fetcher
# ---------------------------------------------------------------------------


def test_prime_raises_when_source_missing(tmp_path):
    fetcher = UserGroupSyncFetcher(UserGroupSourceReader(), str(tmp_path / "absent.csv"))

    with pytest.raises(SourceNotFoundError):
        fetcher.prime()


@pytest.mark.asyncio
async def test_usergroup_fetch_after_prime(tmp_path):
    path = tmp_path / "users.csv"
    path.write_text("alice,grpA\n")
    fetcher = UserGroupSyncFetcher(UserGroupSourceReader(), str(path))

    assert fetcher.prime() == {"alice": ["grpA"]}
    assert await fetcher.fetch() is UNCHANGED

    path.unlink()
    with pytest.raises(FetchError):
        await fetcher.fetch()


@pytest.mark.asyncio
async def test_usergroup_parse_error_is_transient(tmp_path):
    path = tmp_path / "users.json"
    path.write_text('{"alice": ["grpA"]}')
    fetcher = UserGroupSyncFetcher(UserGroupSourceReader(), str(path))
    fetcher.prime()

    path.write_text('{"alice": "not-a-list", "bob": []}')

    with pytest.raises(FetchError):
        await fetcher.fetch()
