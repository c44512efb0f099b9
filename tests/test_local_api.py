import pytest
from fastapi.testclient import TestClient

from policy_agent.main import create_app
from policy_agent.poller import ResilientPoller
from policy_agent.settings import AgentSettings
from tests.conftest import ScriptedFetcher, build_snapshot


def _client(policy_snapshot=None, mapping=None, with_policy=True):
    policy_poller = ResilientPoller(ScriptedFetcher(), 15, initial=policy_snapshot) if with_policy else None
    usergroup_poller = (
        ResilientPoller(ScriptedFetcher(), 15, initial=mapping, name="usergroup") if mapping is not None else None
    )
    app = create_app(
        settings=AgentSettings(),
        policy_poller=policy_poller,
        usergroup_poller=usergroup_poller,
        start_pollers=False,
    )
    return TestClient(app)


def test_health():
    with _client() as client:
        assert client.get("/").json() == {"status": "ok"}


def test_snapshot_unavailable_before_first_fetch():
    with _client() as client:
        resp = client.get("/v1/policy/snapshot")

    assert resp.status_code == 503
    assert resp.json()["detail"] == "no_policy_snapshot"


def test_snapshot_served_with_etag():
    snapshot = build_snapshot()

    with _client(snapshot) as client:
        resp = client.get("/v1/policy/snapshot")

    assert resp.status_code == 200
    assert resp.content == snapshot.canonical_bytes()
    assert resp.headers["ETag"] == f'"{snapshot.etag()}"'
    assert resp.headers["X-Policy-Poll-Seconds"] == "15.0"


@pytest.mark.parametrize("header", ['"{etag}"', 'W/"{etag}"', "{etag}"])
def test_snapshot_not_modified(header):
    snapshot = build_snapshot()

    with _client(snapshot) as client:
        resp = client.get("/v1/policy/snapshot", headers={"If-None-Match": header.format(etag=snapshot.etag())})

    assert resp.status_code == 304
    assert resp.content == b""


def test_stale_etag_gets_full_body():
    with _client(build_snapshot()) as client:
        resp = client.get("/v1/policy/snapshot", headers={"If-None-Match": '"stale"'})

    assert resp.status_code == 200


def test_status():
    snapshot = build_snapshot()

    with _client(snapshot) as client:
        body = client.get("/v1/policy/status").json()

    assert body["has_snapshot"] is True
    assert body["etag"] == snapshot.etag()
    assert body["interval_seconds"] == 15.0
    assert body["consecutive_failures"] == 0


def test_policy_poller_not_configured():
    with _client(with_policy=False) as client:
        resp = client.get("/v1/policy/snapshot")

    assert resp.status_code == 503
    assert resp.json()["detail"] == "policy_poller_not_configured"


def test_usergroups():
    mapping = {"alice": ["grpA", "grpB"], "bob": ["grpA"]}

    with _client(mapping=mapping) as client:
        assert client.get("/v1/usergroups").json() == {"users": mapping}
        assert client.get("/v1/usergroups/alice").json() == {"user": "alice", "groups": ["grpA", "grpB"]}
        assert client.get("/v1/usergroups/zed").status_code == 404


def test_usergroups_not_configured():
    with _client() as client:
        assert client.get("/v1/usergroups").status_code == 503
