"""Local read API – current policy snapshot, poller status and user/group map."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException, Response, status

from policy_agent.models import PollerStatus
from policy_agent.poller import ResilientPoller
from policy_agent.utils.dependencies import get_policy_poller, get_usergroup_poller
from policy_agent.utils.utils import normalize_etag

router = APIRouter(prefix="/v1/policy", tags=["policy"])
usergroup_router = APIRouter(prefix="/v1/usergroups", tags=["usergroups"])


@router.get("/snapshot")
async def get_policy_snapshot(
    if_none_match: str | None = Header(None, alias="If-None-Match"),
    poller: ResilientPoller = Depends(get_policy_poller),
):
    snapshot = poller.snapshot
    if snapshot is None:
        # Nothing fetched yet and no cache on disk
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="no_policy_snapshot")

    payload_bytes = snapshot.canonical_bytes()
    etag = snapshot.etag()
    headers = {"ETag": f'"{etag}"', "X-Policy-Poll-Seconds": str(poller.interval)}

    if if_none_match and normalize_etag(if_none_match) == etag:
        return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers=headers)

    return Response(content=payload_bytes, media_type="application/json", headers=headers)


@router.get("/status", response_model=PollerStatus)
async def get_policy_status(poller: ResilientPoller = Depends(get_policy_poller)):
    return poller.status()


@usergroup_router.get("")
async def get_usergroups(poller: ResilientPoller = Depends(get_usergroup_poller)):
    mapping = poller.snapshot
    if mapping is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="no_usergroup_mapping")
    return {"users": mapping}


@usergroup_router.get("/{user}")
async def get_user_groups(user: str, poller: ResilientPoller = Depends(get_usergroup_poller)):
    mapping = poller.snapshot or {}
    if user not in mapping:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown user '{user}'")
    return {"user": user, "groups": mapping[user]}
