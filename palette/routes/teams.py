#!/usr/bin/env python3
"""
Team Routes
Create, rename and delete a team; invite, accept, change roles, leave and
remove members.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from palette.security.deps import get_current_user_id
from palette.services import teams as team_service
from palette.utils.exceptions import APIExceptions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/teams", tags=["Teams"])


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================


class TeamNameRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class InviteMemberRequest(BaseModel):
    email: str = Field(..., min_length=3)
    role: Literal["admin", "member"] = "member"


class MemberActionRequest(BaseModel):
    """``accept`` a pending invitation, or ``update_role`` of a member (owner only)"""

    action: Literal["accept", "update_role"]
    member_id: str | None = None
    new_role: Literal["admin", "member"] | None = None


async def _run(func: Callable[..., Any], *args) -> Any:
    """Run a team service call off the event loop, mapping its errors to HTTP."""
    try:
        return await asyncio.to_thread(func, *args)
    except ValueError as e:
        raise APIExceptions.bad_request(str(e)) from e
    except team_service.TeamPermissionError as e:
        raise APIExceptions.forbidden(str(e)) from e
    except team_service.TeamNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except team_service.TeamConflictError as e:
        raise APIExceptions.conflict(str(e)) from e


# =============================================================================
# TEAM ENDPOINTS
# =============================================================================


@router.get("")
async def get_team(user_id: str = Depends(get_current_user_id)):
    team = await _run(team_service.get_team_for_user, user_id)
    if team is None:
        return {"success": True, "team": None, "message": "Not part of any team"}
    return {"success": True, **team}


@router.post("")
async def create_team(body: TeamNameRequest, user_id: str = Depends(get_current_user_id)):
    team = await _run(team_service.create_team, user_id, body.name)
    return {"success": True, "team": team, "message": "Team created"}


@router.patch("")
async def rename_team(body: TeamNameRequest, user_id: str = Depends(get_current_user_id)):
    team = await _run(team_service.rename_team, user_id, body.name)
    return {"success": True, "team": team}


@router.delete("")
async def delete_team(user_id: str = Depends(get_current_user_id)):
    await _run(team_service.delete_team, user_id)
    return {"success": True}


# =============================================================================
# MEMBER ENDPOINTS
# =============================================================================


@router.post("/members")
async def invite_member(body: InviteMemberRequest, user_id: str = Depends(get_current_user_id)):
    member = await _run(team_service.invite_member, user_id, body.email, body.role)
    return {"success": True, "member": member, "message": "Invitation sent"}


@router.patch("/members")
async def update_membership(
    body: MemberActionRequest, user_id: str = Depends(get_current_user_id)
):
    if body.action == "accept":
        await _run(team_service.accept_invitation, user_id)
        return {"success": True, "message": "Joined team"}

    if not body.member_id or not body.new_role:
        raise APIExceptions.bad_request("member_id and new_role are required")
    member = await _run(team_service.update_member_role, user_id, body.member_id, body.new_role)
    return {"success": True, "member": member}


@router.delete("/members")
async def remove_member(
    member_id: str | None = Query(default=None, description="Omit to leave the team"),
    user_id: str = Depends(get_current_user_id),
):
    if not member_id or member_id == user_id:
        await _run(team_service.leave_team, user_id)
        return {"success": True, "message": "Left team"}

    await _run(team_service.remove_member, user_id, member_id)
    return {"success": True, "message": "Member removed"}
