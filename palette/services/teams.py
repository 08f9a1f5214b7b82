"""
Team management: a shared credit pool with up to TEAM_MAX_MEMBERS members.

A user belongs to at most one team (unique membership per user). Members only
draw from the pool once they accept the invitation, at which point their
``users.team_id`` is set.
"""

import logging
from typing import Any

from palette.config.usage_limits import TEAM_MAX_MEMBERS, TEAM_POOL_CREDITS
from palette.db import teams as teams_db
from palette.db import users as users_db
from palette.services.credit_ledger import next_reset_at

logger = logging.getLogger(__name__)

ROLE_OWNER = "owner"
ROLE_ADMIN = "admin"
ROLE_MEMBER = "member"
MANAGER_ROLES = (ROLE_OWNER, ROLE_ADMIN)
INVITABLE_ROLES = (ROLE_ADMIN, ROLE_MEMBER)


class TeamError(Exception):
    """Base class for team management failures"""


class TeamNotFoundError(TeamError):
    pass


class TeamPermissionError(TeamError):
    pass


class TeamConflictError(TeamError):
    pass


def get_team_for_user(user_id: str) -> dict[str, Any] | None:
    """Team details, the caller's membership and the member list, or None."""
    membership = teams_db.get_membership(user_id)
    if membership is None:
        return None

    team = teams_db.get_team(membership["team_id"])
    if team is None:
        return None

    members = teams_db.list_members(team["id"])
    return {
        "team": {
            "id": team["id"],
            "name": team["name"],
            "owner_id": team["owner_id"],
            "credits_pool": team["credits_pool"],
            "credits_reset_at": team.get("credits_reset_at"),
            "member_count": len(members),
        },
        "membership": {
            "role": membership["role"],
            "joined_at": membership.get("accepted_at") or membership.get("invited_at"),
        },
        "members": [
            {
                "user_id": m["user_id"],
                "role": m["role"],
                "invited_at": m.get("invited_at"),
                "accepted_at": m.get("accepted_at"),
            }
            for m in members
        ],
    }


def create_team(owner_id: str, name: str) -> dict[str, Any]:
    """Create a team owned by ``owner_id`` with a fresh pool."""
    name = (name or "").strip()
    if not name:
        raise ValueError("Team name required")

    if teams_db.get_membership(owner_id) is not None:
        raise TeamConflictError("User already belongs to a team")

    team = teams_db.insert_team(name, owner_id, TEAM_POOL_CREDITS, next_reset_at())
    membership = teams_db.insert_membership(team["id"], owner_id, ROLE_OWNER, accepted=True)
    if membership is None:
        # Joined or created another team concurrently
        teams_db.delete_team(team["id"])
        raise TeamConflictError("User already belongs to a team")

    users_db.set_team(owner_id, team["id"])
    logger.info(f"Team {team['id']} created by {owner_id}")
    return team


def rename_team(user_id: str, name: str) -> dict[str, Any]:
    membership = teams_db.get_membership(user_id)
    if membership is None or membership["role"] not in MANAGER_ROLES:
        raise TeamPermissionError("Not authorized to update team")

    name = (name or "").strip()
    if not name:
        raise ValueError("Team name required")

    updated = teams_db.update_team(membership["team_id"], {"name": name})
    if updated is None:
        raise TeamNotFoundError("Team not found")
    return updated


def delete_team(owner_id: str) -> None:
    """Delete the caller's team, detaching every member first."""
    team = teams_db.get_team_by_owner(owner_id)
    if team is None:
        raise TeamPermissionError("Not authorized to delete team")

    users_db.clear_team_for_all(team["id"])
    teams_db.delete_memberships_for_team(team["id"])
    teams_db.delete_team(team["id"])
    logger.info(f"Team {team['id']} deleted by {owner_id}")


def invite_member(inviter_id: str, email: str, role: str = ROLE_MEMBER) -> dict[str, Any]:
    """
    Add a pending membership for an existing, teamless user.

    The member cap counts pending and accepted memberships. It is checked
    before the insert, so two simultaneous invites can overshoot it by one.
    """
    if not email:
        raise ValueError("Email required")
    if role not in INVITABLE_ROLES:
        raise ValueError(f"Invalid role: {role}")

    membership = teams_db.get_membership(inviter_id)
    if membership is None or membership["role"] not in MANAGER_ROLES:
        raise TeamPermissionError("Not authorized to invite members")

    team = teams_db.get_team(membership["team_id"])
    if team is None:
        raise TeamNotFoundError("Team not found")

    if len(teams_db.list_members(team["id"])) >= TEAM_MAX_MEMBERS:
        raise TeamConflictError(f"Team member limit reached ({TEAM_MAX_MEMBERS} members max)")

    invitee = users_db.get_user_by_email(email.lower())
    if invitee is None:
        raise TeamNotFoundError("User not found. They must create an account first.")

    created = teams_db.insert_membership(
        team["id"], invitee["external_id"], role, invited_by=inviter_id
    )
    if created is None:
        raise TeamConflictError("User is already part of a team")

    logger.info(f"{inviter_id} invited {invitee['external_id']} to team {team['id']}")
    return {
        "user_id": invitee["external_id"],
        "email": invitee.get("email"),
        "role": role,
        "status": "pending",
    }


def accept_invitation(user_id: str) -> dict[str, Any]:
    membership = teams_db.get_membership(user_id)
    if membership is None:
        raise TeamNotFoundError("No pending invitation found")
    if membership.get("accepted_at"):
        raise TeamConflictError("Already a member of this team")

    accepted = teams_db.mark_membership_accepted(user_id)
    if accepted is None:
        raise TeamConflictError("Already a member of this team")

    users_db.set_team(user_id, membership["team_id"])
    logger.info(f"{user_id} joined team {membership['team_id']}")
    return accepted


def update_member_role(owner_id: str, member_id: str, new_role: str) -> dict[str, Any]:
    if new_role not in INVITABLE_ROLES:
        raise ValueError(f"Invalid role: {new_role}")

    membership = teams_db.get_membership(owner_id)
    if membership is None or membership["role"] != ROLE_OWNER:
        raise TeamPermissionError("Only team owner can change roles")

    updated = teams_db.update_member_role(membership["team_id"], member_id, new_role)
    if updated is None:
        raise TeamNotFoundError("Member not found")
    return updated


def leave_team(user_id: str) -> None:
    membership = teams_db.get_membership(user_id)
    if membership is None:
        raise TeamNotFoundError("Not a member of any team")
    if membership["role"] == ROLE_OWNER:
        raise TeamConflictError("Owner cannot leave team. Transfer ownership or delete the team.")

    teams_db.delete_membership(membership["team_id"], user_id)
    users_db.set_team(user_id, None)
    logger.info(f"{user_id} left team {membership['team_id']}")


def remove_member(manager_id: str, member_id: str) -> None:
    manager = teams_db.get_membership(manager_id)
    if manager is None or manager["role"] not in MANAGER_ROLES:
        raise TeamPermissionError("Not authorized to remove members")

    target = teams_db.get_membership(member_id)
    if target is None or target["team_id"] != manager["team_id"]:
        raise TeamNotFoundError("Member not found")
    if target["role"] == ROLE_OWNER:
        raise TeamConflictError("Cannot remove team owner")
    if manager["role"] == ROLE_ADMIN and target["role"] == ROLE_ADMIN:
        raise TeamPermissionError("Admins cannot remove other admins")

    teams_db.delete_membership(manager["team_id"], member_id)
    users_db.set_team(member_id, None)
    logger.info(f"{manager_id} removed {member_id} from team {manager['team_id']}")
