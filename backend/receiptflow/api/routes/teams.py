"""API routes for teams and their members.

Team size is bounded by the owning account's tier (``max_users``).
"""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from receiptflow.api.dependencies import (
    get_entitlement_service,
    get_subscription_service,
    get_team_actor,
)
from receiptflow.core.database import get_db
from receiptflow.core.exceptions import ClaimPermissionError, RemoteUnavailableError, ValidationError
from receiptflow.core.security import AuthenticatedAccount, get_current_account
from receiptflow.models.enums import TeamRole
from receiptflow.models.schemas import Actor, TeamCreate, TeamMemberAdd
from receiptflow.models.tables import Team, TeamMember
from receiptflow.services.entitlement_service import EntitlementService
from receiptflow.services.subscription_service import SubscriptionService

router = APIRouter(prefix="/teams", tags=["teams"])


@router.get("", response_model=List[dict])
async def list_teams(
    db: AsyncSession = Depends(get_db),
    principal: AuthenticatedAccount = Depends(get_current_account),
) -> List[dict]:
    """Return the teams the current account belongs to, with its role in each."""
    result = await db.execute(
        select(Team, TeamMember.role)
        .join(TeamMember, TeamMember.team_id == Team.id)
        .where(TeamMember.user_id == principal.account_id)
        .order_by(Team.created_at)
    )
    return [
        {"id": team.id, "name": team.name, "owner_id": team.owner_id, "role": role.value}
        for team, role in result.all()
    ]


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_team(
    body: TeamCreate,
    db: AsyncSession = Depends(get_db),
    principal: AuthenticatedAccount = Depends(get_current_account),
) -> dict:
    """Create a team owned by the current account, which joins as owner."""
    team = Team(name=body.name, owner_id=principal.account_id)
    try:
        db.add(team)
        await db.flush()
        db.add(TeamMember(team_id=team.id, user_id=principal.account_id, role=TeamRole.OWNER))
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise RemoteUnavailableError(details={"operation": "create_team"}) from e
    return {"id": team.id, "name": team.name, "owner_id": team.owner_id, "role": TeamRole.OWNER.value}


@router.post("/{team_id}/members", response_model=dict, status_code=status.HTTP_201_CREATED)
async def add_team_member(
    team_id: str,
    body: TeamMemberAdd,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_team_actor),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
    evaluator: EntitlementService = Depends(get_entitlement_service),
) -> dict:
    """Add a member; owners and admins only, within the owner's tier limit."""
    if not actor.can_approve_for(team_id):
        raise ClaimPermissionError("Only team owners and admins can add members", {"team_id": team_id})
    if body.role is TeamRole.OWNER:
        raise ClaimPermissionError("A team has exactly one owner", {"team_id": team_id})
    existing = await db.execute(
        select(TeamMember.user_id).where(TeamMember.team_id == team_id, TeamMember.user_id == body.user_id)
    )
    if existing.scalar_one_or_none() is not None:
        raise ValidationError("User is already a member of this team", field="user_id")
    owner_sub = await subscriptions.get_subscription_for_team(db, team_id)
    evaluator.require(evaluator.check_add_team_member(owner_sub))
    try:
        db.add(TeamMember(team_id=team_id, user_id=body.user_id, role=body.role))
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise RemoteUnavailableError(details={"operation": "add_team_member"}) from e
    return {"team_id": team_id, "user_id": body.user_id, "role": body.role.value}
