"""Common dependencies for FastAPI routes.

Token verification lives in :mod:`receiptflow.core.security`; this module
turns the authenticated account into an :class:`Actor` for a team by
looking up its membership role, and hands out request-scoped services.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from receiptflow.core.database import get_db
from receiptflow.core.exceptions import RemoteUnavailableError
from receiptflow.core.security import AuthenticatedAccount, get_current_account
from receiptflow.models.schemas import Actor
from receiptflow.models.tables import TeamMember
from receiptflow.services.claim_service import ClaimService
from receiptflow.services.entitlement_service import EntitlementService
from receiptflow.services.subscription_service import SubscriptionService


async def resolve_actor(db: AsyncSession, principal: AuthenticatedAccount, team_id: Optional[str]) -> Actor:
    """Actor for ``principal`` within ``team_id``; role is None for non-members."""
    if not team_id:
        return Actor(user_id=principal.account_id)
    try:
        result = await db.execute(
            select(TeamMember.role).where(
                TeamMember.team_id == team_id,
                TeamMember.user_id == principal.account_id,
            )
        )
        role = result.scalar_one_or_none()
    except SQLAlchemyError as e:
        await db.rollback()
        raise RemoteUnavailableError(details={"operation": "resolve_actor"}) from e
    return Actor(user_id=principal.account_id, team_id=team_id, role=role)


async def get_team_actor(
    team_id: str,
    db: AsyncSession = Depends(get_db),
    principal: AuthenticatedAccount = Depends(get_current_account),
) -> Actor:
    return await resolve_actor(db, principal, team_id)


def get_claim_service(db: AsyncSession = Depends(get_db)) -> ClaimService:
    return ClaimService(db)


def get_subscription_service() -> SubscriptionService:
    return SubscriptionService()


def get_entitlement_service() -> EntitlementService:
    return EntitlementService()
