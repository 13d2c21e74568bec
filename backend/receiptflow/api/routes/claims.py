"""API routes for team reimbursement claims."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import List, Optional

import pydantic
from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from receiptflow.api.dependencies import get_claim_service, get_team_actor, resolve_actor
from receiptflow.core.database import get_db
from receiptflow.core.exceptions import ClaimPermissionError, ValidationError
from receiptflow.core.security import AuthenticatedAccount, get_current_account
from receiptflow.models.enums import ClaimPriority, ClaimStatus
from receiptflow.models.schemas import (
    Actor,
    Claim,
    ClaimAuditEntry,
    ClaimFilters,
    ClaimPage,
    ClaimRead,
    ClaimStats,
    CreateClaimRequest,
    TransitionRequest,
    UpdateClaimRequest,
)
from receiptflow.services.claim_lifecycle import allowed_events
from receiptflow.services.claim_service import ClaimService

router = APIRouter(tags=["claims"])


def _require_member(actor: Actor) -> None:
    if actor.role is None:
        raise ClaimPermissionError(
            "Team membership is required", {"team_id": actor.team_id, "actor_id": actor.user_id}
        )


def _read(claim: Claim, actor: Actor) -> ClaimRead:
    return ClaimRead(**claim.model_dump(), allowed_events=allowed_events(claim, actor))


async def _claim_and_actor(
    claim_id: str, db: AsyncSession, principal: AuthenticatedAccount, service: ClaimService
) -> tuple[Claim, Actor]:
    claim = await service.get_claim(claim_id)
    actor = await resolve_actor(db, principal, claim.team_id)
    _require_member(actor)
    return claim, actor


@router.post("/teams/{team_id}/claims", response_model=ClaimRead, status_code=status.HTTP_201_CREATED)
async def create_claim(
    team_id: str,
    body: CreateClaimRequest,
    actor: Actor = Depends(get_team_actor),
    service: ClaimService = Depends(get_claim_service),
) -> ClaimRead:
    claim = await service.create_claim(actor, body, team_id=team_id)
    return _read(claim, actor)


@router.get("/teams/{team_id}/claims", response_model=ClaimPage)
async def list_claims(
    team_id: str,
    status_: Optional[ClaimStatus] = Query(default=None, alias="status"),
    creator_id: Optional[str] = None,
    category: Optional[str] = None,
    priority: Optional[ClaimPriority] = None,
    date_from: Optional[dt.datetime] = None,
    date_to: Optional[dt.datetime] = None,
    amount_min: Optional[Decimal] = None,
    amount_max: Optional[Decimal] = None,
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
    offset: int = 0,
    actor: Actor = Depends(get_team_actor),
    service: ClaimService = Depends(get_claim_service),
) -> ClaimPage:
    """Claims of a team, newest first.  Pass ``next_cursor`` back as ``cursor`` for the next page."""
    _require_member(actor)
    try:
        filters = ClaimFilters(
            status=status_,
            team_id=team_id,
            creator_id=creator_id,
            category=category,
            priority=priority,
            date_from=date_from,
            date_to=date_to,
            amount_min=amount_min,
            amount_max=amount_max,
        )
    except pydantic.ValidationError as e:
        raise ValidationError("Invalid claim filters", details={"errors": e.errors(include_url=False, include_context=False)}) from e
    return await service.list_claims(filters, limit=limit, cursor=cursor, offset=offset)


@router.get("/teams/{team_id}/claims/stats", response_model=ClaimStats)
async def team_claim_stats(
    team_id: str,
    actor: Actor = Depends(get_team_actor),
    service: ClaimService = Depends(get_claim_service),
) -> ClaimStats:
    _require_member(actor)
    return await service.team_claim_stats(team_id)


@router.get("/claims/{claim_id}", response_model=ClaimRead)
async def get_claim(
    claim_id: str,
    db: AsyncSession = Depends(get_db),
    principal: AuthenticatedAccount = Depends(get_current_account),
    service: ClaimService = Depends(get_claim_service),
) -> ClaimRead:
    claim, actor = await _claim_and_actor(claim_id, db, principal, service)
    return _read(claim, actor)


@router.patch("/claims/{claim_id}", response_model=ClaimRead)
async def update_claim(
    claim_id: str,
    body: UpdateClaimRequest,
    db: AsyncSession = Depends(get_db),
    principal: AuthenticatedAccount = Depends(get_current_account),
    service: ClaimService = Depends(get_claim_service),
) -> ClaimRead:
    _, actor = await _claim_and_actor(claim_id, db, principal, service)
    claim = await service.update_claim(claim_id, actor, body.changes(), body.expected_version)
    return _read(claim, actor)


@router.delete("/claims/{claim_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_claim(
    claim_id: str,
    db: AsyncSession = Depends(get_db),
    principal: AuthenticatedAccount = Depends(get_current_account),
    service: ClaimService = Depends(get_claim_service),
) -> Response:
    _, actor = await _claim_and_actor(claim_id, db, principal, service)
    await service.delete_claim(claim_id, actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/claims/{claim_id}/transitions", response_model=ClaimRead)
async def transition_claim(
    claim_id: str,
    body: TransitionRequest,
    db: AsyncSession = Depends(get_db),
    principal: AuthenticatedAccount = Depends(get_current_account),
    service: ClaimService = Depends(get_claim_service),
) -> ClaimRead:
    """Apply a lifecycle event.  A 409 STALE_STATE means the claim must be re-read first."""
    _, actor = await _claim_and_actor(claim_id, db, principal, service)
    claim = await service.transition(claim_id, body.event, actor, body.expected_version, reason=body.reason)
    return _read(claim, actor)


@router.get("/claims/{claim_id}/audit-trail", response_model=List[ClaimAuditEntry])
async def claim_audit_trail(
    claim_id: str,
    db: AsyncSession = Depends(get_db),
    principal: AuthenticatedAccount = Depends(get_current_account),
    service: ClaimService = Depends(get_claim_service),
) -> List[ClaimAuditEntry]:
    await _claim_and_actor(claim_id, db, principal, service)
    return await service.audit_trail(claim_id)
