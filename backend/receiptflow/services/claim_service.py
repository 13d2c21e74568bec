"""Store-backed claim operations.

``ClaimService`` wraps one request-scoped :class:`AsyncSession`.  It
applies the pure rules from :mod:`receiptflow.services.claim_lifecycle`
and persists the outcome:

- transitions and edits are written with a conditional UPDATE on
  ``(id, version, status)``; zero affected rows means someone else changed
  the claim first and :class:`StaleStateConflictError` is raised,
- the claim update and its audit-trail row are committed together or not
  at all,
- store failures surface as :class:`RemoteUnavailableError`, except for
  team statistics which degrade to ``ClaimStats.unavailable()``.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from receiptflow.core.exceptions import (
    ClaimPermissionError,
    InvalidTransitionError,
    NotFoundError,
    RemoteUnavailableError,
    StaleStateConflictError,
)
from receiptflow.core.observability import sentry_breadcrumb
from receiptflow.models import tables
from receiptflow.models.enums import ClaimEvent, ClaimStatus, TeamRole
from receiptflow.models.schemas import (
    Actor,
    Claim,
    ClaimAuditEntry,
    ClaimFilters,
    ClaimPage,
    ClaimStats,
    CreateClaimRequest,
)
from receiptflow.services import claim_lifecycle
from receiptflow.services.cache import get_team_stats, invalidate_team_stats, store_team_stats
from receiptflow.utils.helpers import encode_cursor, ensure_utc, utcnow

logger = logging.getLogger(__name__)

# Columns written back after a transition or edit
_MUTABLE_COLUMNS = (
    "title",
    "description",
    "amount",
    "currency",
    "category",
    "priority",
    "status",
    "updated_at",
    "submitted_at",
    "reviewed_at",
    "approver_id",
    "rejection_reason",
    "version",
)


class ClaimService:
    """Claim persistence on top of the pure lifecycle rules."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @asynccontextmanager
    async def _unit_of_work(self, operation: str):
        """Commit on success; roll back on any failure or cancellation."""
        try:
            yield
            await self.db.commit()
        except (SQLAlchemyError, OSError) as e:
            await self.db.rollback()
            logger.warning("Claim store %s failed: %s", operation, e)
            raise RemoteUnavailableError(details={"operation": operation}) from e
        except BaseException:
            await self.db.rollback()
            raise

    async def _load(self, claim_id: str) -> Claim:
        try:
            result = await self.db.execute(
                select(tables.Claim)
                .where(tables.Claim.id == claim_id)
                .execution_options(populate_existing=True)
            )
            row = result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as e:
            await self.db.rollback()
            raise RemoteUnavailableError(details={"operation": "load"}) from e
        if row is None:
            raise NotFoundError("Claim not found", {"claim_id": claim_id})
        return Claim.model_validate(row)

    def _audit(self, claim: Claim, actor: Actor, action: str, from_status: Optional[ClaimStatus], reason: Optional[str] = None):
        self.db.add(
            tables.ClaimAuditTrail(
                claim_id=claim.id,
                actor_id=actor.user_id,
                action=action,
                from_status=from_status,
                to_status=claim.status,
                reason=reason,
                version=claim.version,
                created_at=claim.updated_at,
            )
        )

    async def _write_if_unchanged(self, before: Claim, after: Claim) -> None:
        values = {name: getattr(after, name) for name in _MUTABLE_COLUMNS}
        result = await self.db.execute(
            update(tables.Claim)
            .where(
                tables.Claim.id == before.id,
                tables.Claim.version == before.version,
                tables.Claim.status == before.status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise StaleStateConflictError(before.id, before.version)

    # --- Create / read -------------------------------------------------
    async def create_claim(self, actor: Actor, request: CreateClaimRequest, team_id: Optional[str] = None) -> Claim:
        team_id = team_id or actor.team_id
        claim_lifecycle.validate_new_claim(request)
        if not team_id or actor.team_id != team_id or actor.role in (None, TeamRole.VIEWER):
            raise ClaimPermissionError(
                "Team membership is required to create claims",
                {"team_id": team_id, "actor_id": actor.user_id},
            )
        now = utcnow()
        claim = Claim(
            id=uuid.uuid4().hex,
            team_id=team_id,
            creator_id=actor.user_id,
            title=request.title,
            description=request.description,
            amount=request.amount,
            currency=request.currency,
            category=request.category,
            priority=request.priority,
            status=ClaimStatus.DRAFT,
            created_at=now,
            updated_at=now,
            version=1,
        )
        async with self._unit_of_work("create"):
            self.db.add(tables.Claim(**claim.model_dump()))
            self._audit(claim, actor, "create", None)
        await invalidate_team_stats(team_id)
        logger.info("Claim created id=%s team=%s creator=%s", claim.id, team_id, actor.user_id)
        return claim

    async def get_claim(self, claim_id: str) -> Claim:
        return await self._load(claim_id)

    async def list_claims(
        self,
        filters: ClaimFilters | None = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
        offset: int = 0,
    ) -> ClaimPage:
        """Keyset listing ordered by created_at desc, id desc."""
        limit = claim_lifecycle.validate_page_args(limit, offset)
        filters = filters or ClaimFilters()
        stmt = select(tables.Claim)
        for clause in _filter_clauses(filters):
            stmt = stmt.where(clause)
        if cursor:
            created_at, claim_id = claim_lifecycle.parse_cursor(cursor)
            stmt = stmt.where(
                or_(
                    tables.Claim.created_at < created_at,
                    and_(tables.Claim.created_at == created_at, tables.Claim.id < claim_id),
                )
            )
        stmt = (
            stmt.order_by(tables.Claim.created_at.desc(), tables.Claim.id.desc())
            .offset(offset)
            .limit(limit + 1)
            .execution_options(populate_existing=True)
        )
        try:
            result = await self.db.execute(stmt)
            rows = list(result.scalars().all())
        except (SQLAlchemyError, OSError) as e:
            await self.db.rollback()
            raise RemoteUnavailableError(details={"operation": "list"}) from e
        items = [Claim.model_validate(r) for r in rows[:limit]]
        has_more = len(rows) > limit
        next_cursor = encode_cursor(items[-1].created_at, items[-1].id) if has_more and items else None
        return ClaimPage(items=items, next_cursor=next_cursor, has_more=has_more)

    # --- Edits ---------------------------------------------------------
    async def update_claim(
        self, claim_id: str, actor: Actor, changes: Mapping[str, Any], expected_version: int
    ) -> Claim:
        current = await self._load(claim_id)
        if current.version != expected_version:
            raise StaleStateConflictError(claim_id, expected_version)
        edited = claim_lifecycle.apply_edit(current, actor, changes)
        async with self._unit_of_work("update"):
            await self._write_if_unchanged(current, edited)
            self._audit(edited, actor, "edit", current.status)
        await invalidate_team_stats(current.team_id)
        return edited

    async def delete_claim(self, claim_id: str, actor: Actor) -> None:
        """Delete a draft claim.  Only its creator may do so."""
        current = await self._load(claim_id)
        if current.status is not ClaimStatus.DRAFT:
            raise InvalidTransitionError(current.status.value, "delete")
        if current.creator_id != actor.user_id:
            raise ClaimPermissionError("Only the creator can delete this claim", {"claim_id": claim_id})
        async with self._unit_of_work("delete"):
            await self.db.execute(
                delete(tables.ClaimAuditTrail).where(tables.ClaimAuditTrail.claim_id == claim_id)
            )
            result = await self.db.execute(
                delete(tables.Claim).where(
                    tables.Claim.id == claim_id,
                    tables.Claim.version == current.version,
                    tables.Claim.status == ClaimStatus.DRAFT,
                )
            )
            if result.rowcount == 0:
                raise StaleStateConflictError(claim_id, current.version)
        await invalidate_team_stats(current.team_id)
        logger.info("Claim deleted id=%s actor=%s", claim_id, actor.user_id)

    # --- Transitions ---------------------------------------------------
    async def transition(
        self,
        claim_id: str,
        event: ClaimEvent,
        actor: Actor,
        expected_version: int,
        reason: Optional[str] = None,
    ) -> Claim:
        """Apply ``event`` to the stored claim if it is still at ``expected_version``.

        Stale versions are never retried here; the caller refreshes and
        decides again.
        """
        current = await self._load(claim_id)
        if current.version != expected_version:
            raise StaleStateConflictError(claim_id, expected_version)
        moved = claim_lifecycle.apply_transition(current, event, actor, reason=reason)
        async with self._unit_of_work("transition"):
            await self._write_if_unchanged(current, moved)
            self._audit(moved, actor, event.value, current.status, reason=moved.rejection_reason if event is ClaimEvent.REJECT else None)
        await invalidate_team_stats(current.team_id)
        logger.info(
            "Claim transition id=%s %s -> %s actor=%s version=%s",
            claim_id,
            current.status.value,
            moved.status.value,
            actor.user_id,
            moved.version,
        )
        sentry_breadcrumb(
            category="claims",
            message=f"transition:{event.value}",
            data={"claim_id": claim_id, "from": current.status.value, "to": moved.status.value},
        )
        return moved

    async def audit_trail(self, claim_id: str) -> List[ClaimAuditEntry]:
        """Audit entries for ``claim_id``, newest first."""
        await self._load(claim_id)
        try:
            result = await self.db.execute(
                select(tables.ClaimAuditTrail)
                .where(tables.ClaimAuditTrail.claim_id == claim_id)
                .order_by(tables.ClaimAuditTrail.created_at.desc(), tables.ClaimAuditTrail.id.desc())
            )
            rows = result.scalars().all()
        except (SQLAlchemyError, OSError) as e:
            await self.db.rollback()
            raise RemoteUnavailableError(details={"operation": "audit_trail"}) from e
        return [ClaimAuditEntry.model_validate(r) for r in rows]

    # --- Statistics ----------------------------------------------------
    async def team_claim_stats(self, team_id: str) -> ClaimStats:
        """Aggregate counts for a team; never raises.

        Served from a short-lived Redis cache when available.  When the
        store query fails the result is ``ClaimStats.unavailable()``.
        """
        cached = await get_team_stats(team_id)
        if cached is not None:
            try:
                return ClaimStats.model_validate(cached)
            except ValueError:
                logger.debug("Ignoring malformed cached stats for team %s", team_id)
        try:
            result = await self.db.execute(
                select(
                    tables.Claim.status,
                    func.count(tables.Claim.id),
                    func.coalesce(func.sum(tables.Claim.amount), 0),
                )
                .where(tables.Claim.team_id == team_id)
                .group_by(tables.Claim.status)
            )
            rows = result.all()
        except Exception as e:
            logger.warning("Claim stats unavailable for team %s: %s", team_id, e)
            try:
                await self.db.rollback()
            except Exception as rollback_error:
                logger.debug("Rollback after failed stats query raised: %s", rollback_error)
            return ClaimStats.unavailable()
        by_status: Dict[ClaimStatus, int] = {}
        total_amount = Decimal("0")
        approved_amount = Decimal("0")
        for status, count, amount in rows:
            status = ClaimStatus(status)
            amount = Decimal(str(amount or 0))
            by_status[status] = int(count)
            total_amount += amount
            if status is ClaimStatus.APPROVED:
                approved_amount = amount
        stats = claim_lifecycle.stats_from_counts(by_status, total_amount, approved_amount)
        await store_team_stats(team_id, stats.model_dump(mode="json"))
        return stats


def _filter_clauses(filters: ClaimFilters):
    col = tables.Claim
    if filters.status is not None:
        yield col.status == filters.status
    if filters.team_id is not None:
        yield col.team_id == filters.team_id
    if filters.creator_id is not None:
        yield col.creator_id == filters.creator_id
    if filters.category is not None:
        yield col.category == filters.category
    if filters.priority is not None:
        yield col.priority == filters.priority
    if filters.date_from is not None:
        yield col.created_at >= ensure_utc(filters.date_from)
    if filters.date_to is not None:
        yield col.created_at <= ensure_utc(filters.date_to)
    if filters.amount_min is not None:
        yield col.amount >= filters.amount_min
    if filters.amount_max is not None:
        yield col.amount <= filters.amount_max


__all__ = ["ClaimService"]
