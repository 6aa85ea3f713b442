"""
Settlement service: reward grant state machine and lifetime earnings.

Allowed transitions:

    PENDING    -> PROCESSING   credit lifetime earnings (one CREDIT per grant)
    PROCESSING -> COMPLETED
    PENDING    -> FAILED
    PROCESSING -> FAILED       reverse the credit (one REVERSAL per grant)

The status write and the ledger write share one transaction, so earnings are
counted exactly once per grant.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import selectinload
from fantasy_engine.services.base import BaseService
from fantasy_engine.database.models import (
    Participant, RewardPool, RewardGrant, EarningsLedger, GrantStatus, LedgerEntryType
)
from fantasy_engine.data_models.rewards import GrantView, LedgerView, EarnerView
from fantasy_engine.utils.exceptions import (
    EngineError, NotFoundError, PreconditionError, GrantStateError, ConflictError, TransactionError
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    GrantStatus.PENDING: {GrantStatus.PROCESSING, GrantStatus.FAILED},
    GrantStatus.PROCESSING: {GrantStatus.COMPLETED, GrantStatus.FAILED},
    GrantStatus.COMPLETED: set(),
    GrantStatus.FAILED: set(),
}


def _grant_view(grant: RewardGrant) -> GrantView:
    return GrantView(
        grant_id=grant.id,
        reward_pool_id=grant.reward_pool_id,
        participant_id=grant.participant_id,
        external_ref=grant.participant.external_ref,
        rank=grant.rank,
        amount=Decimal(grant.amount),
        percentage_of_pool=Decimal(grant.percentage_of_pool),
        status=grant.status.value,
        external_settlement_ref=grant.external_settlement_ref
    )


def _ledger_view(entry: EarningsLedger) -> LedgerView:
    return LedgerView(
        entry_id=entry.id,
        participant_id=entry.participant_id,
        grant_id=entry.grant_id,
        entry_type=entry.entry_type.value,
        change_amount=Decimal(entry.change_amount),
        balance_after=Decimal(entry.balance_after),
        timestamp=entry.timestamp
    )


class SettlementService(BaseService):
    """Advances reward grants through settlement and keeps the earnings ledger."""

    def __init__(self, session_factory, database):
        super().__init__(session_factory)
        self.db = database

    async def advance_grant(self, grant_id: int, target_status: GrantStatus,
                            external_ref: Optional[str] = None) -> GrantView:
        """
        Move a grant to target_status, crediting or reversing lifetime earnings.

        Raises:
            NotFoundError: grant does not exist
            PreconditionError: target is PROCESSING but the grant is not PENDING
            GrantStateError: any other transition outside the state machine
        """
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(RewardGrant)
                    .options(selectinload(RewardGrant.participant))
                    .where(RewardGrant.id == grant_id)
                    .with_for_update()
                )
                grant = result.scalar_one_or_none()
                if grant is None:
                    raise NotFoundError("Reward grant", grant_id)

                current = grant.status
                if target_status == GrantStatus.PROCESSING and current != GrantStatus.PENDING:
                    raise PreconditionError(f"Grant {grant_id}: reward is not pending (status {current.value})")
                if target_status not in ALLOWED_TRANSITIONS[current]:
                    raise GrantStateError(grant_id, current.value, target_status.value)

                amount = Decimal(grant.amount)
                if target_status == GrantStatus.PROCESSING:
                    await self.db.add_earnings_entry_atomic(
                        grant.participant_id, grant.id, amount, LedgerEntryType.CREDIT, session
                    )
                elif target_status == GrantStatus.FAILED and current == GrantStatus.PROCESSING:
                    await self.db.add_earnings_entry_atomic(
                        grant.participant_id, grant.id, -amount, LedgerEntryType.REVERSAL, session
                    )

                grant.status = target_status
                if external_ref:
                    grant.external_settlement_ref = external_ref
                await session.flush()
                view = _grant_view(grant)

        except EngineError:
            raise
        except IntegrityError as e:
            logger.error(f"Grant {grant_id} ledger entry already exists: {e}")
            raise ConflictError(f"Grant {grant_id} was settled concurrently") from e
        except SQLAlchemyError as e:
            logger.error(f"Failed to advance grant {grant_id} to {target_status.value}: {e}")
            raise TransactionError("advance_grant", str(e)) from e

        logger.info(f"Grant {grant_id}: {current.value} -> {target_status.value} (amount {view.amount})")
        return view

    async def get_grant(self, grant_id: int) -> GrantView:
        async with self.get_session() as session:
            result = await session.execute(
                select(RewardGrant)
                .options(selectinload(RewardGrant.participant))
                .where(RewardGrant.id == grant_id)
            )
            grant = result.scalar_one_or_none()
            if grant is None:
                raise NotFoundError("Reward grant", grant_id)
            return _grant_view(grant)

    async def get_pool_grants(self, reward_pool_id: int) -> List[GrantView]:
        """All grants of a pool, best rank first."""
        async with self.get_session() as session:
            if await session.get(RewardPool, reward_pool_id) is None:
                raise NotFoundError("Reward pool", reward_pool_id)
            result = await session.execute(
                select(RewardGrant)
                .options(selectinload(RewardGrant.participant))
                .where(RewardGrant.reward_pool_id == reward_pool_id)
                .order_by(RewardGrant.rank.is_(None), RewardGrant.rank, RewardGrant.id)
            )
            return [_grant_view(grant) for grant in result.scalars().all()]

    async def get_participant_grants(self, external_ref: str) -> List[GrantView]:
        """All grants of a participant, newest first."""
        participant = await self.db.get_participant_by_ref(external_ref)
        if participant is None:
            raise NotFoundError("Participant", external_ref)

        async with self.get_session() as session:
            result = await session.execute(
                select(RewardGrant)
                .options(selectinload(RewardGrant.participant))
                .where(RewardGrant.participant_id == participant.id)
                .order_by(RewardGrant.id.desc())
            )
            return [_grant_view(grant) for grant in result.scalars().all()]

    async def get_ledger(self, external_ref: str, limit: int = 20) -> List[LedgerView]:
        """Earnings ledger of a participant, newest first."""
        participant = await self.db.get_participant_by_ref(external_ref)
        if participant is None:
            raise NotFoundError("Participant", external_ref)
        return [_ledger_view(entry) for entry in await self.db.get_earnings_history(participant.id, limit)]

    async def get_top_earners(self, limit: int = 10) -> List[EarnerView]:
        """Universal leaderboard of lifetime earnings across all tournaments."""
        async with self.get_session() as session:
            result = await session.execute(
                select(Participant)
                .where(Participant.lifetime_earnings > 0)
                .order_by(Participant.lifetime_earnings.desc(), Participant.id)
                .limit(limit)
            )
            return [
                EarnerView(
                    rank=position,
                    participant_id=participant.id,
                    external_ref=participant.external_ref,
                    display_name=participant.display_name,
                    lifetime_earnings=Decimal(participant.lifetime_earnings)
                )
                for position, participant in enumerate(result.scalars().all(), start=1)
            ]
