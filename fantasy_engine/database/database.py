from decimal import Decimal
from typing import Optional, List
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy import select, func
from contextlib import asynccontextmanager

from fantasy_engine.config import Config
from fantasy_engine.database.models import (
    Base, Tournament, Participant, EarningsLedger, LedgerEntryType
)
from fantasy_engine.utils.exceptions import PreconditionError
from fantasy_engine.utils.logger import setup_logger

class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url
        self.engine = None
        self.async_session = None

    async def initialize(self):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")

        # Convert sqlite URL to async if needed
        database_url = self.database_url or Config.get_async_database_url()
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.engine = create_async_engine(
            database_url,
            echo=Config.DEBUG,
            future=True
        )

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # Create all tables
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Database initialized successfully")

    @property
    def session_factory(self):
        """Async session factory handed to the service layer"""
        return self.async_session

    @asynccontextmanager
    async def get_session(self):
        """Get a database session"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.

        All operations within the context will be committed together on success,
        or rolled back together on failure.

        Usage:
            async with db.transaction() as session:
                await entry_ops.register_entry(..., session=session)
                await entry_ops.record_holdings(..., session=session)
                # All operations commit together here

        The caller is responsible for passing the yielded session to all
        participating operations. Exceptions must be allowed to propagate out
        of the context for rollback to occur.
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()

    # Tournament and participant operations
    async def create_tournament(self, name: str, scoring_preset: Optional[str] = None) -> Tournament:
        """Create a tournament; scoring_preset None means the configured default"""
        async with self.transaction() as session:
            tournament = Tournament(name=name, scoring_preset=scoring_preset)
            session.add(tournament)
            await session.flush()
            self.logger.info(f"Created tournament {tournament.id} '{name}' (preset={scoring_preset or 'default'})")
            return tournament

    async def get_tournament(self, tournament_id: int) -> Optional[Tournament]:
        async with self.get_session() as session:
            return await session.get(Tournament, tournament_id)

    async def get_participant_by_ref(self, external_ref: str) -> Optional[Participant]:
        async with self.get_session() as session:
            result = await session.execute(
                select(Participant).where(Participant.external_ref == external_ref.strip().lower())
            )
            return result.scalar_one_or_none()

    async def get_or_create_participant(self, external_ref: str, session: AsyncSession,
                                        display_name: Optional[str] = None) -> Participant:
        """
        Get or create a participant by external reference (session-aware).

        External refs are wallet addresses or user ids and compared case-insensitively.
        """
        ref = external_ref.strip().lower()
        result = await session.execute(
            select(Participant).where(Participant.external_ref == ref)
        )
        participant = result.scalar_one_or_none()

        if participant is None:
            participant = Participant(
                external_ref=ref,
                display_name=display_name or ref,
                lifetime_earnings=Decimal('0')
            )
            session.add(participant)
            await session.flush()
            self.logger.info(f"Created participant {participant.id} for ref {ref}")
        elif display_name and participant.display_name != display_name:
            participant.display_name = display_name

        return participant

    # Earnings ledger operations
    async def add_earnings_entry_atomic(self, participant_id: int, grant_id: int, amount: Decimal,
                                        entry_type: LedgerEntryType,
                                        session: AsyncSession) -> EarningsLedger:
        """
        Add an earnings ledger entry with atomic balance tracking (session-aware).

        Locks the participant row so the cached lifetime_earnings and the ledger's
        balance_after stay in step.
        """
        # Lock the participant record for atomic balance update
        participant_result = await session.execute(
            select(Participant).where(Participant.id == participant_id).with_for_update()
        )
        participant = participant_result.scalar_one()

        new_balance = (participant.lifetime_earnings or Decimal('0')) + amount

        if new_balance < 0:
            raise PreconditionError(
                f"Lifetime earnings cannot go negative. Current: {participant.lifetime_earnings}, Change: {amount}"
            )

        # Update participant's earnings cache
        participant.lifetime_earnings = new_balance

        ledger_entry = EarningsLedger(
            participant_id=participant_id,
            grant_id=grant_id,
            entry_type=entry_type,
            change_amount=amount,
            balance_after=new_balance
        )

        session.add(ledger_entry)
        await session.flush()  # Use flush to get ID, let caller handle commit
        await session.refresh(ledger_entry)

        return ledger_entry

    async def get_lifetime_earnings(self, participant_id: int) -> Decimal:
        """Get cached lifetime earnings for a participant"""
        async with self.get_session() as session:
            result = await session.execute(
                select(Participant.lifetime_earnings).where(Participant.id == participant_id)
            )
            balance = result.scalar_one_or_none()
            return balance if balance is not None else Decimal('0')

    async def get_earnings_history(self, participant_id: int, limit: int = 20) -> List[EarningsLedger]:
        """Get earnings ledger entries for a participant, newest first"""
        async with self.get_session() as session:
            result = await session.execute(
                select(EarningsLedger).where(
                    EarningsLedger.participant_id == participant_id
                ).order_by(EarningsLedger.id.desc()).limit(limit)
            )
            return result.scalars().all()

    async def verify_earnings_integrity(self, participant_id: int) -> dict:
        """Verify lifetime earnings by comparing the cached balance with the ledger"""
        async with self.get_session() as session:
            cached_result = await session.execute(
                select(Participant.lifetime_earnings).where(Participant.id == participant_id)
            )
            cached_balance = cached_result.scalar_one_or_none() or Decimal('0')

            ledger_result = await session.execute(
                select(func.sum(EarningsLedger.change_amount)).where(
                    EarningsLedger.participant_id == participant_id
                )
            )
            calculated_balance = ledger_result.scalar_one_or_none() or Decimal('0')

            return {
                'participant_id': participant_id,
                'cached_balance': Decimal(cached_balance),
                'calculated_balance': Decimal(calculated_balance),
                'is_consistent': Decimal(cached_balance) == Decimal(calculated_balance),
                'difference': Decimal(cached_balance) - Decimal(calculated_balance)
            }
