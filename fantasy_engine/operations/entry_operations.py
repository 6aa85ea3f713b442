"""
Entry Operations Module

Business logic for the rows a participant contributes to a tournament:

- register_entry(): validate and store an 11-player roster with captain and
  vice-captain (re-registering replaces the roster)
- record_holdings(): store a PRE_MATCH or POST_MATCH holdings snapshot, the
  read model of the proportional reward policy

Every operation accepts an optional session so callers can compose several
operations into one transaction.
"""

from typing import Dict, List, Optional
from contextlib import asynccontextmanager
from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from fantasy_engine.config import Config
from fantasy_engine.database.models import (
    Tournament, ParticipantEntry, EntryPlayer, HoldingSnapshot, HoldingPhase, MAX_BIG_INTEGER
)
from fantasy_engine.utils.exceptions import (
    EngineError, ValidationError, NotFoundError, TransactionError
)
from fantasy_engine.utils.logger import setup_logger

logger = setup_logger(__name__)


class EntryOperations:
    """
    Roster and holdings operations for tournament participants.
    """

    def __init__(self, database):
        """Initialize with database instance"""
        self.db = database
        self.logger = logger

    @asynccontextmanager
    async def _get_session_context(self, session: Optional[AsyncSession] = None):
        """
        Provides a session context. Uses the provided session if available,
        otherwise creates and manages a new transaction.
        """
        if session:
            # If a session is provided, we do not manage its lifecycle
            yield session
        else:
            async with self.db.transaction() as new_session:
                yield new_session

    @staticmethod
    def validate_roster(player_keys: List[str], captain_key: str, vice_captain_key: str) -> List[str]:
        """
        Check a roster before anything is written.

        Returns:
            The roster keys, stripped, in slot order

        Raises:
            ValidationError: wrong size, duplicate or blank keys, or a captain or
                vice-captain outside the roster
        """
        if not isinstance(player_keys, (list, tuple)):
            raise ValidationError("Roster must be a list of player keys")

        keys = []
        for key in player_keys:
            if not isinstance(key, str) or not key.strip():
                raise ValidationError(f"Invalid player key in roster: {key!r}")
            keys.append(key.strip())

        if len(keys) != Config.ROSTER_SIZE:
            raise ValidationError(f"Roster must have exactly {Config.ROSTER_SIZE} players, got {len(keys)}")
        if len(set(keys)) != len(keys):
            raise ValidationError("Roster players must be distinct")
        if captain_key not in keys:
            raise ValidationError(f"Captain {captain_key!r} is not in the roster")
        if vice_captain_key not in keys:
            raise ValidationError(f"Vice-captain {vice_captain_key!r} is not in the roster")

        return keys

    async def _require_tournament(self, s: AsyncSession, tournament_id: int) -> Tournament:
        tournament = await s.get(Tournament, tournament_id)
        if tournament is None:
            raise NotFoundError("Tournament", tournament_id)
        return tournament

    async def register_entry(
        self,
        tournament_id: int,
        external_ref: str,
        player_keys: List[str],
        captain_key: str,
        vice_captain_key: str,
        display_name: Optional[str] = None,
        session: Optional[AsyncSession] = None
    ) -> ParticipantEntry:
        """
        Create or replace a participant's roster for a tournament.

        Returns:
            ParticipantEntry with players and participant loaded

        Raises:
            ValidationError: malformed roster
            NotFoundError: tournament does not exist
            TransactionError: storage failure
        """
        captain_key = captain_key.strip() if isinstance(captain_key, str) else captain_key
        vice_captain_key = vice_captain_key.strip() if isinstance(vice_captain_key, str) else vice_captain_key
        keys = self.validate_roster(player_keys, captain_key, vice_captain_key)

        if captain_key == vice_captain_key:
            self.logger.warning(
                f"Entry for {external_ref} in tournament {tournament_id} names {captain_key} as both "
                f"captain and vice-captain; only the captain multiplier will apply"
            )

        async with self._get_session_context(session) as s:
            try:
                await self._require_tournament(s, tournament_id)
                participant = await self.db.get_or_create_participant(external_ref, s, display_name)

                result = await s.execute(
                    select(ParticipantEntry)
                    .options(selectinload(ParticipantEntry.players))
                    .where(
                        ParticipantEntry.participant_id == participant.id,
                        ParticipantEntry.tournament_id == tournament_id
                    )
                    .with_for_update()
                )
                entry = result.scalar_one_or_none()

                if entry is None:
                    entry = ParticipantEntry(
                        participant_id=participant.id,
                        tournament_id=tournament_id,
                        captain_key=captain_key,
                        vice_captain_key=vice_captain_key,
                        players=[]
                    )
                    s.add(entry)
                    action = "Registered"
                else:
                    entry.captain_key = captain_key
                    entry.vice_captain_key = vice_captain_key
                    entry.players.clear()
                    await s.flush()  # Drop old slots before reusing them
                    action = "Replaced"

                for slot, key in enumerate(keys):
                    entry.players.append(EntryPlayer(player_key=key, slot=slot))

                await s.flush()
                entry.participant = participant

                self.logger.info(
                    f"{action} entry {entry.id} for participant {participant.id} in tournament {tournament_id} "
                    f"(captain={captain_key}, vice={vice_captain_key})"
                )
                return entry

            except EngineError:
                raise
            except SQLAlchemyError as e:
                self.logger.error(f"Failed to register entry for {external_ref} in tournament {tournament_id}: {e}")
                raise TransactionError("register_entry", str(e)) from e

    async def get_entries(
        self,
        tournament_id: int,
        player_keys: Optional[List[str]] = None,
        session: Optional[AsyncSession] = None
    ) -> List[ParticipantEntry]:
        """
        Get a tournament's entries, optionally only those holding any of player_keys.

        Entries come back with players and participant loaded, ordered by id.
        """
        async with self._get_session_context(session) as s:
            query = (
                select(ParticipantEntry)
                .options(
                    selectinload(ParticipantEntry.players),
                    selectinload(ParticipantEntry.participant)
                )
                .where(ParticipantEntry.tournament_id == tournament_id)
                .order_by(ParticipantEntry.id)
            )
            if player_keys is not None:
                if not player_keys:
                    return []
                holders = (
                    select(EntryPlayer.entry_id)
                    .where(EntryPlayer.player_key.in_(player_keys))
                )
                query = query.where(ParticipantEntry.id.in_(holders))

            result = await s.execute(query)
            return list(result.scalars().all())

    async def record_holdings(
        self,
        tournament_id: int,
        external_ref: str,
        phase: HoldingPhase,
        balances: Dict[str, int],
        session: Optional[AsyncSession] = None
    ) -> List[HoldingSnapshot]:
        """
        Replace a participant's holdings snapshot for one phase.

        Args:
            balances: player_key -> balance in token base units (>= 0)

        Returns:
            The stored snapshot rows
        """
        for key, balance in balances.items():
            if not isinstance(key, str) or not key.strip():
                raise ValidationError(f"Invalid player key in holdings: {key!r}")
            if isinstance(balance, bool) or not isinstance(balance, int) or not 0 <= balance <= MAX_BIG_INTEGER:
                raise ValidationError(
                    f"Holding balance for {key} must be an integer between 0 and {MAX_BIG_INTEGER}, got {balance!r}"
                )

        async with self._get_session_context(session) as s:
            try:
                await self._require_tournament(s, tournament_id)
                participant = await self.db.get_or_create_participant(external_ref, s)

                await s.execute(
                    delete(HoldingSnapshot).where(
                        HoldingSnapshot.tournament_id == tournament_id,
                        HoldingSnapshot.participant_id == participant.id,
                        HoldingSnapshot.phase == phase
                    )
                )

                snapshots = []
                for key, balance in balances.items():
                    snapshot = HoldingSnapshot(
                        tournament_id=tournament_id,
                        participant_id=participant.id,
                        player_key=key.strip(),
                        phase=phase,
                        balance=balance
                    )
                    s.add(snapshot)
                    snapshots.append(snapshot)

                await s.flush()
                self.logger.info(
                    f"Recorded {len(snapshots)} {phase.value} holdings for participant {participant.id} "
                    f"in tournament {tournament_id}"
                )
                return snapshots

            except EngineError:
                raise
            except SQLAlchemyError as e:
                self.logger.error(f"Failed to record holdings for {external_ref} in tournament {tournament_id}: {e}")
                raise TransactionError("record_holdings", str(e)) from e

    async def get_holdings(
        self,
        tournament_id: int,
        phase: HoldingPhase,
        session: Optional[AsyncSession] = None
    ) -> List[HoldingSnapshot]:
        """Get every participant's holdings for one phase of a tournament."""
        async with self._get_session_context(session) as s:
            result = await s.execute(
                select(HoldingSnapshot)
                .options(selectinload(HoldingSnapshot.participant))
                .where(
                    HoldingSnapshot.tournament_id == tournament_id,
                    HoldingSnapshot.phase == phase
                )
                .order_by(HoldingSnapshot.participant_id, HoldingSnapshot.player_key)
            )
            return list(result.scalars().all())
