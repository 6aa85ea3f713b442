"""
Leaderboard service: rank snapshots built from participant scores.

A tournament's rank table is rebuilt wholesale inside one transaction; readers
never see a half-updated table.
"""

from typing import Optional, List
from decimal import Decimal
import asyncio
import logging
from datetime import datetime

from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload
from fantasy_engine.services.base import BaseService
from fantasy_engine.data_models.leaderboard import LeaderboardRow
from fantasy_engine.database.models import Tournament, ParticipantScore, LeaderboardEntry
from fantasy_engine.utils.ranking import RankingUtility
from fantasy_engine.utils.exceptions import EngineError, NotFoundError, TransactionError

logger = logging.getLogger(__name__)


class LeaderboardService(BaseService):
    """Service for building and reading tournament leaderboards."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        # One build at a time per tournament within this process
        self._build_locks = {}
        self._locks_lock = asyncio.Lock()

    async def _get_build_lock(self, tournament_id: int) -> asyncio.Lock:
        async with self._locks_lock:
            lock = self._build_locks.get(tournament_id)
            if lock is None:
                lock = asyncio.Lock()
                self._build_locks[tournament_id] = lock
            return lock

    async def build_leaderboard(self, tournament_id: int) -> List[LeaderboardRow]:
        """
        Rank every participant score of a tournament and persist the snapshot.

        Ties get distinct consecutive ranks, earlier participant first. Rows for
        participants without a score are removed.

        Returns:
            Leaderboard rows in rank order (empty when nobody has a score)
        """
        lock = await self._get_build_lock(tournament_id)
        async with lock:
            try:
                async with self.get_session() as session:
                    if await session.get(Tournament, tournament_id) is None:
                        raise NotFoundError("Tournament", tournament_id)

                    result = await session.execute(
                        RankingUtility.create_score_ranking_query(tournament_id)
                        .options(selectinload(ParticipantScore.participant))
                    )
                    scores = result.scalars().all()
                    participants = {score.participant_id: score.participant for score in scores}

                    ranked = RankingUtility.assign_ranks(
                        [(score.participant_id, score.total_score) for score in scores]
                    )

                    existing_result = await session.execute(
                        select(LeaderboardEntry)
                        .where(LeaderboardEntry.tournament_id == tournament_id)
                        .with_for_update()
                    )
                    existing = {row.participant_id: row for row in existing_result.scalars().all()}

                    built_at = datetime.now()
                    rows = []
                    for rank, participant_id, total_score in ranked:
                        entry = existing.pop(participant_id, None)
                        if entry is None:
                            entry = LeaderboardEntry(tournament_id=tournament_id, participant_id=participant_id)
                            session.add(entry)
                        entry.rank = rank
                        entry.total_score = total_score
                        entry.built_at = built_at

                        participant = participants[participant_id]
                        rows.append(LeaderboardRow(
                            rank=rank,
                            participant_id=participant_id,
                            external_ref=participant.external_ref,
                            display_name=participant.display_name,
                            total_score=total_score,
                            built_at=built_at
                        ))

                    if existing:
                        await session.execute(
                            delete(LeaderboardEntry).where(
                                LeaderboardEntry.id.in_([row.id for row in existing.values()])
                            )
                        )

            except EngineError:
                raise
            except SQLAlchemyError as e:
                logger.error(f"Leaderboard build failed for tournament {tournament_id}: {e}")
                raise TransactionError("build_leaderboard", str(e)) from e

        logger.info(
            f"Built leaderboard for tournament {tournament_id}: {len(rows)} rows, "
            f"{len(existing)} stale rows removed"
        )
        return rows

    async def get_leaderboard(self, tournament_id: int, limit: Optional[int] = None) -> List[LeaderboardRow]:
        """Read the last built leaderboard snapshot, best rank first."""
        async with self.get_session() as session:
            query = (
                select(LeaderboardEntry)
                .options(selectinload(LeaderboardEntry.participant))
                .where(LeaderboardEntry.tournament_id == tournament_id)
                .order_by(LeaderboardEntry.rank)
            )
            if limit is not None:
                query = query.limit(limit)

            result = await session.execute(query)
            return [
                LeaderboardRow(
                    rank=row.rank,
                    participant_id=row.participant_id,
                    external_ref=row.participant.external_ref,
                    display_name=row.participant.display_name,
                    total_score=Decimal(row.total_score),
                    built_at=row.built_at
                )
                for row in result.scalars().all()
            ]

