"""
Shared ranking utilities for tournament leaderboards.

Ranks are dense 1-based positions: equal scores still receive distinct,
consecutive ranks, with the earlier-registered participant (lower id) first.
"""

from decimal import Decimal
from typing import List, Sequence, Tuple
from sqlalchemy import select
from sqlalchemy.sql import Select
from fantasy_engine.database.models import ParticipantScore


class RankingUtility:
    """Shared ranking logic for leaderboard building and reads."""

    @staticmethod
    def create_score_ranking_query(tournament_id: int) -> Select:
        """Select a tournament's participant scores in leaderboard order."""
        return (
            select(ParticipantScore)
            .where(ParticipantScore.tournament_id == tournament_id)
            .order_by(ParticipantScore.total_score.desc(), ParticipantScore.participant_id.asc())
        )

    @staticmethod
    def assign_ranks(scores: Sequence[Tuple[int, Decimal]]) -> List[Tuple[int, int, Decimal]]:
        """
        Rank (participant_id, total_score) pairs.

        Sorting is done in Python as well as in SQL so the order does not depend
        on how the backend compares Numeric values.

        Returns:
            List of (rank, participant_id, total_score) in rank order
        """
        ordered = sorted(scores, key=lambda item: (-Decimal(item[1]), item[0]))
        return [
            (position, participant_id, Decimal(total_score))
            for position, (participant_id, total_score) in enumerate(ordered, start=1)
        ]
