"""
Scoring service: stat lines in, participant tournament scores out.

Stat lines are upserted per (tournament, player) with their fantasy points
computed by the tournament's scoring preset. Any entry holding a changed
player is re-aggregated in the same transaction, so scores never lag the
stats they are built from.
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional, Sequence
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from fantasy_engine.config import Config
from fantasy_engine.services.base import BaseService
from fantasy_engine.database.models import (
    Tournament, PlayerStatLine, ParticipantEntry, ParticipantScore, MAX_INTEGER
)
from fantasy_engine.data_models.requests import STAT_COUNTERS
from fantasy_engine.data_models.scoring import (
    StatLine, FantasyPoints, ParticipantScoreView, StatSubmissionResult
)
from fantasy_engine.utils.scoring_strategies import (
    ScoringStrategyFactory, PointsStrategy, aggregate_roster
)
from fantasy_engine.utils.exceptions import (
    EngineError, ValidationError, NotFoundError, TransactionError
)

logger = logging.getLogger(__name__)


class ScoringService(BaseService):
    """Computes fantasy points and aggregates them into participant scores."""

    def __init__(self, session_factory, entry_ops, config_service=None):
        super().__init__(session_factory)
        self.entry_ops = entry_ops
        self.config_service = config_service

    def resolve_preset(self, tournament: Tournament) -> str:
        """Tournament preset, else the runtime default, else the environment default."""
        if tournament.scoring_preset:
            return tournament.scoring_preset
        if self.config_service:
            return self.config_service.get('scoring.default_preset', Config.DEFAULT_SCORING_PRESET)
        return Config.DEFAULT_SCORING_PRESET

    def _create_calculator(self, tournament: Tournament) -> PointsStrategy:
        preset = self.resolve_preset(tournament)
        try:
            return ScoringStrategyFactory.create_strategy(preset)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    async def _get_tournament(self, session: AsyncSession, tournament_id: int) -> Tournament:
        tournament = await session.get(Tournament, tournament_id)
        if tournament is None:
            raise NotFoundError("Tournament", tournament_id)
        return tournament

    @staticmethod
    def _apply_points(line: PlayerStatLine, points: FantasyPoints):
        line.batting_points = points.batting
        line.bowling_points = points.bowling
        line.fielding_points = points.fielding
        line.fantasy_points = points.total
        line.scoring_preset = points.preset

    async def get_player_points(self, tournament_id: int,
                                session: Optional[AsyncSession] = None) -> Dict[str, Decimal]:
        """Map player_key -> stored fantasy points for a tournament."""
        async with self._get_session_context(session) as s:
            result = await s.execute(
                select(PlayerStatLine.player_key, PlayerStatLine.fantasy_points)
                .where(PlayerStatLine.tournament_id == tournament_id)
            )
            return {player_key: Decimal(points) for player_key, points in result.all()}

    async def aggregate_entry(self, entry: ParticipantEntry,
                              points_by_player: Optional[Dict[str, Decimal]] = None,
                              session: Optional[AsyncSession] = None) -> ParticipantScoreView:
        """
        Recompute and upsert one entry's tournament score.

        Args:
            entry: Entry with players and participant loaded
            points_by_player: player_key -> points; loaded from stat lines when omitted
        """
        async with self._get_session_context(session) as s:
            if points_by_player is None:
                points_by_player = await self.get_player_points(entry.tournament_id, session=s)

            roster_score = aggregate_roster(
                entry.player_keys, entry.captain_key, entry.vice_captain_key, points_by_player
            )

            result = await s.execute(
                select(ParticipantScore).where(
                    ParticipantScore.participant_id == entry.participant_id,
                    ParticipantScore.tournament_id == entry.tournament_id
                )
            )
            score = result.scalar_one_or_none()
            if score is None:
                score = ParticipantScore(
                    participant_id=entry.participant_id,
                    tournament_id=entry.tournament_id
                )
                s.add(score)

            score.total_score = roster_score.total_score
            score.captain_multiplier = roster_score.captain_multiplier
            score.vice_captain_multiplier = roster_score.vice_captain_multiplier
            score.captain_points = roster_score.captain_points
            score.vice_captain_points = roster_score.vice_captain_points
            await s.flush()

            logger.debug(
                f"Participant {entry.participant_id} tournament {entry.tournament_id}: "
                f"score {roster_score.total_score}"
            )
            return ParticipantScoreView(
                participant_id=entry.participant_id,
                external_ref=entry.participant.external_ref,
                tournament_id=entry.tournament_id,
                total_score=roster_score.total_score,
                captain_multiplier=roster_score.captain_multiplier,
                vice_captain_multiplier=roster_score.vice_captain_multiplier
            )

    async def submit_stat_lines(self, tournament_id: int,
                                stat_lines: Sequence[StatLine]) -> StatSubmissionResult:
        """
        Upsert stat lines, score them and re-aggregate every affected entry.

        All writes happen in one transaction; any failure rolls back the batch.
        """
        keys = [stat.player_key for stat in stat_lines]
        if len(set(keys)) != len(keys):
            raise ValidationError("Duplicate player_key in stat line submission")
        for stat in stat_lines:
            for counter in STAT_COUNTERS:
                if getattr(stat, counter) > MAX_INTEGER:
                    raise ValidationError(f"{stat.player_key}: {counter} exceeds {MAX_INTEGER}")

        try:
            async with self.get_session() as session:
                tournament = await self._get_tournament(session, tournament_id)
                calculator = self._create_calculator(tournament)

                result = await session.execute(
                    select(PlayerStatLine)
                    .where(
                        PlayerStatLine.tournament_id == tournament_id,
                        PlayerStatLine.player_key.in_(keys)
                    )
                    .with_for_update()
                )
                existing = {line.player_key: line for line in result.scalars().all()}

                points_list = []
                for stat in stat_lines:
                    line = existing.get(stat.player_key)
                    if line is None:
                        line = PlayerStatLine(tournament_id=tournament_id, player_key=stat.player_key)
                        session.add(line)

                    line.runs_scored = stat.runs_scored
                    line.balls_faced = stat.balls_faced
                    line.wickets_taken = stat.wickets_taken
                    line.overs_bowled = stat.overs_bowled
                    line.runs_conceded = stat.runs_conceded
                    line.catches = stat.catches
                    line.stumpings = stat.stumpings
                    line.run_outs = stat.run_outs

                    points = calculator.calculate(stat)
                    self._apply_points(line, points)
                    points_list.append(points)

                await session.flush()

                points_by_player = await self.get_player_points(tournament_id, session=session)
                entries = await self.entry_ops.get_entries(tournament_id, player_keys=keys, session=session)
                rescored = []
                for entry in entries:
                    rescored.append(await self.aggregate_entry(entry, points_by_player, session=session))

        except EngineError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Stat submission failed for tournament {tournament_id}: {e}")
            raise TransactionError("submit_stat_lines", str(e)) from e

        logger.info(
            f"Scored {len(points_list)} stat lines for tournament {tournament_id} "
            f"with {calculator.get_strategy_name()}; re-aggregated {len(rescored)} entries"
        )
        return StatSubmissionResult(
            tournament_id=tournament_id,
            preset=calculator.get_strategy_name(),
            points=points_list,
            rescored=rescored
        )

    async def recompute_tournament(self, tournament_id: int) -> List[ParticipantScoreView]:
        """
        Re-score every stat line with the tournament's current preset and
        re-aggregate every entry. Used after a preset change.
        """
        try:
            async with self.get_session() as session:
                tournament = await self._get_tournament(session, tournament_id)
                calculator = self._create_calculator(tournament)

                result = await session.execute(
                    select(PlayerStatLine)
                    .where(PlayerStatLine.tournament_id == tournament_id)
                    .with_for_update()
                )
                lines = result.scalars().all()
                for line in lines:
                    stat = StatLine(
                        player_key=line.player_key,
                        runs_scored=line.runs_scored,
                        balls_faced=line.balls_faced,
                        wickets_taken=line.wickets_taken,
                        overs_bowled=line.overs_bowled,
                        runs_conceded=line.runs_conceded,
                        catches=line.catches,
                        stumpings=line.stumpings,
                        run_outs=line.run_outs
                    )
                    self._apply_points(line, calculator.calculate(stat))
                await session.flush()

                points_by_player = await self.get_player_points(tournament_id, session=session)
                entries = await self.entry_ops.get_entries(tournament_id, session=session)
                rescored = []
                for entry in entries:
                    rescored.append(await self.aggregate_entry(entry, points_by_player, session=session))

        except EngineError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Recompute failed for tournament {tournament_id}: {e}")
            raise TransactionError("recompute_tournament", str(e)) from e

        logger.info(
            f"Recomputed tournament {tournament_id} with {calculator.get_strategy_name()}: "
            f"{len(lines)} stat lines, {len(rescored)} entries"
        )
        return rescored

    async def get_scores(self, tournament_id: int) -> List[ParticipantScoreView]:
        """Read a tournament's participant scores, highest first."""
        async with self.get_session() as session:
            result = await session.execute(
                select(ParticipantScore)
                .options(selectinload(ParticipantScore.participant))
                .where(ParticipantScore.tournament_id == tournament_id)
                .order_by(ParticipantScore.total_score.desc(), ParticipantScore.participant_id)
            )
            return [
                ParticipantScoreView(
                    participant_id=score.participant_id,
                    external_ref=score.participant.external_ref,
                    tournament_id=score.tournament_id,
                    total_score=Decimal(score.total_score),
                    captain_multiplier=Decimal(score.captain_multiplier),
                    vice_captain_multiplier=Decimal(score.vice_captain_multiplier)
                )
                for score in result.scalars().all()
            ]
