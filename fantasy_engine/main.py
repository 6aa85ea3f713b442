import asyncio
from typing import List, Optional

from fantasy_engine.config import Config
from fantasy_engine.database.database import Database
from fantasy_engine.database.models import Tournament
from fantasy_engine.data_models.requests import (
    SubmitStatLinesRequest, RegisterEntryRequest, RecordHoldingsRequest, BuildLeaderboardRequest,
    CreateRewardPoolRequest, DistributeRewardsRequest, PreviewRewardsRequest, AdvanceGrantRequest
)
from fantasy_engine.data_models.scoring import ParticipantScoreView, StatSubmissionResult
from fantasy_engine.data_models.leaderboard import LeaderboardRow
from fantasy_engine.data_models.rewards import (
    DistributionResult, RewardPreview, GrantView, LedgerView, EarnerView, RewardPoolView
)
from fantasy_engine.operations.entry_operations import EntryOperations
from fantasy_engine.services.configuration import ConfigurationService
from fantasy_engine.services.seed_configurations import seed_configurations
from fantasy_engine.services.scoring import ScoringService
from fantasy_engine.services.leaderboard import LeaderboardService
from fantasy_engine.services.rewards import RewardService
from fantasy_engine.services.settlement import SettlementService
from fantasy_engine.utils.scoring_strategies import ScoringStrategyFactory
from fantasy_engine.utils.exceptions import EngineError, ValidationError
from fantasy_engine.utils.logger import setup_logger

class FantasyEngine:
    """
    Composition root: owns the Database and wires every service to it.

    Payload operations take plain dicts, validate them through the request
    schemas and return frozen dataclass views.
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url
        self.db: Optional[Database] = None
        self.config_service: Optional[ConfigurationService] = None
        self.entry_ops: Optional[EntryOperations] = None
        self.scoring_service: Optional[ScoringService] = None
        self.leaderboard_service: Optional[LeaderboardService] = None
        self.reward_service: Optional[RewardService] = None
        self.settlement_service: Optional[SettlementService] = None
        self.logger = setup_logger(__name__)

    async def start(self):
        """Initialize the database, runtime configuration and services"""
        self.logger.info("Starting fantasy engine...")

        self.db = Database(self.database_url)
        await self.db.initialize()
        await seed_configurations(self.db)

        self.config_service = ConfigurationService(self.db.session_factory)
        await self.config_service.load_all()

        self.entry_ops = EntryOperations(self.db)
        self.scoring_service = ScoringService(self.db.session_factory, self.entry_ops, self.config_service)
        self.leaderboard_service = LeaderboardService(self.db.session_factory)
        self.reward_service = RewardService(self.db.session_factory, self.config_service)
        self.settlement_service = SettlementService(self.db.session_factory, self.db)

        self.logger.info("Fantasy engine started")

    async def close(self):
        """Cleanup when the engine is shutting down"""
        self.logger.info("Shutting down fantasy engine...")
        if self.db:
            await self.db.close()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def create_tournament(self, name: str, scoring_preset: Optional[str] = None) -> Tournament:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Tournament name is required")
        if scoring_preset is not None and scoring_preset not in ScoringStrategyFactory.get_available_presets():
            raise ValidationError(
                f"Unknown scoring preset {scoring_preset!r}; "
                f"available: {', '.join(ScoringStrategyFactory.get_available_presets())}"
            )
        return await self.db.create_tournament(name.strip(), scoring_preset)

    # Payload operations
    async def submit_stat_lines(self, payload: dict) -> StatSubmissionResult:
        request = SubmitStatLinesRequest.from_payload(payload)
        return await self.scoring_service.submit_stat_lines(request.tournament_id, request.stat_lines)

    async def register_entry(self, payload: dict) -> ParticipantScoreView:
        """Store a roster and score it against the stats recorded so far"""
        request = RegisterEntryRequest.from_payload(payload)
        async with self.db.transaction() as session:
            entry = await self.entry_ops.register_entry(
                request.tournament_id,
                request.participant,
                request.players,
                request.captain,
                request.vice_captain,
                display_name=request.display_name,
                session=session
            )
            return await self.scoring_service.aggregate_entry(entry, session=session)

    async def record_holdings(self, payload: dict) -> int:
        """Store a holdings snapshot; returns the number of rows written"""
        request = RecordHoldingsRequest.from_payload(payload)
        snapshots = await self.entry_ops.record_holdings(
            request.tournament_id, request.participant, request.phase, request.balances
        )
        return len(snapshots)

    async def build_leaderboard(self, payload: dict) -> List[LeaderboardRow]:
        request = BuildLeaderboardRequest.from_payload(payload)
        return await self.leaderboard_service.build_leaderboard(request.tournament_id)

    async def create_reward_pool(self, payload: dict) -> RewardPoolView:
        request = CreateRewardPoolRequest.from_payload(payload)
        return await self.reward_service.create_pool(
            request.tournament_id, request.name, request.total_amount, request.policy, request.rules
        )

    async def distribute_rewards(self, payload: dict) -> DistributionResult:
        request = DistributeRewardsRequest.from_payload(payload)
        return await self.reward_service.distribute(
            request.reward_pool_id,
            rules=request.rules,
            total_reward_amount=request.total_reward_amount,
            rerun=request.rerun
        )

    async def preview_rewards(self, payload: dict) -> RewardPreview:
        """Dry-run a distribution; nothing is written"""
        request = PreviewRewardsRequest.from_payload(payload)
        return await self.reward_service.preview(
            request.reward_pool_id,
            rules=request.rules,
            total_reward_amount=request.total_reward_amount
        )

    async def advance_grant(self, payload: dict) -> GrantView:
        request = AdvanceGrantRequest.from_payload(payload)
        return await self.settlement_service.advance_grant(
            request.grant_id, request.status, request.external_ref
        )

    # Read operations
    async def get_leaderboard(self, tournament_id: int, limit: Optional[int] = None) -> List[LeaderboardRow]:
        return await self.leaderboard_service.get_leaderboard(tournament_id, limit)

    async def get_reward_pools(self, tournament_id: int) -> List[RewardPoolView]:
        return await self.reward_service.list_pools(tournament_id)

    async def get_participant_grants(self, external_ref: str) -> List[GrantView]:
        return await self.settlement_service.get_participant_grants(external_ref)

    async def get_ledger(self, external_ref: str, limit: int = 20) -> List[LedgerView]:
        return await self.settlement_service.get_ledger(external_ref, limit)

    async def get_top_earners(self, limit: int = 10) -> List[EarnerView]:
        return await self.settlement_service.get_top_earners(limit)

async def main():
    """Create the schema and seed runtime configuration"""
    Config.validate()

    engine = FantasyEngine()
    try:
        await engine.start()
        engine.logger.info(
            f"Schema ready at {Config.DATABASE_URL}; "
            f"presets: {', '.join(ScoringStrategyFactory.get_available_presets())}"
        )
    except EngineError as e:
        engine.logger.error(f"Startup failed ({e.kind}): {e.message}")
        raise
    finally:
        await engine.close()

if __name__ == "__main__":
    asyncio.run(main())
