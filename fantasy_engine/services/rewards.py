"""
Reward service: distributes a finite reward pool across participants.

Two policies are supported:

- RULES: fixed {rank, percentage} rules applied to the tournament leaderboard
- PROPORTIONAL: shares proportional to each participant's holdings-weighted
  fantasy score

Every distribution is computed in memory first and then committed as one
run (DistributionRun row, grants, pool totals) in a single transaction.
Runs on the same pool are serialized three ways: an in-process lock, a
compare-and-set on RewardPool.run_count, and the unique run number.
"""

import asyncio
import json
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from fantasy_engine.config import Config
from fantasy_engine.services.base import BaseService
from fantasy_engine.database.models import (
    Tournament, Participant, PlayerStatLine, LeaderboardEntry, HoldingSnapshot, HoldingPhase,
    RewardPool, RewardGrant, DistributionRun, DistributionPolicy, GrantStatus
)
from fantasy_engine.data_models.rewards import (
    RewardRule, Allocation, AllocationView, DistributionResult, RewardPoolView,
    HoldingBreakdown, HolderPreview, RewardPreview
)
from fantasy_engine.utils.reward_math import RewardCalculator
from fantasy_engine.utils.exceptions import (
    EngineError, ValidationError, NotFoundError, PreconditionError, ConflictError, TransactionError
)

logger = logging.getLogger(__name__)


def _to_amount(value, field: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number, got {value!r}")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{field} must be a number, got {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field} must be positive, got {value!r}")
    return amount


class RewardService(BaseService):
    """Creates reward pools and runs their distributions."""

    def __init__(self, session_factory, config_service=None):
        super().__init__(session_factory)
        self.config_service = config_service
        self._pool_locks: Dict[int, asyncio.Lock] = {}

    def _get_pool_lock(self, reward_pool_id: int) -> asyncio.Lock:
        lock = self._pool_locks.get(reward_pool_id)
        if lock is None:
            lock = asyncio.Lock()
            self._pool_locks[reward_pool_id] = lock
        return lock

    def get_ignored_participants(self) -> set:
        """External refs excluded from proportional rewards (environment plus runtime config)."""
        ignored = Config.get_ignored_participants()
        if self.config_service:
            ignored |= {ref.strip().lower() for ref in self.config_service.get('rewards.ignored_participants', [])}
        return ignored

    @staticmethod
    def _to_view(pool: RewardPool) -> RewardPoolView:
        rules = []
        if pool.policy_parameters:
            rules = RewardCalculator.parse_rules(json.loads(pool.policy_parameters))
        return RewardPoolView(
            reward_pool_id=pool.id,
            tournament_id=pool.tournament_id,
            name=pool.name,
            total_amount=Decimal(pool.total_amount),
            distributed_amount=Decimal(pool.distributed_amount),
            policy=pool.distribution_policy.value,
            rules=rules,
            run_count=pool.run_count
        )

    async def create_pool(self, tournament_id: int, name: str, total_amount,
                          policy: DistributionPolicy,
                          rules: Optional[Sequence[dict]] = None) -> RewardPoolView:
        """
        Validate and store a reward pool.

        RULES pools must carry their rules; PROPORTIONAL pools must not.
        """
        amount = _to_amount(total_amount, "total_amount")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Reward pool name is required")

        parsed_rules = None
        if policy == DistributionPolicy.RULES:
            parsed_rules = RewardCalculator.parse_rules(rules or [])
        elif rules:
            raise ValidationError("Proportional reward pools do not take rules")

        try:
            async with self.get_session() as session:
                if await session.get(Tournament, tournament_id) is None:
                    raise NotFoundError("Tournament", tournament_id)

                pool = RewardPool(
                    tournament_id=tournament_id,
                    name=name.strip(),
                    total_amount=amount,
                    distributed_amount=Decimal('0'),
                    distribution_policy=policy,
                    policy_parameters=json.dumps([r.to_payload() for r in parsed_rules]) if parsed_rules else None,
                    run_count=0
                )
                session.add(pool)
                await session.flush()
                view = self._to_view(pool)

        except EngineError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Failed to create reward pool '{name}' for tournament {tournament_id}: {e}")
            raise TransactionError("create_pool", str(e)) from e

        logger.info(
            f"Created {policy.value} reward pool {view.reward_pool_id} '{view.name}' "
            f"of {amount} for tournament {tournament_id}"
        )
        return view

    async def get_pool(self, reward_pool_id: int) -> RewardPoolView:
        async with self.get_session() as session:
            pool = await session.get(RewardPool, reward_pool_id)
            if pool is None:
                raise NotFoundError("Reward pool", reward_pool_id)
            return self._to_view(pool)

    async def _rank_table(self, session: AsyncSession, tournament_id: int) -> List[Tuple[int, int]]:
        result = await session.execute(
            select(LeaderboardEntry.participant_id, LeaderboardEntry.rank)
            .where(LeaderboardEntry.tournament_id == tournament_id)
            .order_by(LeaderboardEntry.rank)
        )
        return [(participant_id, rank) for participant_id, rank in result.all()]

    async def _holder_breakdowns(self, session: AsyncSession, tournament_id: int) -> List[HolderPreview]:
        """
        Score each non-ignored holder: sum of holding amount x player points.

        When any PRE_MATCH snapshot exists for the tournament, only holdings
        maintained through the match count: min(pre, post) per player, with a
        missing side read as 0. A holder who sold out keeps a zero score.
        """
        points_result = await session.execute(
            select(PlayerStatLine.player_key, PlayerStatLine.fantasy_points)
            .where(PlayerStatLine.tournament_id == tournament_id)
        )
        points = {player_key: Decimal(value) for player_key, value in points_result.all()}

        snapshot_result = await session.execute(
            select(HoldingSnapshot.participant_id, Participant.external_ref,
                   HoldingSnapshot.player_key, HoldingSnapshot.phase, HoldingSnapshot.balance)
            .join(Participant, Participant.id == HoldingSnapshot.participant_id)
            .where(HoldingSnapshot.tournament_id == tournament_id)
            .order_by(HoldingSnapshot.participant_id, HoldingSnapshot.player_key)
        )

        ignored = self.get_ignored_participants()
        refs: Dict[int, str] = {}
        pre: Dict[int, Dict[str, int]] = {}
        post: Dict[int, Dict[str, int]] = {}
        for participant_id, external_ref, player_key, phase, balance in snapshot_result.all():
            if external_ref.lower() in ignored:
                continue
            refs[participant_id] = external_ref
            book = pre if phase == HoldingPhase.PRE_MATCH else post
            book.setdefault(participant_id, {})[player_key] = balance

        use_maintained = bool(pre)
        holder_ids = sorted(set(pre) | set(post)) if use_maintained else sorted(post)
        unit = Decimal(10) ** Config.TOKEN_DECIMALS

        holders = []
        for participant_id in holder_ids:
            pre_book = pre.get(participant_id, {})
            post_book = post.get(participant_id, {})

            breakdowns = []
            score = Decimal('0')
            for player_key in sorted(set(pre_book) | set(post_book)):
                post_balance = post_book.get(player_key, 0)
                if use_maintained:
                    pre_balance = pre_book.get(player_key, 0)
                    maintained = min(pre_balance, post_balance)
                else:
                    pre_balance = None
                    maintained = post_balance
                player_points = points.get(player_key, Decimal('0'))
                contribution = Decimal(maintained) / unit * player_points
                score += contribution
                breakdowns.append(HoldingBreakdown(
                    player_key=player_key,
                    pre_balance=pre_balance,
                    post_balance=post_balance,
                    maintained_balance=maintained,
                    player_points=player_points,
                    points=contribution
                ))

            if use_maintained:
                total_holdings = len(pre_book)
                maintained_holdings = sum(
                    1 for key, balance in pre_book.items()
                    if key in post_book and post_book[key] >= balance
                )
            else:
                total_holdings = maintained_holdings = len(post_book)

            holders.append(HolderPreview(
                participant_id=participant_id,
                external_ref=refs[participant_id],
                score=score,
                maintained_holdings=maintained_holdings,
                total_holdings=total_holdings,
                holdings=breakdowns
            ))
        return holders

    async def distribute(self, reward_pool_id: int, rules: Optional[Sequence[dict]] = None,
                         total_reward_amount=None, rerun: bool = False) -> DistributionResult:
        """
        Distribute a reward pool under its policy.

        Args:
            reward_pool_id: Pool to distribute
            rules: RULES only; overrides the pool's stored rules for this run
            total_reward_amount: Amount to distribute (defaults to the pool total, may not exceed it)
            rerun: Replace a previous run whose grants are all still PENDING

        Raises:
            ConflictError: pool already distributed (without rerun) or a concurrent run
            PreconditionError: empty leaderboard, no eligible score, or settled grants block a rerun
        """
        lock = self._get_pool_lock(reward_pool_id)
        if lock.locked():
            raise ConflictError(f"Reward pool {reward_pool_id} is already being distributed")

        try:
            async with lock:
                result = await self._run_distribution(reward_pool_id, rules, total_reward_amount, rerun)
        finally:
            # Idle locks are dropped so the map only holds pools mid-run
            if not lock.locked() and self._pool_locks.get(reward_pool_id) is lock:
                del self._pool_locks[reward_pool_id]

        logger.info(
            f"Distributed pool {reward_pool_id} run {result.run_number} ({result.policy}): "
            f"{result.total_distributed} of {result.total_requested} across {result.grant_count} grants"
        )
        return result

    async def _run_distribution(self, reward_pool_id: int, rules: Optional[Sequence[dict]],
                                total_reward_amount, rerun: bool) -> DistributionResult:
        """One distribution transaction; the caller holds the pool lock."""
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(RewardPool).where(RewardPool.id == reward_pool_id).with_for_update()
                )
                pool = result.scalar_one_or_none()
                if pool is None:
                    raise NotFoundError("Reward pool", reward_pool_id)

                expected_runs = pool.run_count
                if expected_runs > 0 and not rerun:
                    raise ConflictError(
                        f"Reward pool {reward_pool_id} has already been distributed; pass rerun to replace it"
                    )

                total = self._resolve_total(pool, total_reward_amount)

                if rerun and expected_runs > 0:
                    settled = await session.execute(
                        select(RewardGrant.id).where(
                            RewardGrant.reward_pool_id == reward_pool_id,
                            RewardGrant.status != GrantStatus.PENDING
                        )
                    )
                    settled_ids = settled.scalars().all()
                    if settled_ids:
                        raise PreconditionError(
                            f"Reward pool {reward_pool_id} cannot be re-run: grants {list(settled_ids)} "
                            f"are past PENDING"
                        )

                allocations = await self._allocate(session, pool, rules, total)
                total_distributed = sum((a.amount for a in allocations), Decimal('0'))
                run_number = expected_runs + 1

                if rerun and expected_runs > 0:
                    await session.execute(
                        delete(RewardGrant).where(RewardGrant.reward_pool_id == reward_pool_id)
                    )

                # Compare-and-set: lose to any run that committed since we read the pool
                cas = await session.execute(
                    update(RewardPool)
                    .where(RewardPool.id == reward_pool_id, RewardPool.run_count == expected_runs)
                    .values(
                        run_count=run_number,
                        distributed_amount=total_distributed,
                        last_distributed_at=datetime.now()
                    )
                    .execution_options(synchronize_session=False)
                )
                if cas.rowcount != 1:
                    raise ConflictError(f"Reward pool {reward_pool_id} was distributed concurrently")

                run = DistributionRun(
                    reward_pool_id=reward_pool_id,
                    run_number=run_number,
                    policy=pool.distribution_policy,
                    total_requested=total,
                    total_distributed=total_distributed,
                    grant_count=sum(1 for a in allocations if a.amount > 0)
                )
                session.add(run)
                await session.flush()

                grants = {}
                for allocation in allocations:
                    if allocation.amount <= 0:
                        continue
                    grant = RewardGrant(
                        reward_pool_id=reward_pool_id,
                        distribution_run_id=run.id,
                        participant_id=allocation.participant_id,
                        rank=allocation.rank,
                        amount=allocation.amount,
                        percentage_of_pool=allocation.percentage,
                        status=GrantStatus.PENDING
                    )
                    session.add(grant)
                    grants[allocation.participant_id] = grant
                await session.flush()

                refs = await self._external_refs(session, [a.participant_id for a in allocations])

                policy_name = pool.distribution_policy.value
                views = [
                    AllocationView(
                        participant_id=a.participant_id,
                        external_ref=refs.get(a.participant_id, ""),
                        amount=a.amount,
                        percentage_of_pool=a.percentage,
                        rank=a.rank,
                        score=a.score,
                        grant_id=grants[a.participant_id].id if a.participant_id in grants else None
                    )
                    for a in allocations
                ]

        except EngineError:
            raise
        except IntegrityError as e:
            logger.error(f"Distribution of pool {reward_pool_id} collided with another run: {e}")
            raise ConflictError(f"Reward pool {reward_pool_id} was distributed concurrently") from e
        except SQLAlchemyError as e:
            logger.error(f"Distribution of pool {reward_pool_id} failed: {e}")
            raise TransactionError("distribute", str(e)) from e

        return DistributionResult(
            reward_pool_id=reward_pool_id,
            run_number=run_number,
            policy=policy_name,
            total_requested=total,
            total_distributed=total_distributed,
            allocations=views
        )

    async def preview(self, reward_pool_id: int, rules: Optional[Sequence[dict]] = None,
                      total_reward_amount=None) -> RewardPreview:
        """
        Compute what distribute would grant right now without writing anything.

        PROPORTIONAL previews also carry each holder's per-player breakdown and
        how many of their pre-match holdings were maintained through the match.
        Previews ignore the run count, so an already distributed pool can be
        previewed before a rerun.
        """
        async with self.get_session() as session:
            pool = await session.get(RewardPool, reward_pool_id)
            if pool is None:
                raise NotFoundError("Reward pool", reward_pool_id)

            total = self._resolve_total(pool, total_reward_amount)
            holders = []
            if pool.distribution_policy == DistributionPolicy.PROPORTIONAL:
                holders = await self._holder_breakdowns(session, pool.tournament_id)
            allocations = await self._allocate(session, pool, rules, total, holders=holders)
            refs = await self._external_refs(session, [a.participant_id for a in allocations])

            return RewardPreview(
                reward_pool_id=pool.id,
                tournament_id=pool.tournament_id,
                policy=pool.distribution_policy.value,
                total_requested=total,
                allocations=[
                    AllocationView(
                        participant_id=a.participant_id,
                        external_ref=refs.get(a.participant_id, ""),
                        amount=a.amount,
                        percentage_of_pool=a.percentage,
                        rank=a.rank,
                        score=a.score
                    )
                    for a in allocations
                ],
                holders=holders
            )

    async def list_pools(self, tournament_id: int) -> List[RewardPoolView]:
        async with self.get_session() as session:
            if await session.get(Tournament, tournament_id) is None:
                raise NotFoundError("Tournament", tournament_id)
            result = await session.execute(
                select(RewardPool)
                .where(RewardPool.tournament_id == tournament_id)
                .order_by(RewardPool.id)
            )
            return [self._to_view(pool) for pool in result.scalars().all()]

    @staticmethod
    def _resolve_total(pool: RewardPool, total_reward_amount) -> Decimal:
        """Amount a run distributes: the pool total unless a smaller amount is requested."""
        if total_reward_amount is None:
            return Decimal(pool.total_amount)
        total = _to_amount(total_reward_amount, "total_reward_amount")
        if total > Decimal(pool.total_amount):
            raise ValidationError(
                f"total_reward_amount {total} exceeds pool total {pool.total_amount}"
            )
        return total

    @staticmethod
    async def _external_refs(session: AsyncSession, participant_ids: List[int]) -> Dict[int, str]:
        if not participant_ids:
            return {}
        result = await session.execute(
            select(Participant.id, Participant.external_ref)
            .where(Participant.id.in_(participant_ids))
        )
        return dict(result.all())

    async def _allocate(self, session: AsyncSession, pool: RewardPool,
                        rules: Optional[Sequence[dict]], total: Decimal,
                        holders: Optional[List[HolderPreview]] = None) -> List[Allocation]:
        """Compute the run's allocations without writing anything."""
        quantum = Config.get_reward_quantum()

        if pool.distribution_policy == DistributionPolicy.RULES:
            if rules is not None:
                parsed: List[RewardRule] = RewardCalculator.parse_rules(rules)
            else:
                parsed = RewardCalculator.parse_rules(json.loads(pool.policy_parameters or '[]'))

            ranked = await self._rank_table(session, pool.tournament_id)
            if not ranked:
                raise PreconditionError(
                    f"Leaderboard for tournament {pool.tournament_id} is empty; build it before distributing"
                )
            return RewardCalculator.allocate_by_rules(total, parsed, ranked, quantum)

        if rules is not None:
            raise ValidationError("Proportional reward pools do not take rules")

        if not holders:
            holders = await self._holder_breakdowns(session, pool.tournament_id)
        scores = [(holder.participant_id, holder.score) for holder in holders]
        return RewardCalculator.allocate_proportionally(total, scores, quantum)
