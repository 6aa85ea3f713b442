"""Tests for rank-rule reward distribution."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from fantasy_engine.data_models.rewards import RewardRule
from fantasy_engine.database.models import DistributionRun
from fantasy_engine.utils.exceptions import ConflictError, NotFoundError, PreconditionError, ValidationError
from fantasy_engine.utils.reward_math import RewardCalculator

from conftest import seed_three_way


STANDARD_RULES = [{'rank': 1, 'percentage': 50}, {'rank': '2-3', 'percentage': 30}]


async def rules_pool(engine, rules=STANDARD_RULES, total=1000, build=True):
    tournament_id = await seed_three_way(engine)
    if build:
        await engine.build_leaderboard({'tournament_id': tournament_id})
    pool = await engine.create_reward_pool({
        'tournament_id': tournament_id,
        'name': 'Main prize',
        'total_amount': total,
        'policy': 'rules',
        'rules': rules,
    })
    return pool.reward_pool_id


# ============================================================================
# RewardCalculator (pure)
# ============================================================================


class TestParseRules:
    @pytest.mark.parametrize("rank,expected", [
        (1, (1, 1)),
        ('4', (4, 4)),
        ('2-3', (2, 3)),
        (' 5 - 10 ', (5, 10)),
    ])
    def test_parse_rank(self, rank, expected):
        assert RewardCalculator.parse_rank(rank) == expected

    @pytest.mark.parametrize("rank", [0, -1, '0-2', '3-2', 'abc', '1-2-3', '', None, True, 1.5])
    def test_bad_rank(self, rank):
        with pytest.raises(ValidationError):
            RewardCalculator.parse_rank(rank)

    def test_parse_rules(self):
        rules = RewardCalculator.parse_rules(STANDARD_RULES)
        assert rules == [
            RewardRule(1, 1, Decimal('50')),
            RewardRule(2, 3, Decimal('30')),
        ]
        assert rules[1].to_payload() == {'rank': '2-3', 'percentage': '30'}

    @pytest.mark.parametrize("rules", [
        [],
        [{'rank': 1, 'percentage': 0}],
        [{'rank': 1, 'percentage': 101}],
        [{'rank': 1, 'percentage': 60}, {'rank': 2, 'percentage': 41}],
        [{'rank': 1}],
        [{'rank': 1, 'percentage': 10, 'bonus': 5}],
        [{'rank': 1, 'percentage': 'lots'}],
    ])
    def test_bad_rules(self, rules):
        with pytest.raises(ValidationError):
            RewardCalculator.parse_rules(rules)


class TestAllocateByRules:
    ranked = [(10, 1), (20, 2), (30, 3)]

    def test_conservation(self):
        rules = RewardCalculator.parse_rules(STANDARD_RULES)
        allocations = RewardCalculator.allocate_by_rules(Decimal('1000'), rules, self.ranked)
        assert [(a.participant_id, a.amount) for a in allocations] == [
            (10, Decimal('500')), (20, Decimal('150')), (30, Decimal('150')),
        ]
        assert sum(a.amount for a in allocations) == Decimal('800')
        assert allocations[1].percentage == Decimal('15')

    def test_range_remainder_goes_to_best_rank(self):
        rules = RewardCalculator.parse_rules([{'rank': '1-3', 'percentage': 100}])
        allocations = RewardCalculator.allocate_by_rules(Decimal('100'), rules, self.ranked)
        assert [a.amount for a in allocations] == [Decimal('33.34'), Decimal('33.33'), Decimal('33.33')]
        assert sum(a.amount for a in allocations) == Decimal('100')

    def test_range_splits_over_present_rows(self):
        rules = RewardCalculator.parse_rules([{'rank': '2-5', 'percentage': 40}])
        allocations = RewardCalculator.allocate_by_rules(Decimal('1000'), rules, self.ranked)
        assert [(a.participant_id, a.amount) for a in allocations] == [(20, Decimal('200')), (30, Decimal('200'))]

    def test_range_far_past_leaderboard(self):
        rules = [RewardRule(1, 300_000_000, Decimal('10'))]
        allocations = RewardCalculator.allocate_by_rules(Decimal('1000'), rules, [(10, 1), (20, 2)])
        assert [(a.participant_id, a.amount) for a in allocations] == [(10, Decimal('50')), (20, Decimal('50'))]
        assert [a.percentage for a in allocations] == [Decimal('5'), Decimal('5')]

    def test_absent_rank_contributes_nothing(self):
        rules = RewardCalculator.parse_rules([{'rank': 7, 'percentage': 40}])
        assert RewardCalculator.allocate_by_rules(Decimal('1000'), rules, self.ranked) == []

    def test_overlapping_rules_accumulate(self):
        rules = RewardCalculator.parse_rules([
            {'rank': '1-2', 'percentage': 40},
            {'rank': 2, 'percentage': 10},
        ])
        allocations = RewardCalculator.allocate_by_rules(Decimal('1000'), rules, self.ranked)
        by_participant = {a.participant_id: a for a in allocations}
        assert by_participant[10].amount == Decimal('200')
        assert by_participant[20].amount == Decimal('300')
        assert by_participant[20].percentage == Decimal('30')
        assert by_participant[20].rank == 2


# ============================================================================
# RewardService RULES policy (database)
# ============================================================================


class TestRulesDistribution:
    def test_distribution_conservation(self, run_engine):
        async def scenario(engine):
            pool_id = await rules_pool(engine)
            result = await engine.distribute_rewards({'reward_pool_id': pool_id})
            pool = await engine.reward_service.get_pool(pool_id)
            grants = await engine.settlement_service.get_pool_grants(pool_id)
            return result, pool, grants

        result, pool, grants = run_engine(scenario)
        assert [(a.external_ref, a.rank, a.amount) for a in result.allocations] == [
            ('alice', 1, Decimal('500')),
            ('bob', 2, Decimal('150')),
            ('carol', 3, Decimal('150')),
        ]
        assert result.total_distributed == Decimal('800')
        assert result.run_number == 1
        assert result.grant_count == 3
        assert pool.distributed_amount == Decimal('800')
        assert pool.run_count == 1
        assert [g.status for g in grants] == ['pending', 'pending', 'pending']
        assert sum(g.amount for g in grants) == Decimal('800')

    def test_rules_override_in_request(self, run_engine):
        async def scenario(engine):
            pool_id = await rules_pool(engine)
            return await engine.distribute_rewards({
                'reward_pool_id': pool_id,
                'rules': [{'rank': 2, 'percentage': 100}],
                'total_reward_amount': '250.50',
            })

        result = run_engine(scenario)
        assert [(a.external_ref, a.amount) for a in result.allocations] == [('bob', Decimal('250.50'))]
        assert result.total_requested == Decimal('250.50')

    def test_empty_leaderboard(self, run_engine):
        async def scenario(engine):
            pool_id = await rules_pool(engine, build=False)
            with pytest.raises(PreconditionError):
                await engine.distribute_rewards({'reward_pool_id': pool_id})
            return await engine.reward_service.get_pool(pool_id)

        pool = run_engine(scenario)
        assert pool.run_count == 0
        assert pool.distributed_amount == Decimal('0')

    def test_amount_above_pool_total(self, run_engine):
        async def scenario(engine):
            pool_id = await rules_pool(engine)
            with pytest.raises(ValidationError):
                await engine.distribute_rewards({'reward_pool_id': pool_id, 'total_reward_amount': 1000.01})

        run_engine(scenario)

    def test_invalid_pool_rules_rejected_at_creation(self, run_engine):
        async def scenario(engine):
            with pytest.raises(ValidationError):
                await rules_pool(engine, rules=[{'rank': '3-1', 'percentage': 10}])

        run_engine(scenario)

    def test_second_distribution_conflicts(self, run_engine):
        async def scenario(engine):
            pool_id = await rules_pool(engine)
            await engine.distribute_rewards({'reward_pool_id': pool_id})
            with pytest.raises(ConflictError):
                await engine.distribute_rewards({'reward_pool_id': pool_id})
            return await engine.settlement_service.get_pool_grants(pool_id)

        grants = run_engine(scenario)
        assert len(grants) == 3

    def test_rerun_replaces_pending_grants(self, run_engine):
        async def scenario(engine):
            pool_id = await rules_pool(engine)
            first = await engine.distribute_rewards({'reward_pool_id': pool_id})
            second = await engine.distribute_rewards({
                'reward_pool_id': pool_id,
                'rules': [{'rank': 1, 'percentage': 100}],
                'rerun': True,
            })
            pool = await engine.reward_service.get_pool(pool_id)
            grants = await engine.settlement_service.get_pool_grants(pool_id)
            return first, second, pool, grants

        first, second, pool, grants = run_engine(scenario)
        assert second.run_number == 2
        assert pool.run_count == 2
        assert pool.distributed_amount == Decimal('1000')
        assert first.grant_count == 3
        assert [(g.external_ref, g.amount, g.status) for g in grants] == [('alice', Decimal('1000'), 'pending')]

    def test_rerun_blocked_by_settled_grant(self, run_engine):
        async def scenario(engine):
            pool_id = await rules_pool(engine)
            result = await engine.distribute_rewards({'reward_pool_id': pool_id})
            await engine.advance_grant({'grant_id': result.allocations[0].grant_id, 'status': 'processing'})
            with pytest.raises(PreconditionError):
                await engine.distribute_rewards({'reward_pool_id': pool_id, 'rerun': True})
            return await engine.reward_service.get_pool(pool_id)

        pool = run_engine(scenario)
        assert pool.run_count == 1
        assert pool.distributed_amount == Decimal('800')

    def test_concurrent_runs_serialized(self, run_engine):
        async def scenario(engine):
            pool_id = await rules_pool(engine)
            return await asyncio.gather(
                engine.distribute_rewards({'reward_pool_id': pool_id}),
                engine.distribute_rewards({'reward_pool_id': pool_id}),
                return_exceptions=True,
            )

        outcomes = run_engine(scenario)
        assert sum(1 for o in outcomes if isinstance(o, ConflictError)) == 1
        assert sum(1 for o in outcomes if not isinstance(o, Exception)) == 1

    def test_range_reaching_far_past_leaderboard(self, run_engine):
        async def scenario(engine):
            pool_id = await rules_pool(engine, rules=[{'rank': '1-300000000', 'percentage': 10}])
            return await engine.distribute_rewards({'reward_pool_id': pool_id})

        result = run_engine(scenario)
        assert [(a.external_ref, a.amount) for a in result.allocations] == [
            ('alice', Decimal('33.34')),
            ('bob', Decimal('33.33')),
            ('carol', Decimal('33.33')),
        ]

    def test_failed_grant_insert_rolls_back_run(self, run_engine, monkeypatch):
        allocate = RewardCalculator.allocate_by_rules

        def with_duplicate_grant(*args, **kwargs):
            allocations = allocate(*args, **kwargs)
            return allocations + [allocations[-1]]

        async def scenario(engine):
            pool_id = await rules_pool(engine)
            monkeypatch.setattr(RewardCalculator, 'allocate_by_rules', staticmethod(with_duplicate_grant))
            with pytest.raises(ConflictError):
                await engine.distribute_rewards({'reward_pool_id': pool_id})

            pool = await engine.reward_service.get_pool(pool_id)
            grants = await engine.settlement_service.get_pool_grants(pool_id)
            async with engine.db.transaction() as session:
                runs = (await session.execute(
                    select(func.count()).select_from(DistributionRun)
                    .where(DistributionRun.reward_pool_id == pool_id)
                )).scalar_one()
            locks = dict(engine.reward_service._pool_locks)

            monkeypatch.undo()
            retry = await engine.distribute_rewards({'reward_pool_id': pool_id})
            return pool, grants, runs, locks, retry

        pool, grants, runs, locks, retry = run_engine(scenario)
        assert pool.run_count == 0
        assert pool.distributed_amount == Decimal('0')
        assert grants == []
        assert runs == 0
        assert locks == {}
        assert retry.run_number == 1
        assert retry.total_distributed == Decimal('800')

    def test_pool_lock_released_after_run(self, run_engine):
        async def scenario(engine):
            pool_id = await rules_pool(engine)
            await engine.distribute_rewards({'reward_pool_id': pool_id})
            after_success = dict(engine.reward_service._pool_locks)
            with pytest.raises(ConflictError):
                await engine.distribute_rewards({'reward_pool_id': pool_id})
            return after_success, dict(engine.reward_service._pool_locks)

        after_success, after_failure = run_engine(scenario)
        assert after_success == {}
        assert after_failure == {}


# ============================================================================
# Previews and pool listing
# ============================================================================


class TestRulesPreview:
    def test_preview_writes_nothing(self, run_engine):
        async def scenario(engine):
            pool_id = await rules_pool(engine)
            preview = await engine.preview_rewards({'reward_pool_id': pool_id})
            pool = await engine.reward_service.get_pool(pool_id)
            grants = await engine.settlement_service.get_pool_grants(pool_id)
            result = await engine.distribute_rewards({'reward_pool_id': pool_id})
            return preview, pool, grants, result

        preview, pool, grants, result = run_engine(scenario)
        assert preview.policy == 'rules'
        assert preview.holders == []
        assert [(a.external_ref, a.rank, a.amount) for a in preview.allocations] == [
            ('alice', 1, Decimal('500')),
            ('bob', 2, Decimal('150')),
            ('carol', 3, Decimal('150')),
        ]
        assert all(a.grant_id is None for a in preview.allocations)
        assert preview.total_distributed == Decimal('800')
        assert pool.run_count == 0
        assert grants == []
        assert [a.amount for a in result.allocations] == [a.amount for a in preview.allocations]

    def test_preview_with_override_after_distribution(self, run_engine):
        async def scenario(engine):
            pool_id = await rules_pool(engine)
            await engine.distribute_rewards({'reward_pool_id': pool_id})
            return await engine.preview_rewards({
                'reward_pool_id': pool_id,
                'rules': [{'rank': 1, 'percentage': 100}],
                'total_reward_amount': 200,
            })

        preview = run_engine(scenario)
        assert preview.total_requested == Decimal('200')
        assert [(a.external_ref, a.amount) for a in preview.allocations] == [('alice', Decimal('200'))]

    def test_preview_rejected(self, run_engine):
        async def scenario(engine):
            pool_id = await rules_pool(engine)
            with pytest.raises(ValidationError):
                await engine.preview_rewards({'reward_pool_id': pool_id, 'total_reward_amount': 5000})
            with pytest.raises(NotFoundError):
                await engine.preview_rewards({'reward_pool_id': 999})

        run_engine(scenario)

    def test_list_pools(self, run_engine):
        async def scenario(engine):
            pool_id = await rules_pool(engine)
            first = await engine.reward_service.get_pool(pool_id)
            second = await engine.create_reward_pool({
                'tournament_id': first.tournament_id,
                'name': 'Holders',
                'total_amount': 50,
                'policy': 'proportional',
            })
            other = await engine.create_tournament("Other")
            pools = await engine.get_reward_pools(first.tournament_id)
            empty = await engine.get_reward_pools(other.id)
            with pytest.raises(NotFoundError):
                await engine.get_reward_pools(999)
            return first, second, pools, empty

        first, second, pools, empty = run_engine(scenario)
        assert pools == [first, second]
        assert [p.policy for p in pools] == ['rules', 'proportional']
        assert empty == []
