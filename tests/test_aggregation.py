"""Tests for roster aggregation and the scoring service."""

from decimal import Decimal

import pytest

from fantasy_engine.operations.entry_operations import EntryOperations
from fantasy_engine.utils.exceptions import NotFoundError, ValidationError
from fantasy_engine.utils.scoring_strategies import aggregate_roster

from conftest import ROSTER_A, PLAYERS, batting, entry_payload, seed_three_way


# ============================================================================
# aggregate_roster (pure)
# ============================================================================


class TestAggregateRoster:
    def test_multipliers_exact(self):
        points = {key: Decimal('10') for key in ROSTER_A}
        score = aggregate_roster(ROSTER_A, 'player-01', 'player-02', points)
        # 15 + 12.5 + 9 * 10
        assert score.total_score == Decimal('117.5')
        assert score.captain_points == Decimal('15')
        assert score.vice_captain_points == Decimal('12.5')
        assert score.captain_multiplier == Decimal('1.5')
        assert score.vice_captain_multiplier == Decimal('1.25')

    def test_missing_points_count_as_zero(self):
        score = aggregate_roster(ROSTER_A, 'player-01', 'player-02', {'player-03': Decimal('7')})
        assert score.total_score == Decimal('7')

    def test_captain_wins_when_also_vice_captain(self):
        points = {key: Decimal('10') for key in ROSTER_A}
        score = aggregate_roster(ROSTER_A, 'player-01', 'player-01', points)
        assert score.total_score == Decimal('115')
        assert score.vice_captain_points == Decimal('0')

    def test_rounds_half_up(self):
        score = aggregate_roster(ROSTER_A, 'player-01', 'player-02', {'player-01': Decimal('33.33')})
        assert score.captain_points == Decimal('50.00')
        assert score.total_score == Decimal('50.00')

    def test_explicit_multipliers(self):
        points = {'player-01': Decimal('10'), 'player-02': Decimal('10')}
        score = aggregate_roster(ROSTER_A, 'player-01', 'player-02', points,
                                 captain_multiplier=Decimal('2'), vice_captain_multiplier=Decimal('1.5'))
        assert score.total_score == Decimal('35')


# ============================================================================
# Roster validation
# ============================================================================


class TestRosterValidation:
    def test_valid_roster(self):
        assert EntryOperations.validate_roster(ROSTER_A, 'player-01', 'player-11') == ROSTER_A

    def test_wrong_size(self):
        with pytest.raises(ValidationError):
            EntryOperations.validate_roster(ROSTER_A[:10], 'player-01', 'player-02')

    def test_duplicates(self):
        roster = ROSTER_A[:10] + ['player-01']
        with pytest.raises(ValidationError):
            EntryOperations.validate_roster(roster, 'player-01', 'player-02')

    def test_captain_outside_roster(self):
        with pytest.raises(ValidationError):
            EntryOperations.validate_roster(ROSTER_A, 'player-15', 'player-02')

    def test_vice_captain_outside_roster(self):
        with pytest.raises(ValidationError):
            EntryOperations.validate_roster(ROSTER_A, 'player-01', 'player-15')


# ============================================================================
# ScoringService (database)
# ============================================================================


class TestScoringService:
    def test_entry_scored_on_registration(self, run_engine):
        async def scenario(engine):
            tournament_id = await seed_three_way(engine)
            return await engine.scoring_service.get_scores(tournament_id)

        scores = run_engine(scenario)
        assert [(s.external_ref, s.total_score) for s in scores] == [
            ('alice', Decimal('85')),
            ('bob', Decimal('42.5')),
            ('carol', Decimal('10')),
        ]

    def test_stat_correction_rescores_entries(self, run_engine):
        async def scenario(engine):
            tournament_id = await seed_three_way(engine)
            result = await engine.submit_stat_lines({
                'tournament_id': tournament_id,
                'stat_lines': [batting('player-02', 10)],
            })
            return result, await engine.scoring_service.get_scores(tournament_id)

        result, scores = run_engine(scenario)
        # player-02 is alice's vice-captain and bob's captain
        assert sorted(view.external_ref for view in result.rescored) == ['alice', 'bob']
        by_ref = {s.external_ref: s.total_score for s in scores}
        assert by_ref['alice'] == Decimal('72.5')     # 60 + 12.5
        assert by_ref['bob'] == Decimal('27.5')       # 15 + 12.5
        assert by_ref['carol'] == Decimal('10')

    def test_resubmission_is_idempotent(self, run_engine):
        async def scenario(engine):
            tournament_id = await seed_three_way(engine)
            first = await engine.scoring_service.get_scores(tournament_id)
            payload = {
                'tournament_id': tournament_id,
                'stat_lines': [batting('player-01', 40), batting('player-02', 20)],
            }
            await engine.submit_stat_lines(payload)
            await engine.submit_stat_lines(payload)
            return first, await engine.scoring_service.get_scores(tournament_id)

        first, second = run_engine(scenario)
        assert first == second

    def test_submission_reports_points(self, run_engine):
        async def scenario(engine):
            created = await engine.create_tournament("Points", "offline_v1")
            tournament = await engine.db.get_tournament(created.id)
            return tournament, await engine.submit_stat_lines({
                'tournament_id': tournament.id,
                'stat_lines': [{'player_key': 'keeper', 'stumpings': 1, 'catches': 1}],
            })

        tournament, result = run_engine(scenario)
        assert tournament.scoring_preset == 'offline_v1'
        assert result.preset == 'offline_v1'
        assert result.points[0].total == Decimal('20')
        assert result.rescored == []

    def test_reregistering_replaces_roster(self, run_engine):
        async def scenario(engine):
            tournament_id = await seed_three_way(engine)
            # alice swaps captaincy to player-02
            return await engine.register_entry(
                entry_payload(tournament_id, 'alice', ROSTER_A, 'player-02', 'player-01')
            )

        score = run_engine(scenario)
        # 20 * 1.5 + 40 * 1.25
        assert score.total_score == Decimal('80')

    def test_recompute_after_default_preset_change(self, run_engine):
        async def scenario(engine):
            tournament = await engine.create_tournament("Default preset")
            await engine.submit_stat_lines({
                'tournament_id': tournament.id,
                'stat_lines': [{'player_key': 'player-03', 'stumpings': 1}],
            })
            await engine.register_entry(entry_payload(tournament.id, 'dave', ROSTER_A, 'player-01', 'player-02'))
            before = await engine.scoring_service.get_scores(tournament.id)

            await engine.config_service.set('scoring.default_preset', 'offline_v1', actor='test')
            after = await engine.scoring_service.recompute_tournament(tournament.id)
            return before, after

        before, after = run_engine(scenario)
        assert before[0].total_score == Decimal('10')
        assert after[0].total_score == Decimal('12')

    def test_unknown_tournament(self, run_engine):
        async def scenario(engine):
            with pytest.raises(NotFoundError):
                await engine.submit_stat_lines({'tournament_id': 999, 'stat_lines': [batting('x', 1)]})
            with pytest.raises(NotFoundError):
                await engine.register_entry(entry_payload(999, 'erin', ROSTER_A, 'player-01', 'player-02'))

        run_engine(scenario)

    def test_invalid_roster_writes_nothing(self, run_engine):
        async def scenario(engine):
            tournament = await engine.create_tournament("Bad roster")
            with pytest.raises(ValidationError):
                await engine.register_entry(
                    entry_payload(tournament.id, 'frank', PLAYERS[:10], 'player-01', 'player-02')
                )
            return await engine.db.get_participant_by_ref('frank')

        assert run_engine(scenario) is None
