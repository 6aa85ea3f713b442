"""
Scoring Strategy Pattern for fantasy point calculation

This module implements the Strategy pattern for converting cricket stat lines
into fantasy points. Every formula is a named, versioned ScoringPolicy so the
live and offline variants can coexist and be selected per tournament:

- live_v1: strike-rate bonus from 10 balls faced, three strike-rate and
  economy tiers, stumping 10 / run-out 6
- offline_v1: strike-rate bonus from the first ball, two tiers, stumping 12 /
  run-out 12

The captain/vice-captain roster aggregation lives here as well because it is
pure multiplier math with no storage concerns.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Dict, List, Optional, Tuple
from fantasy_engine.config import Config
from fantasy_engine.data_models.scoring import StatLine, FantasyPoints, RosterScore
import logging

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal('0.01')
BALLS_PER_OVER = 6

def round_points(value: Decimal) -> Decimal:
    """Round points half-up to 2 places"""
    return Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)

def overs_to_balls(overs) -> int:
    """
    Convert cricket over notation to legal balls bowled.

    The fractional digit counts balls, so 3.4 is 3 overs and 4 balls (22 balls).
    A ball digit above 5 is clamped to 5. Negative or unparseable input is 0.
    """
    if overs is None:
        return 0
    try:
        value = Decimal(str(overs))
    except InvalidOperation:
        return 0
    if not value.is_finite() or value <= 0:
        return 0

    whole = int(value)
    part = int((value - whole) * 10)
    part = min(max(part, 0), BALLS_PER_OVER - 1)
    return whole * BALLS_PER_OVER + part

def _count(value) -> int:
    """Clamp a stat counter to a non-negative int"""
    if value is None:
        return 0
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0

@dataclass(frozen=True)
class ScoringPolicy:
    """
    A named, versioned fantasy points formula.

    Tier tuples are (threshold, bonus) pairs. Milestones and wicket hauls are
    cumulative: every threshold reached adds its bonus. Strike-rate tiers are
    checked highest first and award only the first match (>=). Economy tiers
    are checked lowest first and award only the first match (strict <).
    """
    name: str
    version: int
    run_points: int = 1
    balls_faced_per_point: int = 2
    milestones: Tuple[Tuple[int, int], ...] = ((50, 8), (100, 16))
    strike_rate_min_balls: int = 10
    strike_rate_tiers: Tuple[Tuple[int, int], ...] = ((200, 6), (150, 4), (100, 2))
    wicket_points: int = 25
    balls_bowled_per_point: int = 2
    wicket_hauls: Tuple[Tuple[int, int], ...] = ((3, 8), (5, 16))
    economy_min_overs: int = 2
    economy_tiers: Tuple[Tuple[int, int], ...] = ((4, 6), (6, 4), (8, 2))
    catch_points: int = 8
    stumping_points: int = 10
    run_out_points: int = 6
    # Divides runs scored (not conceded) by overs. Reproduces a suspect legacy
    # formula for comparison only; no preset enables it.
    economy_uses_runs_scored: bool = False

    @property
    def label(self) -> str:
        return f"{self.name}@v{self.version}"

LIVE_V1 = ScoringPolicy(name="live_v1", version=1)

OFFLINE_V1 = ScoringPolicy(
    name="offline_v1",
    version=1,
    strike_rate_min_balls=1,
    strike_rate_tiers=((200, 6), (150, 4)),
    economy_tiers=((4, 6), (6, 4)),
    stumping_points=12,
    run_out_points=12,
)

SCORING_PRESETS: Dict[str, ScoringPolicy] = {
    LIVE_V1.name: LIVE_V1,
    OFFLINE_V1.name: OFFLINE_V1,
}

class PointsStrategy(ABC):
    """
    Abstract base class for fantasy point strategies.

    Each strategy converts a single stat line into a FantasyPoints breakdown.
    Strategies are total: they never raise for bad counters, they clamp them.
    """

    @abstractmethod
    def calculate(self, stat: StatLine) -> FantasyPoints:
        """
        Calculate fantasy points for one stat line.

        Args:
            stat: Raw player statistics

        Returns:
            FantasyPoints with batting/bowling/fielding breakdown
        """
        pass

    @abstractmethod
    def get_strategy_name(self) -> str:
        """Get the preset name of this strategy"""
        pass

class PointCalculator(PointsStrategy):
    """Policy-driven cricket points calculator."""

    def __init__(self, policy: ScoringPolicy = LIVE_V1):
        self.policy = policy

    def calculate(self, stat: StatLine) -> FantasyPoints:
        batting = self._batting_points(stat)
        bowling = self._bowling_points(stat)
        fielding = self._fielding_points(stat)

        points = FantasyPoints(
            player_key=stat.player_key,
            batting=round_points(batting),
            bowling=round_points(bowling),
            fielding=round_points(fielding),
            total=round_points(batting + bowling + fielding),
            preset=self.policy.name,
        )
        logger.debug(f"{self.policy.label} points for {stat.player_key}: {points.total}")
        return points

    def _batting_points(self, stat: StatLine) -> Decimal:
        policy = self.policy
        runs = _count(stat.runs_scored)
        balls = _count(stat.balls_faced)

        points = Decimal(runs * policy.run_points)
        points += balls // policy.balls_faced_per_point

        for threshold, bonus in policy.milestones:
            if runs >= threshold:
                points += bonus

        if balls > 0 and balls >= policy.strike_rate_min_balls:
            strike_rate = Decimal(runs) * 100 / Decimal(balls)
            for threshold, bonus in policy.strike_rate_tiers:
                if strike_rate >= threshold:
                    points += bonus
                    break

        return points

    def _bowling_points(self, stat: StatLine) -> Decimal:
        policy = self.policy
        wickets = _count(stat.wickets_taken)
        balls = overs_to_balls(stat.overs_bowled)

        points = Decimal(wickets * policy.wicket_points)
        points += balls // policy.balls_bowled_per_point

        for threshold, bonus in policy.wicket_hauls:
            if wickets >= threshold:
                points += bonus

        if balls > 0 and balls >= policy.economy_min_overs * BALLS_PER_OVER:
            runs = _count(stat.runs_scored) if policy.economy_uses_runs_scored else _count(stat.runs_conceded)
            economy = Decimal(runs) * BALLS_PER_OVER / Decimal(balls)
            for threshold, bonus in policy.economy_tiers:
                if economy < threshold:
                    points += bonus
                    break

        return points

    def _fielding_points(self, stat: StatLine) -> Decimal:
        policy = self.policy
        return Decimal(
            _count(stat.catches) * policy.catch_points
            + _count(stat.stumpings) * policy.stumping_points
            + _count(stat.run_outs) * policy.run_out_points
        )

    def get_strategy_name(self) -> str:
        return self.policy.name

class ScoringStrategyFactory:
    """Factory for creating point strategies from preset names"""

    @staticmethod
    def create_strategy(preset: Optional[str] = None) -> PointsStrategy:
        """
        Create the point calculator for a preset.

        Args:
            preset: Preset name ("live_v1", "offline_v1"); None uses Config.DEFAULT_SCORING_PRESET

        Returns:
            Configured PointCalculator
        """
        name = (preset or Config.DEFAULT_SCORING_PRESET).lower()
        policy = SCORING_PRESETS.get(name)
        if policy is None:
            raise ValueError(f"Unknown scoring preset: {name}")
        return PointCalculator(policy)

    @staticmethod
    def get_available_presets() -> List[str]:
        """Get list of available preset names"""
        return list(SCORING_PRESETS.keys())

def compute_points(stat: StatLine, preset: Optional[str] = None) -> FantasyPoints:
    """Convenience wrapper: compute points for one stat line with a named preset"""
    return ScoringStrategyFactory.create_strategy(preset).calculate(stat)

def aggregate_roster(player_keys: List[str], captain_key: str, vice_captain_key: str,
                     points_by_player: Dict[str, Decimal],
                     captain_multiplier: Decimal = None,
                     vice_captain_multiplier: Decimal = None) -> RosterScore:
    """
    Sum a roster's fantasy points with captain and vice-captain multipliers.

    Players with no recorded points contribute 0. The captain check runs
    first, so a player who is both captain and vice-captain gets only the
    captain multiplier.
    """
    captain_multiplier = Decimal(captain_multiplier if captain_multiplier is not None else Config.CAPTAIN_MULTIPLIER)
    vice_captain_multiplier = Decimal(
        vice_captain_multiplier if vice_captain_multiplier is not None else Config.VICE_CAPTAIN_MULTIPLIER
    )

    total = Decimal('0')
    captain_points = Decimal('0')
    vice_captain_points = Decimal('0')

    for player_key in player_keys:
        base = Decimal(points_by_player.get(player_key) or 0)
        if player_key == captain_key:
            weighted = base * captain_multiplier
            captain_points = weighted
        elif player_key == vice_captain_key:
            weighted = base * vice_captain_multiplier
            vice_captain_points = weighted
        else:
            weighted = base
        total += weighted

    return RosterScore(
        total_score=round_points(total),
        captain_multiplier=captain_multiplier,
        vice_captain_multiplier=vice_captain_multiplier,
        captain_points=round_points(captain_points),
        vice_captain_points=round_points(vice_captain_points),
    )
