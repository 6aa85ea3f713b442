"""
Scoring data models.

Immutable data transfer objects passed between the point calculator, the
score aggregator and the engine's callers.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import List


@dataclass(frozen=True)
class StatLine:
    """One player's observed performance in one tournament."""
    player_key: str
    runs_scored: int = 0
    balls_faced: int = 0
    wickets_taken: int = 0
    overs_bowled: Decimal = Decimal('0')
    runs_conceded: int = 0
    catches: int = 0
    stumpings: int = 0
    run_outs: int = 0


@dataclass(frozen=True)
class FantasyPoints:
    """Points derived from a stat line, rounded to 2 places."""
    player_key: str
    batting: Decimal
    bowling: Decimal
    fielding: Decimal
    total: Decimal
    preset: str


@dataclass(frozen=True)
class RosterScore:
    """Result of applying captain/vice-captain multipliers to a roster."""
    total_score: Decimal
    captain_multiplier: Decimal
    vice_captain_multiplier: Decimal
    captain_points: Decimal
    vice_captain_points: Decimal


@dataclass(frozen=True)
class ParticipantScoreView:
    """Persisted tournament score for one participant."""
    participant_id: int
    external_ref: str
    tournament_id: int
    total_score: Decimal
    captain_multiplier: Decimal
    vice_captain_multiplier: Decimal


@dataclass(frozen=True)
class StatSubmissionResult:
    """Outcome of a stat-line submission."""
    tournament_id: int
    preset: str
    points: List[FantasyPoints]
    rescored: List[ParticipantScoreView]
