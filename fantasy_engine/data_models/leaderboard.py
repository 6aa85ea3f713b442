"""
Leaderboard data models.

Provides immutable data transfer objects for tournament leaderboards.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class LeaderboardRow:
    """Single leaderboard row."""
    rank: int
    participant_id: int
    external_ref: str
    display_name: str
    total_score: Decimal
    built_at: Optional[datetime] = None

