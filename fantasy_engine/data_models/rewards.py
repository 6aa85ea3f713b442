"""
Reward data models.

Immutable data transfer objects for reward rules, distribution results and
settlement views.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional


@dataclass(frozen=True)
class RewardRule:
    """A parsed rank rule: ranks lo..hi inclusive share percentage of the pool."""
    rank_from: int
    rank_to: int
    percentage: Decimal

    @property
    def is_range(self) -> bool:
        return self.rank_to > self.rank_from

    def to_payload(self) -> dict:
        rank = f"{self.rank_from}-{self.rank_to}" if self.is_range else self.rank_from
        return {'rank': rank, 'percentage': str(self.percentage)}


@dataclass(frozen=True)
class Allocation:
    """In-memory share computed for one participant before anything is persisted."""
    participant_id: int
    amount: Decimal
    percentage: Decimal
    rank: Optional[int] = None
    score: Optional[Decimal] = None


@dataclass(frozen=True)
class AllocationView:
    """One line of a distribution result."""
    participant_id: int
    external_ref: str
    amount: Decimal
    percentage_of_pool: Decimal
    rank: Optional[int] = None
    score: Optional[Decimal] = None
    grant_id: Optional[int] = None


@dataclass(frozen=True)
class DistributionResult:
    """Outcome of one committed distribution run."""
    reward_pool_id: int
    run_number: int
    policy: str
    total_requested: Decimal
    total_distributed: Decimal
    allocations: List[AllocationView]

    @property
    def grant_count(self) -> int:
        return sum(1 for a in self.allocations if a.grant_id is not None)


@dataclass(frozen=True)
class HoldingBreakdown:
    """How one held player contributes to a holder's proportional score."""
    player_key: str
    pre_balance: Optional[int]  # None when the tournament has no pre-match snapshot
    post_balance: int
    maintained_balance: int
    player_points: Decimal
    points: Decimal


@dataclass(frozen=True)
class HolderPreview:
    """
    A holder's proportional score with per-player detail.

    maintained_holdings counts pre-match holdings still held in full after
    the match; total_holdings counts all pre-match holdings.
    """
    participant_id: int
    external_ref: str
    score: Decimal
    maintained_holdings: int
    total_holdings: int
    holdings: List[HoldingBreakdown]

    @property
    def eligibility_percentage(self) -> Decimal:
        if not self.total_holdings:
            return Decimal('0')
        return (Decimal(self.maintained_holdings) * 100 / self.total_holdings).quantize(Decimal('0.01'))


@dataclass(frozen=True)
class RewardPreview:
    """What a distribution would grant right now; nothing is written."""
    reward_pool_id: int
    tournament_id: int
    policy: str
    total_requested: Decimal
    allocations: List[AllocationView]
    holders: List[HolderPreview]

    @property
    def total_distributed(self) -> Decimal:
        return sum((a.amount for a in self.allocations), Decimal('0'))


@dataclass(frozen=True)
class RewardPoolView:
    reward_pool_id: int
    tournament_id: int
    name: str
    total_amount: Decimal
    distributed_amount: Decimal
    policy: str
    rules: List[RewardRule]
    run_count: int


@dataclass(frozen=True)
class GrantView:
    """Settlement view of a reward grant."""
    grant_id: int
    reward_pool_id: int
    participant_id: int
    external_ref: str
    rank: Optional[int]
    amount: Decimal
    percentage_of_pool: Decimal
    status: str
    external_settlement_ref: Optional[str]


@dataclass(frozen=True)
class LedgerView:
    """One lifetime-earnings ledger entry."""
    entry_id: int
    participant_id: int
    grant_id: int
    entry_type: str
    change_amount: Decimal
    balance_after: Decimal
    timestamp: Optional[datetime]


@dataclass(frozen=True)
class EarnerView:
    """Universal leaderboard row ranked by lifetime earnings."""
    rank: int
    participant_id: int
    external_ref: str
    display_name: str
    lifetime_earnings: Decimal
