from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation
from typing import Dict, List, Optional, Sequence, Tuple
from fantasy_engine.config import Config
from fantasy_engine.data_models.rewards import RewardRule, Allocation
from fantasy_engine.utils.exceptions import ValidationError, PreconditionError

HUNDRED = Decimal('100')
PERCENT_PLACES = Decimal('0.000001')

class RewardCalculator:
    """Handles reward pool allocation math for the settlement engine"""

    @staticmethod
    def parse_rank(rank) -> Tuple[int, int]:
        """
        Parse a rule rank into an inclusive (lo, hi) pair

        Args:
            rank: An int, a digit string, or a "lo-hi" range string

        Returns:
            Tuple of (rank_from, rank_to)
        """
        if isinstance(rank, bool):
            raise ValidationError(f"Invalid rank: {rank!r}")

        if isinstance(rank, int):
            lo = hi = rank
        elif isinstance(rank, str):
            text = rank.strip()
            if '-' in text:
                parts = text.split('-')
                if len(parts) != 2 or not parts[0].strip().isdigit() or not parts[1].strip().isdigit():
                    raise ValidationError(f"Invalid rank range: {rank!r}")
                lo, hi = int(parts[0]), int(parts[1])
            elif text.isdigit():
                lo = hi = int(text)
            else:
                raise ValidationError(f"Invalid rank: {rank!r}")
        else:
            raise ValidationError(f"Invalid rank: {rank!r}")

        if lo < 1:
            raise ValidationError(f"Rank must be 1 or greater, got {rank!r}")
        if lo > hi:
            raise ValidationError(f"Rank range start exceeds end: {rank!r}")
        return lo, hi

    @staticmethod
    def parse_rules(raw_rules: Sequence[dict]) -> List[RewardRule]:
        """
        Validate raw {rank, percentage} rules

        Raises ValidationError for a malformed rule, a percentage outside
        (0, 100], or percentages summing above 100.
        """
        if not raw_rules:
            raise ValidationError("At least one reward rule is required")

        rules = []
        for raw in raw_rules:
            if not isinstance(raw, dict) or set(raw.keys()) != {'rank', 'percentage'}:
                raise ValidationError(f"Reward rule must have exactly 'rank' and 'percentage': {raw!r}")

            lo, hi = RewardCalculator.parse_rank(raw['rank'])

            percentage = raw['percentage']
            if isinstance(percentage, bool):
                raise ValidationError(f"Invalid percentage: {percentage!r}")
            try:
                percentage = Decimal(str(percentage))
            except InvalidOperation:
                raise ValidationError(f"Invalid percentage: {raw['percentage']!r}")
            if not percentage.is_finite() or percentage <= 0 or percentage > HUNDRED:
                raise ValidationError(f"Percentage must be in (0, 100], got {raw['percentage']!r}")

            rules.append(RewardRule(rank_from=lo, rank_to=hi, percentage=percentage))

        total_percentage = sum((r.percentage for r in rules), Decimal('0'))
        if total_percentage > HUNDRED:
            raise ValidationError(f"Reward percentages sum to {total_percentage}, above 100")

        return rules

    @staticmethod
    def allocate_by_rules(total_amount: Decimal, rules: List[RewardRule],
                          ranked_participants: Sequence[Tuple[int, int]],
                          quantum: Optional[Decimal] = None) -> List[Allocation]:
        """
        Allocate a pool by rank rules

        Args:
            total_amount: Pool amount the percentages apply to
            rules: Parsed rules
            ranked_participants: (participant_id, rank) pairs from the leaderboard
            quantum: Smallest grant unit (defaults to Config.get_reward_quantum())

        Returns:
            One Allocation per participant with a non-zero share, in rank order.
            A participant matched by several rules accumulates their shares.
        """
        quantum = quantum or Config.get_reward_quantum()
        total_amount = Decimal(total_amount)
        ranked = sorted(ranked_participants, key=lambda row: row[1])
        rank_of = {participant_id: rank for participant_id, rank in ranked}

        amounts: Dict[int, Decimal] = {}
        percentages: Dict[int, Decimal] = {}

        for rule in rules:
            # Ranges may reach far past the leaderboard; only existing rows count
            members = [participant_id for participant_id, rank in ranked
                       if rule.rank_from <= rank <= rule.rank_to]
            if not members:
                continue

            nominal = (total_amount * rule.percentage / HUNDRED).quantize(quantum, rounding=ROUND_DOWN)
            share = (nominal / len(members)).quantize(quantum, rounding=ROUND_DOWN)
            share_percentage = rule.percentage / len(members)
            remainder = nominal - share * len(members)

            for index, participant_id in enumerate(members):
                amount = share + remainder if index == 0 else share
                amounts[participant_id] = amounts.get(participant_id, Decimal('0')) + amount
                percentages[participant_id] = percentages.get(participant_id, Decimal('0')) + share_percentage

        allocations = [
            Allocation(
                participant_id=participant_id,
                amount=amounts[participant_id],
                percentage=percentages[participant_id].quantize(PERCENT_PLACES, rounding=ROUND_HALF_UP),
                rank=rank_of[participant_id],
            )
            for participant_id in amounts
            if amounts[participant_id] > 0
        ]
        allocations.sort(key=lambda a: a.rank)
        return allocations

    @staticmethod
    def allocate_proportionally(total_amount: Decimal, scores: Sequence[Tuple[int, Decimal]],
                                quantum: Optional[Decimal] = None) -> List[Allocation]:
        """
        Allocate a pool in proportion to positive scores

        Shares are rounded down to the quantum and the remainder goes to the
        highest scorer (first one on ties), so the shares sum to total_amount
        exactly. Participants with a score of 0 or less are returned with a
        zero allocation.
        """
        quantum = quantum or Config.get_reward_quantum()
        total_amount = Decimal(total_amount)

        grand_total = sum((Decimal(score) for _, score in scores if score > 0), Decimal('0'))
        if grand_total <= 0:
            raise PreconditionError("Total score is zero: no eligible score to distribute against")

        top_participant = None
        top_score = None
        amounts: Dict[int, Decimal] = {}
        for participant_id, score in scores:
            score = Decimal(score)
            if score <= 0:
                amounts[participant_id] = Decimal('0')
                continue
            amounts[participant_id] = (total_amount * score / grand_total).quantize(quantum, rounding=ROUND_DOWN)
            if top_score is None or score > top_score:
                top_participant, top_score = participant_id, score

        remainder = total_amount - sum(amounts.values(), Decimal('0'))
        amounts[top_participant] += remainder

        return [
            Allocation(
                participant_id=participant_id,
                amount=amounts[participant_id],
                percentage=(amounts[participant_id] * HUNDRED / total_amount).quantize(
                    PERCENT_PLACES, rounding=ROUND_HALF_UP
                ),
                score=Decimal(score),
            )
            for participant_id, score in scores
        ]
