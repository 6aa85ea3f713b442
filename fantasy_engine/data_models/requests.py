"""
Request schemas for the engine's payload-level operations.

Each schema is a frozen dataclass built with ``from_payload(dict)``. Unknown
keys, missing required keys, wrong types and negative counters raise
ValidationError before any state is touched.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Tuple

from fantasy_engine.data_models.scoring import StatLine
from fantasy_engine.database.models import (
    DistributionPolicy, GrantStatus, HoldingPhase, MAX_INTEGER, MAX_BIG_INTEGER
)
from fantasy_engine.utils.exceptions import ValidationError


def _check_keys(payload, required: Tuple[str, ...], optional: Tuple[str, ...] = (), where: str = "payload"):
    if not isinstance(payload, dict):
        raise ValidationError(f"{where} must be an object")
    unknown = set(payload) - set(required) - set(optional)
    if unknown:
        raise ValidationError(f"Unknown field(s) in {where}: {', '.join(sorted(unknown))}")
    missing = [key for key in required if key not in payload]
    if missing:
        raise ValidationError(f"Missing field(s) in {where}: {', '.join(missing)}")


def _int(payload: dict, key: str, minimum: int = 0, default: Optional[int] = None,
         maximum: int = MAX_INTEGER) -> int:
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer, got {value!r}")
    if value < minimum:
        raise ValidationError(f"{key} must be >= {minimum}, got {value}")
    if value > maximum:
        raise ValidationError(f"{key} must be <= {maximum}, got {value}")
    return value


def _id(payload: dict, key: str) -> int:
    return _int(payload, key, minimum=1)


def _str(payload: dict, key: str, required: bool = True) -> Optional[str]:
    value = payload.get(key)
    if value is None and not required:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} must be a non-empty string")
    return value.strip()


def _decimal(payload: dict, key: str, positive: bool = False) -> Decimal:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise ValidationError(f"{key} must be a number, got {value!r}")
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{key} must be a number, got {value!r}")
    if not number.is_finite() or number < 0 or (positive and number == 0):
        raise ValidationError(f"{key} must be {'positive' if positive else 'non-negative'}, got {value!r}")
    return number


def _enum(enum_cls, payload: dict, key: str):
    value = payload.get(key)
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        for member in enum_cls:
            if value.strip().lower() in (member.value, member.name.lower()):
                return member
    allowed = ', '.join(member.value for member in enum_cls)
    raise ValidationError(f"{key} must be one of: {allowed}")


def _rules(payload: dict, key: str) -> Optional[List[dict]]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, list):
        raise ValidationError(f"{key} must be a list of {{rank, percentage}} objects")
    return [dict(rule) if isinstance(rule, dict) else rule for rule in value]


STAT_COUNTERS = (
    'runs_scored', 'balls_faced', 'wickets_taken', 'runs_conceded',
    'catches', 'stumpings', 'run_outs',
)


def parse_stat_line(payload: dict) -> StatLine:
    """Validate one stat line payload; counters default to 0."""
    _check_keys(payload, ('player_key',), STAT_COUNTERS + ('overs_bowled',), where="stat line")
    counters = {key: _int(payload, key, default=0) for key in STAT_COUNTERS}

    overs = _decimal(payload, 'overs_bowled') if 'overs_bowled' in payload else Decimal('0')
    balls_digit = int((overs - int(overs)) * 10)
    if overs != overs.quantize(Decimal('0.1')) or balls_digit > 5:
        raise ValidationError(f"overs_bowled must be in overs.balls notation (balls 0-5), got {payload['overs_bowled']!r}")

    return StatLine(player_key=_str(payload, 'player_key'), overs_bowled=overs, **counters)


@dataclass(frozen=True)
class SubmitStatLinesRequest:
    tournament_id: int
    stat_lines: List[StatLine]

    @classmethod
    def from_payload(cls, payload: dict) -> "SubmitStatLinesRequest":
        _check_keys(payload, ('tournament_id', 'stat_lines'))
        raw_lines = payload['stat_lines']
        if not isinstance(raw_lines, list) or not raw_lines:
            raise ValidationError("stat_lines must be a non-empty list")
        stat_lines = [parse_stat_line(raw) for raw in raw_lines]
        keys = [stat.player_key for stat in stat_lines]
        if len(set(keys)) != len(keys):
            raise ValidationError("stat_lines contains duplicate player_key values")
        return cls(tournament_id=_id(payload, 'tournament_id'), stat_lines=stat_lines)


@dataclass(frozen=True)
class RegisterEntryRequest:
    tournament_id: int
    participant: str
    players: List[str]
    captain: str
    vice_captain: str
    display_name: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "RegisterEntryRequest":
        _check_keys(payload, ('tournament_id', 'participant', 'players', 'captain', 'vice_captain'),
                    ('display_name',))
        players = payload['players']
        if not isinstance(players, list) or not all(isinstance(p, str) for p in players):
            raise ValidationError("players must be a list of player keys")
        return cls(
            tournament_id=_id(payload, 'tournament_id'),
            participant=_str(payload, 'participant'),
            players=list(players),
            captain=_str(payload, 'captain'),
            vice_captain=_str(payload, 'vice_captain'),
            display_name=_str(payload, 'display_name', required=False)
        )


@dataclass(frozen=True)
class RecordHoldingsRequest:
    tournament_id: int
    participant: str
    phase: HoldingPhase
    balances: Dict[str, int]

    @classmethod
    def from_payload(cls, payload: dict) -> "RecordHoldingsRequest":
        _check_keys(payload, ('tournament_id', 'participant', 'phase', 'balances'))
        raw_balances = payload['balances']
        if not isinstance(raw_balances, dict):
            raise ValidationError("balances must map player keys to base-unit integers")
        balances = {}
        for key in raw_balances:
            if not isinstance(key, str) or not key.strip():
                raise ValidationError(f"Invalid player key in balances: {key!r}")
            balances[key.strip()] = _int(raw_balances, key, maximum=MAX_BIG_INTEGER)
        return cls(
            tournament_id=_id(payload, 'tournament_id'),
            participant=_str(payload, 'participant'),
            phase=_enum(HoldingPhase, payload, 'phase'),
            balances=balances
        )


@dataclass(frozen=True)
class BuildLeaderboardRequest:
    tournament_id: int

    @classmethod
    def from_payload(cls, payload: dict) -> "BuildLeaderboardRequest":
        _check_keys(payload, ('tournament_id',))
        return cls(tournament_id=_id(payload, 'tournament_id'))


@dataclass(frozen=True)
class CreateRewardPoolRequest:
    tournament_id: int
    name: str
    total_amount: Decimal
    policy: DistributionPolicy
    rules: Optional[List[dict]] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "CreateRewardPoolRequest":
        _check_keys(payload, ('tournament_id', 'name', 'total_amount', 'policy'), ('rules',))
        return cls(
            tournament_id=_id(payload, 'tournament_id'),
            name=_str(payload, 'name'),
            total_amount=_decimal(payload, 'total_amount', positive=True),
            policy=_enum(DistributionPolicy, payload, 'policy'),
            rules=_rules(payload, 'rules')
        )


@dataclass(frozen=True)
class DistributeRewardsRequest:
    reward_pool_id: int
    rules: Optional[List[dict]] = None
    total_reward_amount: Optional[Decimal] = None
    rerun: bool = False

    @classmethod
    def from_payload(cls, payload: dict) -> "DistributeRewardsRequest":
        _check_keys(payload, ('reward_pool_id',), ('rules', 'total_reward_amount', 'rerun'))
        rerun = payload.get('rerun', False)
        if not isinstance(rerun, bool):
            raise ValidationError("rerun must be a boolean")
        total = None
        if payload.get('total_reward_amount') is not None:
            total = _decimal(payload, 'total_reward_amount', positive=True)
        return cls(
            reward_pool_id=_id(payload, 'reward_pool_id'),
            rules=_rules(payload, 'rules'),
            total_reward_amount=total,
            rerun=rerun
        )


@dataclass(frozen=True)
class PreviewRewardsRequest:
    reward_pool_id: int
    rules: Optional[List[dict]] = None
    total_reward_amount: Optional[Decimal] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "PreviewRewardsRequest":
        _check_keys(payload, ('reward_pool_id',), ('rules', 'total_reward_amount'))
        total = None
        if payload.get('total_reward_amount') is not None:
            total = _decimal(payload, 'total_reward_amount', positive=True)
        return cls(
            reward_pool_id=_id(payload, 'reward_pool_id'),
            rules=_rules(payload, 'rules'),
            total_reward_amount=total
        )


@dataclass(frozen=True)
class AdvanceGrantRequest:
    grant_id: int
    status: GrantStatus
    external_ref: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "AdvanceGrantRequest":
        _check_keys(payload, ('grant_id', 'status'), ('external_ref',))
        return cls(
            grant_id=_id(payload, 'grant_id'),
            status=_enum(GrantStatus, payload, 'status'),
            external_ref=_str(payload, 'external_ref', required=False)
        )
