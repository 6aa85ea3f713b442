from sqlalchemy import (
    Column, Integer, String, DateTime, Text, BigInteger, Numeric,
    ForeignKey, Enum as SQLEnum, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from decimal import Decimal
from enum import Enum

Base = declarative_base()

# Money and points are Decimal end to end
POINTS = Numeric(14, 2)
MONEY = Numeric(20, 8)
PERCENT = Numeric(12, 6)

# Largest values the Integer counter and BigInteger balance columns hold
MAX_INTEGER = 2 ** 31 - 1
MAX_BIG_INTEGER = 2 ** 63 - 1

class DistributionPolicy(Enum):
    RULES = "rules"
    PROPORTIONAL = "proportional"

class GrantStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

class HoldingPhase(Enum):
    PRE_MATCH = "pre_match"
    POST_MATCH = "post_match"

class LedgerEntryType(Enum):
    CREDIT = "credit"
    REVERSAL = "reversal"

class Tournament(Base):
    __tablename__ = 'tournaments'

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)

    # Scoring configuration - null means "use the configured default preset"
    scoring_preset = Column(String(50), nullable=True)

    # Metadata
    created_at = Column(DateTime, default=func.now())

    # Relationships
    stat_lines = relationship("PlayerStatLine", back_populates="tournament", cascade="all, delete-orphan")
    entries = relationship("ParticipantEntry", back_populates="tournament", cascade="all, delete-orphan")
    reward_pools = relationship("RewardPool", back_populates="tournament", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Tournament(id={self.id}, name='{self.name}', preset='{self.scoring_preset}')>"

class Participant(Base):
    __tablename__ = 'participants'

    id = Column(Integer, primary_key=True)
    external_ref = Column(String(200), unique=True, nullable=False, index=True)  # Wallet address or user id
    display_name = Column(String(100))

    # Cached lifetime earnings (sum of EarningsLedger for this participant)
    lifetime_earnings = Column(MONEY, default=Decimal('0'), nullable=False)

    # Metadata
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    entries = relationship("ParticipantEntry", back_populates="participant", cascade="all, delete-orphan")
    earnings_history = relationship("EarningsLedger", back_populates="participant", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Participant(id={self.id}, ref='{self.external_ref}', earnings={self.lifetime_earnings})>"

class PlayerStatLine(Base):
    """
    One player's observed performance in one tournament.

    The fantasy points derived from the stat line are stored alongside it,
    together with the scoring preset that produced them.
    """
    __tablename__ = 'player_stat_lines'

    id = Column(Integer, primary_key=True)
    tournament_id = Column(Integer, ForeignKey('tournaments.id'), nullable=False, index=True)
    player_key = Column(String(200), nullable=False)

    # Raw statistics
    runs_scored = Column(Integer, default=0, nullable=False)
    balls_faced = Column(Integer, default=0, nullable=False)
    wickets_taken = Column(Integer, default=0, nullable=False)
    overs_bowled = Column(Numeric(6, 1), default=Decimal('0'), nullable=False)  # Cricket notation: 3.4 = 3 overs 4 balls
    runs_conceded = Column(Integer, default=0, nullable=False)
    catches = Column(Integer, default=0, nullable=False)
    stumpings = Column(Integer, default=0, nullable=False)
    run_outs = Column(Integer, default=0, nullable=False)

    # Derived fantasy points
    batting_points = Column(POINTS, default=Decimal('0'), nullable=False)
    bowling_points = Column(POINTS, default=Decimal('0'), nullable=False)
    fielding_points = Column(POINTS, default=Decimal('0'), nullable=False)
    fantasy_points = Column(POINTS, default=Decimal('0'), nullable=False)
    scoring_preset = Column(String(50), nullable=False)

    # Metadata
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    tournament = relationship("Tournament", back_populates="stat_lines")

    __table_args__ = (
        UniqueConstraint('tournament_id', 'player_key', name='uq_stat_line_tournament_player'),
    )

    def __repr__(self):
        return f"<PlayerStatLine(tournament_id={self.tournament_id}, player='{self.player_key}', points={self.fantasy_points})>"

class ParticipantEntry(Base):
    """A participant's roster in one tournament: 11 players plus captain and vice-captain."""
    __tablename__ = 'participant_entries'

    id = Column(Integer, primary_key=True)
    participant_id = Column(Integer, ForeignKey('participants.id'), nullable=False, index=True)
    tournament_id = Column(Integer, ForeignKey('tournaments.id'), nullable=False, index=True)

    captain_key = Column(String(200), nullable=False)
    vice_captain_key = Column(String(200), nullable=False)

    # Metadata
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    participant = relationship("Participant", back_populates="entries")
    tournament = relationship("Tournament", back_populates="entries")
    players = relationship(
        "EntryPlayer", back_populates="entry", cascade="all, delete-orphan",
        order_by="EntryPlayer.slot"
    )

    __table_args__ = (
        UniqueConstraint('participant_id', 'tournament_id', name='uq_entry_participant_tournament'),
    )

    @property
    def player_keys(self):
        return [p.player_key for p in self.players]

    def __repr__(self):
        return f"<ParticipantEntry(participant_id={self.participant_id}, tournament_id={self.tournament_id}, captain='{self.captain_key}')>"

class EntryPlayer(Base):
    __tablename__ = 'entry_players'

    id = Column(Integer, primary_key=True)
    entry_id = Column(Integer, ForeignKey('participant_entries.id'), nullable=False, index=True)
    player_key = Column(String(200), nullable=False, index=True)
    slot = Column(Integer, nullable=False)  # 0-based roster order

    entry = relationship("ParticipantEntry", back_populates="players")

    __table_args__ = (
        UniqueConstraint('entry_id', 'player_key', name='uq_entry_player'),
        UniqueConstraint('entry_id', 'slot', name='uq_entry_slot'),
    )

    def __repr__(self):
        return f"<EntryPlayer(entry_id={self.entry_id}, slot={self.slot}, player='{self.player_key}')>"

class ParticipantScore(Base):
    """Aggregated tournament score for one participant (recomputable)."""
    __tablename__ = 'participant_scores'

    id = Column(Integer, primary_key=True)
    participant_id = Column(Integer, ForeignKey('participants.id'), nullable=False)
    tournament_id = Column(Integer, ForeignKey('tournaments.id'), nullable=False, index=True)

    total_score = Column(POINTS, default=Decimal('0'), nullable=False)
    captain_multiplier = Column(Numeric(6, 3), nullable=False)
    vice_captain_multiplier = Column(Numeric(6, 3), nullable=False)
    captain_points = Column(POINTS, default=Decimal('0'), nullable=False)
    vice_captain_points = Column(POINTS, default=Decimal('0'), nullable=False)

    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    participant = relationship("Participant")

    __table_args__ = (
        UniqueConstraint('participant_id', 'tournament_id', name='uq_score_participant_tournament'),
    )

    def __repr__(self):
        return f"<ParticipantScore(participant_id={self.participant_id}, tournament_id={self.tournament_id}, total={self.total_score})>"

class LeaderboardEntry(Base):
    """Rank snapshot, rebuilt wholesale for a tournament."""
    __tablename__ = 'leaderboard_entries'

    id = Column(Integer, primary_key=True)
    tournament_id = Column(Integer, ForeignKey('tournaments.id'), nullable=False, index=True)
    participant_id = Column(Integer, ForeignKey('participants.id'), nullable=False)

    rank = Column(Integer, nullable=False)
    total_score = Column(POINTS, nullable=False)
    built_at = Column(DateTime, default=func.now())

    participant = relationship("Participant")

    __table_args__ = (
        UniqueConstraint('tournament_id', 'participant_id', name='uq_leaderboard_tournament_participant'),
    )

    def __repr__(self):
        return f"<LeaderboardEntry(tournament_id={self.tournament_id}, participant_id={self.participant_id}, rank={self.rank})>"

class HoldingSnapshot(Base):
    """
    Token-style holdings of a participant in one player, captured before or after a match.

    Balances are stored in integer base units (see Config.TOKEN_DECIMALS).
    """
    __tablename__ = 'holding_snapshots'

    id = Column(Integer, primary_key=True)
    tournament_id = Column(Integer, ForeignKey('tournaments.id'), nullable=False, index=True)
    participant_id = Column(Integer, ForeignKey('participants.id'), nullable=False, index=True)
    player_key = Column(String(200), nullable=False)
    phase = Column(SQLEnum(HoldingPhase), nullable=False)
    balance = Column(BigInteger, nullable=False, default=0)

    recorded_at = Column(DateTime, default=func.now())

    participant = relationship("Participant")

    __table_args__ = (
        UniqueConstraint('tournament_id', 'participant_id', 'player_key', 'phase', name='uq_holding_snapshot'),
        CheckConstraint('balance >= 0', name='ck_holding_balance_non_negative'),
    )

    def __repr__(self):
        return f"<HoldingSnapshot(participant_id={self.participant_id}, player='{self.player_key}', phase={self.phase.value}, balance={self.balance})>"

class RewardPool(Base):
    __tablename__ = 'reward_pools'

    id = Column(Integer, primary_key=True)
    tournament_id = Column(Integer, ForeignKey('tournaments.id'), nullable=False, index=True)
    name = Column(String(200), nullable=False)

    total_amount = Column(MONEY, nullable=False)
    distributed_amount = Column(MONEY, default=Decimal('0'), nullable=False)
    distribution_policy = Column(SQLEnum(DistributionPolicy), nullable=False)
    policy_parameters = Column(Text, nullable=True)  # JSON rules list for RULES, null for PROPORTIONAL

    # Serialization guard: bumped by compare-and-set on every committed run
    run_count = Column(Integer, default=0, nullable=False)
    last_distributed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())

    tournament = relationship("Tournament", back_populates="reward_pools")
    grants = relationship("RewardGrant", back_populates="reward_pool", cascade="all, delete-orphan")
    runs = relationship("DistributionRun", back_populates="reward_pool", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint('total_amount > 0', name='ck_pool_total_positive'),
    )

    def __repr__(self):
        return f"<RewardPool(id={self.id}, name='{self.name}', total={self.total_amount}, distributed={self.distributed_amount})>"

class DistributionRun(Base):
    """One committed distribution of a reward pool."""
    __tablename__ = 'distribution_runs'

    id = Column(Integer, primary_key=True)
    reward_pool_id = Column(Integer, ForeignKey('reward_pools.id'), nullable=False, index=True)
    run_number = Column(Integer, nullable=False)
    policy = Column(SQLEnum(DistributionPolicy), nullable=False)

    total_requested = Column(MONEY, nullable=False)
    total_distributed = Column(MONEY, nullable=False)
    grant_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=func.now())

    reward_pool = relationship("RewardPool", back_populates="runs")

    __table_args__ = (
        UniqueConstraint('reward_pool_id', 'run_number', name='uq_distribution_run_number'),
    )

    def __repr__(self):
        return f"<DistributionRun(pool_id={self.reward_pool_id}, run={self.run_number}, distributed={self.total_distributed})>"

class RewardGrant(Base):
    __tablename__ = 'reward_grants'

    id = Column(Integer, primary_key=True)
    reward_pool_id = Column(Integer, ForeignKey('reward_pools.id'), nullable=False, index=True)
    distribution_run_id = Column(Integer, ForeignKey('distribution_runs.id'), nullable=False, index=True)
    participant_id = Column(Integer, ForeignKey('participants.id'), nullable=False, index=True)

    rank = Column(Integer, nullable=True)  # Null for proportional grants without a leaderboard rank
    amount = Column(MONEY, nullable=False)
    percentage_of_pool = Column(PERCENT, nullable=False)

    status = Column(SQLEnum(GrantStatus), default=GrantStatus.PENDING, nullable=False)
    external_settlement_ref = Column(String(200), nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    reward_pool = relationship("RewardPool", back_populates="grants")
    participant = relationship("Participant")

    __table_args__ = (
        UniqueConstraint('reward_pool_id', 'participant_id', name='uq_grant_pool_participant'),
        CheckConstraint('amount >= 0', name='ck_grant_amount_non_negative'),
    )

    def __repr__(self):
        return f"<RewardGrant(id={self.id}, participant_id={self.participant_id}, amount={self.amount}, status={self.status.value})>"

class EarningsLedger(Base):
    """
    Lifetime-earnings ledger with full audit trail.

    One CREDIT per grant when it enters PROCESSING, at most one REVERSAL if it
    later fails. The unique constraint makes a double credit impossible.
    """
    __tablename__ = 'earnings_ledger'

    id = Column(Integer, primary_key=True)
    participant_id = Column(Integer, ForeignKey('participants.id'), nullable=False, index=True)
    grant_id = Column(Integer, ForeignKey('reward_grants.id'), nullable=False)
    entry_type = Column(SQLEnum(LedgerEntryType), nullable=False)

    change_amount = Column(MONEY, nullable=False)    # Positive for credits, negative for reversals
    balance_after = Column(MONEY, nullable=False)

    timestamp = Column(DateTime, default=func.now())

    participant = relationship("Participant", back_populates="earnings_history")
    grant = relationship("RewardGrant")

    __table_args__ = (
        UniqueConstraint('grant_id', 'entry_type', name='uq_ledger_grant_entry_type'),
    )

    def __repr__(self):
        return f"<EarningsLedger(participant_id={self.participant_id}, grant_id={self.grant_id}, change={self.change_amount}, balance_after={self.balance_after})>"

class Configuration(Base):
    __tablename__ = 'configurations'

    id = Column(Integer, primary_key=True)
    key = Column(String(200), unique=True, nullable=False)
    value = Column(Text, nullable=False)  # JSON-encoded

    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Configuration(key='{self.key}')>"

class AuditLog(Base):
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True)
    actor = Column(String(200), nullable=False)
    action = Column(String(100), nullable=False)
    details = Column(Text)  # JSON-encoded

    created_at = Column(DateTime, default=func.now())

    def __repr__(self):
        return f"<AuditLog(actor='{self.actor}', action='{self.action}')>"
