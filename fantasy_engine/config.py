import os
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Engine configuration settings"""

    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///fantasy_engine.db')

    # Runtime settings
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    LOG_DIR = os.getenv('LOG_DIR', 'logs')

    # Scoring settings
    DEFAULT_SCORING_PRESET = os.getenv('DEFAULT_SCORING_PRESET', 'live_v1')
    CAPTAIN_MULTIPLIER = Decimal(os.getenv('CAPTAIN_MULTIPLIER', '1.5'))
    VICE_CAPTAIN_MULTIPLIER = Decimal(os.getenv('VICE_CAPTAIN_MULTIPLIER', '1.25'))
    ROSTER_SIZE = int(os.getenv('ROSTER_SIZE', 11))

    # Reward settings
    TOKEN_DECIMALS = int(os.getenv('TOKEN_DECIMALS', 8))       # Holding balances are stored in base units
    REWARD_DECIMAL_PLACES = int(os.getenv('REWARD_DECIMAL_PLACES', 2))
    IGNORED_PARTICIPANTS = os.getenv('IGNORED_PARTICIPANTS', '')  # Comma-separated external refs

    @classmethod
    def get_ignored_participants(cls):
        """Get the set of participant external refs excluded from proportional rewards"""
        if not cls.IGNORED_PARTICIPANTS:
            return set()
        return {ref.strip().lower() for ref in cls.IGNORED_PARTICIPANTS.split(',') if ref.strip()}

    @classmethod
    def get_reward_quantum(cls) -> Decimal:
        """Smallest currency unit a grant can carry, e.g. Decimal('0.01')"""
        return Decimal(1).scaleb(-cls.REWARD_DECIMAL_PLACES)

    @classmethod
    def get_async_database_url(cls) -> str:
        """Convert a plain sqlite URL to its async driver form"""
        database_url = cls.DATABASE_URL
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')
        return database_url

    @classmethod
    def validate(cls):
        """Validate that configuration values are usable"""
        if not cls.DATABASE_URL:
            raise ValueError("DATABASE_URL is required")
        if cls.ROSTER_SIZE < 1:
            raise ValueError("ROSTER_SIZE must be positive")
        if cls.CAPTAIN_MULTIPLIER <= 0 or cls.VICE_CAPTAIN_MULTIPLIER <= 0:
            raise ValueError("Captain and vice-captain multipliers must be positive")
        if cls.TOKEN_DECIMALS < 0 or cls.REWARD_DECIMAL_PLACES < 0:
            raise ValueError("TOKEN_DECIMALS and REWARD_DECIMAL_PLACES must not be negative")
