"""
Configuration seed data for the fantasy engine.

Runtime parameters consulted by the scoring and reward services. A null
value means "fall back to the environment default in Config".
"""

import json
from sqlalchemy import select
from fantasy_engine.database.models import Configuration

INITIAL_CONFIGS = {
    # Scoring
    'scoring.default_preset': None,

    # Rewards
    'rewards.ignored_participants': [],
}

async def seed_configurations(db) -> int:
    """
    Insert any initial configuration keys that are missing.

    Existing values are left untouched so runtime overrides survive restarts.

    Returns:
        Number of keys inserted
    """
    inserted = 0
    async with db.transaction() as session:
        result = await session.execute(select(Configuration.key))
        existing = set(result.scalars().all())

        for key, value in INITIAL_CONFIGS.items():
            if key in existing:
                continue
            session.add(Configuration(key=key, value=json.dumps(value)))
            inserted += 1

    db.logger.info(f"Seeded {inserted} configuration parameters")
    return inserted
