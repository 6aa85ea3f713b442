"""
Configuration management service for the fantasy engine.

Provides async runtime configuration with in-memory caching and an audit
trail. Values stored here override the environment defaults in Config.
"""

import json
import logging
from typing import Any, Dict
from sqlalchemy import select
from fantasy_engine.services.base import BaseService
from fantasy_engine.database.models import Configuration, AuditLog

logger = logging.getLogger(__name__)

class ConfigurationService(BaseService):
    """Manages engine configuration with simple caching and audit trail."""

    def __init__(self, session_factory):
        """
        Initialize configuration service with session factory.

        Args:
            session_factory: Async session factory from Database class
        """
        super().__init__(session_factory)
        self._cache: Dict[str, Any] = {}

    async def load_all(self):
        """Load all configurations from database into memory with error handling."""
        new_cache = {}
        async with self.get_session() as session:
            result = await session.execute(select(Configuration))
            configs = result.scalars().all()

            for config in configs:
                try:
                    new_cache[config.key] = json.loads(config.value)
                except json.JSONDecodeError:
                    logger.warning(f"Invalid JSON for config key '{config.key}', skipping")
                    continue

        self._cache = new_cache
        logger.info(f"Loaded {len(self._cache)} configuration parameters")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by key.

        Args:
            key: Configuration key (e.g., 'scoring.default_preset')
            default: Default value if key not found or unset

        Returns:
            Configuration value or default
        """
        value = self._cache.get(key)
        return default if value is None else value

    async def set(self, key: str, value: Any, actor: str):
        """
        Set configuration value and persist to database with cache consistency.

        Args:
            key: Configuration key
            value: Configuration value (will be JSON-encoded)
            actor: Who made the change, recorded in the audit trail
        """
        async with self.get_session() as session:
            result = await session.execute(
                select(Configuration).where(Configuration.key == key)
            )
            config = result.scalar_one_or_none()

            if config:
                old_value = config.value
                config.value = json.dumps(value)
            else:
                old_value = None
                config = Configuration(
                    key=key,
                    value=json.dumps(value)
                )
                session.add(config)

            old_value_parsed = None
            if old_value:
                try:
                    old_value_parsed = json.loads(old_value)
                except json.JSONDecodeError:
                    old_value_parsed = {"error": "invalid JSON", "raw": old_value}

            audit_entry = AuditLog(
                actor=actor,
                action='config_set',
                details=json.dumps({
                    'key': key,
                    'old_value': old_value_parsed,
                    'new_value': value
                })
            )
            session.add(audit_entry)

            # Commit happens automatically on context exit

        # Reload after the write so the cache matches the database
        await self.load_all()
        logger.info(f"Configuration '{key}' set by {actor}")

    def list_all(self) -> Dict[str, Any]:
        """Return all configuration values."""
        return self._cache.copy()

    def get_by_category(self, category: str) -> Dict[str, Any]:
        """
        Get all configuration values for a specific category.

        Args:
            category: Configuration category (e.g., 'scoring', 'rewards')

        Returns:
            Dictionary of configuration values for the category
        """
        prefix = f"{category}."
        return {
            key[len(prefix):]: value
            for key, value in self._cache.items()
            if key.startswith(prefix)
        }
