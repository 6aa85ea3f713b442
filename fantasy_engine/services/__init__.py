"""
Services package for the fantasy engine.

Scoring, leaderboard, reward and settlement services built on BaseService.
"""

from .base import BaseService
from .configuration import ConfigurationService

__all__ = ['BaseService', 'ConfigurationService']
