"""
Fantasy cricket scoring and reward settlement engine.
"""

__version__ = "0.1.0"
