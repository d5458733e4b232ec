"""
Storage Layer.

This package handles all data persistence: the job record store and its
backends, and the configuration file.
"""

from .config_manager import ConfigManager
from .store import FallbackStore, JobStore, MemoryStore, RedisStore, create_store

__all__ = [
    "ConfigManager",
    "FallbackStore",
    "JobStore",
    "MemoryStore",
    "RedisStore",
    "create_store",
]
