"""Shared utilities."""
from .cache import CacheResult, PayloadCache

__all__ = ["CacheResult", "PayloadCache"]
