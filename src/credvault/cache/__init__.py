"""Disk-based resolution caching for credvault.

This package provides :class:`ResolutionCache`, which remembers which
profile a directory resolved to for a configurable TTL using
:mod:`diskcache`. It is consumed by
:class:`~credvault.resolver.ProfileResolver` and controlled by
:class:`~credvault.models.CacheConfig` (``CREDVAULT_CACHE_TTL``).
"""

from credvault.cache.cache import ResolutionCache

__all__ = ["ResolutionCache"]
