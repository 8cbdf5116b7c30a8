"""Centralized MLX memory configuration.

All MLX memory limits are set through this module so the working-set ceiling
is applied the same way no matter which code path triggers a load.

The ceiling is a fixed cap on the buffer cache, independent of how much
device memory is available, to keep the footprint small and predictable.
"""

from __future__ import annotations

import logging

import psutil

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


def apply_cache_limit(limit_bytes: int) -> int:
    """Set the MLX buffer cache ceiling to limit_bytes and return it."""
    import mlx.core as mx

    mx.set_cache_limit(limit_bytes)
    logger.debug("MLX cache limit set to %dMB", limit_bytes // BYTES_PER_MB)
    return limit_bytes


def active_memory_bytes() -> int:
    """Return bytes MLX currently holds in active arrays (weights included)."""
    import mlx.core as mx

    return int(mx.get_active_memory())


def available_memory_mb() -> int:
    """Return system memory available for a new model, in MB."""
    return int(psutil.virtual_memory().available / BYTES_PER_MB)
