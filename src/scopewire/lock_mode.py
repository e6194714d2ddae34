from __future__ import annotations

from enum import Enum


class LockMode(Enum):
    """Select the ownership and locking strategy of a container tree.

    The mode is chosen when the root container is created and inherited by
    every child entered from it. Both modes keep single-flight bookkeeping,
    so concurrent asyncio tasks on one loop never run the same cached
    provider twice; only the mutual exclusion around the cache differs.
    """

    THREAD = "thread"
    """Guard each container's cache and finalizer stack with ``threading.Lock``."""

    NONE = "none"
    """Single-owner mode: skip locking for containers never shared across threads."""
