from django.core.cache import cache as default_cache
from decimal import Decimal
import logging

logger = logging.getLogger(__name__)


class CacheService:
    """
    Thin wrapper around the Django cache for advisory aggregates.

    Cached values are never the source of truth: a missing key simply means the
    reader recomputes from the database. Counter updates are read-modify-write
    and are not atomic across processes.
    """

    def __init__(self, backend=None, default_timeout=300):
        self.backend = backend or default_cache
        self.default_timeout = default_timeout

    def get(self, key, default=None):
        return self.backend.get(key, default)

    def set(self, key, value, timeout=None):
        self.backend.set(key, value, self._timeout(timeout))

    def get_or_set(self, key, callback, timeout=None):
        value = self.backend.get(key)
        if value is None:
            value = callback()
            self.backend.set(key, value, self._timeout(timeout))
        return value

    def increment(self, key, deltas, timeout=None):
        """
        Add ``deltas`` to the counters of a cached aggregate in place.

        Only existing aggregates are touched; an absent key stays absent so the
        next reader computes a complete value instead of a partial one.
        Returns the updated aggregate or None.
        """
        current = self.backend.get(key)
        if current is None:
            return None
        updated = dict(current)
        for field, delta in deltas.items():
            updated[field] = updated.get(field, 0) + delta
        self.backend.set(key, updated, self._timeout(timeout))
        return updated

    def decrement(self, key, deltas, timeout=None):
        """Symmetric to :meth:`increment`, every counter floored at zero."""
        current = self.backend.get(key)
        if current is None:
            return None
        updated = dict(current)
        for field, delta in deltas.items():
            remaining = updated.get(field, 0) - delta
            updated[field] = remaining if remaining > 0 else _zero_like(remaining)
        self.backend.set(key, updated, self._timeout(timeout))
        return updated

    def bump(self, key, timeout=None):
        """Rolling counter: returns the value before this call."""
        current = self.backend.get(key, 0)
        self.backend.set(key, current + 1, self._timeout(timeout))
        return current

    def invalidate(self, *keys):
        keys = [k for k in keys if k]
        if keys:
            self.backend.delete_many(keys)
            logger.debug(f"Invalidated cache keys: {keys}")
        return keys

    def _timeout(self, timeout):
        return self.default_timeout if timeout is None else timeout


def _zero_like(value):
    return Decimal("0") if isinstance(value, Decimal) else 0


cache_service = CacheService()
