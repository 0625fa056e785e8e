"""In-process TTL cache of payment snapshots keyed by payment id.

The map is shared by every in-flight request. Lookups take a shared read lock
so they run side by side; put/invalidate/clear and stale-entry eviction take
the exclusive write lock. Waiting writers block new readers, so a steady read
load cannot starve a writer.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from backend.app.core.errors import CacheError
from backend.app.core.settings import get_settings
from backend.app.schemas.payment import Payment

logger = logging.getLogger(__name__)


class ReadWriteLock:
    def __init__(self):
        self._condition = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer_active = False
        self._writers_waiting = 0

    @contextmanager
    def read(self):
        with self._condition:
            while self._writer_active or self._writers_waiting:
                self._condition.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._condition:
                self._readers -= 1
                if self._readers == 0:
                    self._condition.notify_all()

    @contextmanager
    def write(self):
        with self._condition:
            self._writers_waiting += 1
            try:
                while self._writer_active or self._readers:
                    self._condition.wait()
            finally:
                self._writers_waiting -= 1
            self._writer_active = True
        try:
            yield
        finally:
            with self._condition:
                self._writer_active = False
                self._condition.notify_all()


@dataclass(frozen=True)
class CachedPayment:
    payment: Payment
    cached_at: float
    ttl_seconds: float

    def is_expired(self, now: float) -> bool:
        return now - self.cached_at > self.ttl_seconds


class PaymentCache:
    def __init__(self, default_ttl: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, CachedPayment] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._lock = ReadWriteLock()
        self._clock = clock
        self.default_ttl = default_ttl if default_ttl is not None else get_settings().cache_ttl_seconds

    def get(self, payment_id: str) -> Optional[Payment]:
        with self._lock.read():
            entry = self._entries.get(payment_id)
            now = self._clock()
            if entry is not None and not entry.is_expired(now):
                logger.debug("Cache hit for payment %s", payment_id)
                return entry.payment.model_copy(deep=True)
        if entry is None:
            logger.debug("Cache miss for payment %s", payment_id)
            return None

        with self._lock.write():
            # A writer may have replaced the entry while the read lock was released.
            if self._entries.get(payment_id) is entry:
                del self._entries[payment_id]
        logger.debug("Evicted stale cache entry for payment %s", payment_id)
        return None

    def _entry(self, payment: Payment, ttl: Optional[float]) -> CachedPayment:
        ttl_seconds = self.default_ttl if ttl is None else ttl
        if ttl_seconds <= 0:
            raise CacheError(f"TTL must be positive, got {ttl_seconds}")
        return CachedPayment(payment=payment.model_copy(deep=True), cached_at=self._clock(), ttl_seconds=ttl_seconds)

    def put(self, payment_id: str, payment: Payment, ttl: Optional[float] = None) -> None:
        entry = self._entry(payment, ttl)
        with self._lock.write():
            self._entries[payment_id] = entry

    def generation(self, payment_id: str) -> Tuple[int, int]:
        """Token that changes whenever ``payment_id`` is invalidated or the cache is cleared."""
        with self._lock.read():
            return self._epoch, self._generations.get(payment_id, 0)

    def put_if_generation(
        self,
        payment_id: str,
        payment: Payment,
        generation: Tuple[int, int],
        ttl: Optional[float] = None,
    ) -> bool:
        """Store a snapshot read from storage unless a write invalidated the id since ``generation``."""
        entry = self._entry(payment, ttl)
        with self._lock.write():
            if (self._epoch, self._generations.get(payment_id, 0)) != generation:
                logger.debug("Discarded snapshot of payment %s read before a write", payment_id)
                return False
            self._entries[payment_id] = entry
        return True

    def invalidate(self, payment_id: str) -> None:
        with self._lock.write():
            self._entries.pop(payment_id, None)
            self._generations[payment_id] = self._generations.get(payment_id, 0) + 1

    def clear(self) -> None:
        with self._lock.write():
            self._entries.clear()
            self._generations.clear()
            self._epoch += 1

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)

    def __contains__(self, payment_id: str) -> bool:
        with self._lock.read():
            return payment_id in self._entries
