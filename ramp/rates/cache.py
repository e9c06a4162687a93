from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from django.core.cache import BaseCache, caches
from django.utils import timezone
from django.utils.dateparse import parse_datetime


@dataclass(frozen=True)
class CachedRate:
    rate: Decimal
    source: str
    fetched_at: datetime


class RateCache:
    """
    Time-boxed store of base rates keyed by currency pair.

    Entries are kept in the backend past their TTL so an expired rate can
    still be served when every upstream source is down. Freshness is judged
    against the injected clock, not the backend's own expiry.
    """

    key_prefix = 'ramp:rate:'

    def __init__(
        self,
        ttl_seconds: int = 1800,
        backend: Optional[BaseCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.backend = backend if backend is not None else caches['default']
        self.clock = clock or timezone.now

    def _key(self, pair: str) -> str:
        return f'{self.key_prefix}{pair}'

    def get(self, pair: str) -> Optional[CachedRate]:
        """Return the entry for ``pair`` regardless of age."""
        raw = self.backend.get(self._key(pair))
        if not raw:
            return None
        return CachedRate(
            rate=Decimal(raw['rate']),
            source=raw['source'],
            fetched_at=parse_datetime(raw['fetched_at']),
        )

    def get_fresh(self, pair: str) -> Optional[CachedRate]:
        entry = self.get(pair)
        if entry is None or not self.is_fresh(entry):
            return None
        return entry

    def is_fresh(self, entry: CachedRate) -> bool:
        return self.clock() - entry.fetched_at < self.ttl

    def expires_in(self, entry: CachedRate) -> int:
        remaining = self.ttl - (self.clock() - entry.fetched_at)
        return max(0, int(remaining.total_seconds()))

    def set(self, pair: str, rate: Decimal, source: str) -> CachedRate:
        entry = CachedRate(rate=rate, source=source, fetched_at=self.clock())
        self.backend.set(
            self._key(pair),
            {
                'rate': str(entry.rate),
                'source': entry.source,
                'fetched_at': entry.fetched_at.isoformat(),
            },
            timeout=None,
        )
        return entry

    def clear(self, pair: str) -> None:
        self.backend.delete(self._key(pair))
