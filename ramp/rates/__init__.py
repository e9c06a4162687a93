"""
Rate resolution: upstream sources, the rate cache and quoting.
"""
from .cache import CachedRate, RateCache
from .resolver import OFFRAMP, ONRAMP, BaseRate, Quote, RateResolver
from .sources import (
    ExchangeRateApiSource,
    FawazahmedRateSource,
    PaycrestRateSource,
    RateSource,
    RateSourceError,
)

__all__ = [
    'BaseRate',
    'CachedRate',
    'ExchangeRateApiSource',
    'FawazahmedRateSource',
    'OFFRAMP',
    'ONRAMP',
    'PaycrestRateSource',
    'Quote',
    'RateCache',
    'RateResolver',
    'RateSource',
    'RateSourceError',
]
