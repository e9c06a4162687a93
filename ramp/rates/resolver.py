"""
Exchange-rate resolution and fee-adjusted quoting.

The resolver never raises to its caller: when every upstream source is
down it serves the last known rate, and when there is none it serves a
configured last-resort rate. Either way the quote says so in ``warning``.
"""
from dataclasses import asdict, dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, ROUND_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from django.conf import settings
from loguru import logger

from .cache import RateCache
from .sources import RateSource, default_sources


FIAT_PLACES = Decimal('0.01')
STABLECOIN_PLACES = Decimal('0.000001')
HUNDRED = Decimal('100')

ONRAMP = 'onramp'
OFFRAMP = 'offramp'


def quantize_fiat(value: Decimal, rounding=ROUND_HALF_UP) -> Decimal:
    return value.quantize(FIAT_PLACES, rounding=rounding)


def quantize_stablecoin(value: Decimal, rounding=ROUND_DOWN) -> Decimal:
    return value.quantize(STABLECOIN_PLACES, rounding=rounding)


@dataclass(frozen=True)
class BaseRate:
    rate: Decimal
    source: str
    is_cached: bool
    warning: Optional[str] = None


@dataclass(frozen=True)
class Quote:
    """Fee-adjusted conversion for one direction. Never persisted."""
    direction: str
    base_rate: Decimal
    marked_up_rate: Decimal
    markup: Decimal
    fee_percent: Decimal
    raw_fee: Decimal
    fee_amount: Decimal
    fee_cap: Decimal
    capped_fee: bool
    source_amount: Decimal
    target_amount: Decimal
    total_payable: Decimal
    effective_rate: Decimal
    source: str
    is_cached: bool
    lp_fee: Decimal = Decimal('0')
    warning: Optional[str] = None

    @property
    def net_source_amount(self) -> Decimal:
        """Stablecoin left after the offramp fee is deducted."""
        return self.source_amount - self.fee_amount

    def as_dict(self) -> Dict[str, Any]:
        data = {}
        for key, value in asdict(self).items():
            data[key] = str(value) if isinstance(value, Decimal) else value
        return data


class RateResolver:
    """Resolves the base rate and builds onramp/offramp quotes from it."""

    PAIR = 'USDC_NGN'

    def __init__(
        self,
        sources: Optional[List[RateSource]] = None,
        cache: Optional[RateCache] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        config = config or {}
        self.sources = sources if sources is not None else default_sources(settings)
        self.cache = cache or RateCache(ttl_seconds=getattr(settings, 'RATE_CACHE_TTL_SECONDS', 1800))
        self.fallback_rate = Decimal(config.get('fallback_rate', getattr(settings, 'RATE_FALLBACK', '1550')))
        self.onramp_markup = Decimal(config.get('onramp_markup', getattr(settings, 'ONRAMP_MARKUP', '40')))
        self.onramp_fee_percent = Decimal(
            config.get('onramp_fee_percent', getattr(settings, 'ONRAMP_FEE_PERCENT', '1.5')))
        self.onramp_fee_cap = Decimal(config.get('onramp_fee_cap', getattr(settings, 'ONRAMP_FEE_CAP', '2000')))
        self.offramp_markup = Decimal(config.get('offramp_markup', getattr(settings, 'OFFRAMP_MARKUP', '20')))
        self.offramp_fee_percent = Decimal(
            config.get('offramp_fee_percent', getattr(settings, 'OFFRAMP_FEE_PERCENT', '1')))
        self.offramp_fee_cap = Decimal(config.get('offramp_fee_cap', getattr(settings, 'OFFRAMP_FEE_CAP', '2')))
        self.lp_fee_percent = Decimal(
            config.get('lp_fee_percent', getattr(settings, 'OFFRAMP_LP_FEE_PERCENT', '0.5')))

    def get_base_rate(self) -> BaseRate:
        cached = self.cache.get_fresh(self.PAIR)
        if cached is not None:
            logger.debug('Using cached {} rate {} from {}', self.PAIR, cached.rate, cached.source)
            return BaseRate(rate=cached.rate, source=cached.source, is_cached=True)

        for source in self.sources:
            try:
                rate = source.fetch()
            except Exception as exc:
                logger.warning('Rate source {} failed: {}', source.name, exc)
                continue
            self.cache.set(self.PAIR, rate, source.name)
            logger.info('Fetched {} rate {} from {}', self.PAIR, rate, source.name)
            return BaseRate(rate=rate, source=source.name, is_cached=False)

        stale = self.cache.get(self.PAIR)
        if stale is not None:
            logger.warning('All rate sources failed, serving expired rate {} from {}', stale.rate, stale.source)
            return BaseRate(
                rate=stale.rate,
                source=stale.source,
                is_cached=True,
                warning=f'Rate sources unavailable; using expired rate from {stale.fetched_at.isoformat()}',
            )

        logger.warning('All rate sources failed and no cached rate exists, using fallback {}',
                       self.fallback_rate)
        return BaseRate(
            rate=self.fallback_rate,
            source='fallback',
            is_cached=False,
            warning='Rate sources unavailable; using fallback rate',
        )

    def _fee(self, amount: Decimal, percent: Decimal, cap: Decimal, quantize) -> Tuple[Decimal, Decimal, bool]:
        raw_fee = quantize(amount * percent / HUNDRED)
        fee = min(raw_fee, cap)
        return raw_fee, fee, raw_fee > cap

    def onramp_quote(self, amount_fiat: Optional[Decimal] = None) -> Quote:
        """
        Quote buying stablecoin with ``amount_fiat``.

        The fee is charged on top of the requested amount; the stablecoin
        amount is the requested fiat divided by the marked-up rate.
        """
        base = self.get_base_rate()
        rate = base.rate + self.onramp_markup
        amount = Decimal(amount_fiat) if amount_fiat is not None else Decimal('0')

        raw_fee, fee, capped = self._fee(amount, self.onramp_fee_percent, self.onramp_fee_cap, quantize_fiat)
        total = quantize_fiat(amount + fee)
        stablecoin = quantize_stablecoin(amount / rate)
        effective = quantize_fiat(total / stablecoin) if stablecoin > 0 else rate

        return Quote(
            direction=ONRAMP,
            base_rate=base.rate,
            marked_up_rate=rate,
            markup=self.onramp_markup,
            fee_percent=self.onramp_fee_percent,
            raw_fee=raw_fee,
            fee_amount=fee,
            fee_cap=self.onramp_fee_cap,
            capped_fee=capped,
            source_amount=quantize_fiat(amount),
            target_amount=stablecoin,
            total_payable=total,
            effective_rate=effective,
            source=base.source,
            is_cached=base.is_cached,
            warning=base.warning,
        )

    def offramp_quote(self, amount_stablecoin: Optional[Decimal] = None) -> Quote:
        """
        Quote selling ``amount_stablecoin``.

        The fee is deducted from the stablecoin before conversion, so the
        fiat payout is ``(amount - fee) * rate``.
        """
        base = self.get_base_rate()
        rate = base.rate + self.offramp_markup
        amount = Decimal(amount_stablecoin) if amount_stablecoin is not None else Decimal('0')

        raw_fee, fee, capped = self._fee(
            amount, self.offramp_fee_percent, self.offramp_fee_cap,
            lambda value: quantize_stablecoin(value, ROUND_HALF_UP))
        net = amount - fee
        fiat = quantize_fiat(net * rate, ROUND_DOWN)
        lp_fee = quantize_stablecoin(net * self.lp_fee_percent / HUNDRED, ROUND_HALF_UP)
        effective = quantize_fiat(fiat / amount) if amount > 0 else rate

        return Quote(
            direction=OFFRAMP,
            base_rate=base.rate,
            marked_up_rate=rate,
            markup=self.offramp_markup,
            fee_percent=self.offramp_fee_percent,
            raw_fee=raw_fee,
            fee_amount=fee,
            fee_cap=self.offramp_fee_cap,
            capped_fee=capped,
            source_amount=quantize_stablecoin(amount),
            target_amount=fiat,
            total_payable=fiat,
            effective_rate=effective,
            source=base.source,
            is_cached=base.is_cached,
            lp_fee=lp_fee,
            warning=base.warning,
        )

    def offramp_quote_for_fiat(self, amount_fiat: Decimal) -> Quote:
        """Find the stablecoin amount whose payout covers ``amount_fiat``."""
        base = self.get_base_rate()
        rate = base.rate + self.offramp_markup
        net = Decimal(amount_fiat) / rate
        if net * self.offramp_fee_percent / HUNDRED > self.offramp_fee_cap:
            amount = net + self.offramp_fee_cap
        else:
            amount = net / (1 - self.offramp_fee_percent / HUNDRED)
        return self.offramp_quote(quantize_stablecoin(amount, ROUND_UP))

    def rate_info(self) -> Dict[str, Any]:
        base = self.get_base_rate()
        return {
            'base_rate': str(base.rate),
            'source': base.source,
            'is_cached': base.is_cached,
            'warning': base.warning,
            'onramp': {
                'rate': str(base.rate + self.onramp_markup),
                'markup': str(self.onramp_markup),
                'fee_percent': str(self.onramp_fee_percent),
                'fee_cap': str(self.onramp_fee_cap),
            },
            'offramp': {
                'rate': str(base.rate + self.offramp_markup),
                'markup': str(self.offramp_markup),
                'fee_percent': str(self.offramp_fee_percent),
                'fee_cap': str(self.offramp_fee_cap),
                'lp_fee_percent': str(self.lp_fee_percent),
                'min_amount': str(getattr(settings, 'OFFRAMP_MIN_STABLECOIN', '10')),
                'max_amount': str(getattr(settings, 'OFFRAMP_MAX_STABLECOIN', '5000')),
            },
        }

    def set_manual_rate(self, rate: Decimal) -> None:
        rate = Decimal(rate)
        if rate <= 0:
            raise ValueError('Manual rate must be positive')
        self.cache.set(self.PAIR, rate, 'manual')
        logger.info('Manual {} rate set to {}', self.PAIR, rate)

    def clear_cache(self) -> None:
        self.cache.clear(self.PAIR)
