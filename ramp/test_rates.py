from decimal import Decimal
from unittest.mock import Mock

from django.core.cache import caches
from django.test import SimpleTestCase

from ramp.rates import (
    FawazahmedRateSource,
    PaycrestRateSource,
    RateCache,
    RateResolver,
    RateSourceError,
)
from ramp.testing import FrozenClock, StaticRateSource


def _session_returning(payload):
    response = Mock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    session = Mock()
    session.get.return_value = response
    return session


class RateResolverTests(SimpleTestCase):
    def setUp(self) -> None:
        caches['default'].clear()
        self.clock = FrozenClock()
        self.cache = RateCache(ttl_seconds=1800, clock=self.clock)

    def _resolver(self, *sources, **config) -> RateResolver:
        return RateResolver(sources=list(sources), cache=self.cache, config=config)

    def test_onramp_quote_applies_markup_and_fee(self):
        resolver = self._resolver(StaticRateSource('1560.50'))

        quote = resolver.onramp_quote(Decimal('50000'))

        self.assertEqual(quote.marked_up_rate, Decimal('1600.50'))
        self.assertEqual(quote.fee_amount, Decimal('750.00'))
        self.assertEqual(quote.total_payable, Decimal('50750.00'))
        self.assertEqual(quote.target_amount, Decimal('31.240237'))
        self.assertFalse(quote.capped_fee)
        self.assertIsNone(quote.warning)

    def test_onramp_fee_is_capped(self):
        resolver = self._resolver(StaticRateSource('1560.50'))

        quote = resolver.onramp_quote(Decimal('200000'))

        self.assertEqual(quote.raw_fee, Decimal('3000.00'))
        self.assertEqual(quote.fee_amount, Decimal('2000'))
        self.assertTrue(quote.capped_fee)
        self.assertEqual(quote.total_payable, Decimal('202000.00'))

    def test_offramp_quote_deducts_fee_before_conversion(self):
        resolver = self._resolver(StaticRateSource('1560.50'))

        quote = resolver.offramp_quote(Decimal('100'))

        self.assertEqual(quote.marked_up_rate, Decimal('1580.50'))
        self.assertEqual(quote.fee_amount, Decimal('1.000000'))
        self.assertEqual(quote.net_source_amount, Decimal('99.000000'))
        self.assertEqual(quote.target_amount, Decimal('156469.50'))
        self.assertEqual(quote.lp_fee, Decimal('0.495000'))

    def test_offramp_quote_for_fiat_covers_requested_payout(self):
        resolver = self._resolver(StaticRateSource('1560.50'))

        quote = resolver.offramp_quote_for_fiat(Decimal('156469.50'))

        self.assertEqual(quote.source_amount, Decimal('100.000000'))
        self.assertGreaterEqual(quote.target_amount, Decimal('156469.50'))

    def test_sources_are_tried_in_priority_order(self):
        down = StaticRateSource(None, name='primary')
        backup = StaticRateSource('1500', name='secondary')
        resolver = self._resolver(down, backup)

        base = resolver.get_base_rate()

        self.assertEqual(base.rate, Decimal('1500'))
        self.assertEqual(base.source, 'secondary')
        self.assertFalse(base.is_cached)
        self.assertEqual(down.calls, 1)

    def test_fresh_cache_skips_sources(self):
        source = StaticRateSource('1500')
        resolver = self._resolver(source)

        resolver.get_base_rate()
        self.clock.advance(60)
        base = resolver.get_base_rate()

        self.assertTrue(base.is_cached)
        self.assertEqual(source.calls, 1)

    def test_expired_cache_is_served_when_sources_fail(self):
        source = StaticRateSource('1500')
        resolver = self._resolver(source)
        resolver.get_base_rate()

        source.rate = None
        self.clock.advance(1801)
        base = resolver.get_base_rate()

        self.assertEqual(base.rate, Decimal('1500'))
        self.assertTrue(base.is_cached)
        self.assertIsNotNone(base.warning)
        self.assertEqual(source.calls, 2)

    def test_fallback_rate_when_nothing_is_available(self):
        resolver = self._resolver(StaticRateSource(None), fallback_rate='1550')

        quote = resolver.onramp_quote(Decimal('10000'))

        self.assertEqual(quote.base_rate, Decimal('1550'))
        self.assertEqual(quote.source, 'fallback')
        self.assertIsNotNone(quote.warning)

    def test_manual_rate_overrides_sources(self):
        source = StaticRateSource('1500')
        resolver = self._resolver(source)

        resolver.set_manual_rate(Decimal('1600'))
        base = resolver.get_base_rate()

        self.assertEqual(base.rate, Decimal('1600'))
        self.assertEqual(base.source, 'manual')
        self.assertEqual(source.calls, 0)
        with self.assertRaises(ValueError):
            resolver.set_manual_rate(Decimal('0'))

    def test_rate_info_reports_both_directions(self):
        resolver = self._resolver(StaticRateSource('1560.50'))

        info = resolver.rate_info()

        self.assertEqual(info['onramp']['rate'], '1600.50')
        self.assertEqual(info['offramp']['rate'], '1580.50')
        self.assertEqual(info['source'], 'static')


class RateSourceTests(SimpleTestCase):
    def test_paycrest_reads_rate_from_data(self):
        session = _session_returning({'status': 'success', 'data': '1565.25'})
        source = PaycrestRateSource('https://api.paycrest.io/v1', api_key='key', session=session)

        self.assertEqual(source.fetch(), Decimal('1565.25'))
        _, kwargs = session.get.call_args
        self.assertEqual(kwargs['headers']['x-api-key'], 'key')
        self.assertEqual(session.get.call_args[0][0], 'https://api.paycrest.io/v1/rates/USDC/1/NGN')

    def test_paycrest_rejects_unsuccessful_response(self):
        session = _session_returning({'status': 'error', 'message': 'unavailable'})
        source = PaycrestRateSource('https://api.paycrest.io/v1', session=session)

        with self.assertRaises(RateSourceError):
            source.fetch()

    def test_non_positive_rate_is_rejected(self):
        session = _session_returning({'usd': {'ngn': 0}})
        source = FawazahmedRateSource('https://example.test/usd.json', session=session)

        with self.assertRaises(RateSourceError):
            source.fetch()
