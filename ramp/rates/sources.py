"""
Upstream fiat/stablecoin rate sources, in priority order.
"""
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import requests
from loguru import logger


class RateSourceError(Exception):
    """Raised when a source times out or answers with something unusable."""


class RateSource(ABC):
    """One upstream provider of a fiat-per-unit rate."""

    name: str = ''

    def __init__(self, url: str, timeout: float = 5, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self) -> Decimal:
        try:
            response = self.session.get(self.url, headers=self.headers(), timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise RateSourceError(f'{self.name} request failed: {exc}') from exc
        rate = self._to_decimal(self.extract(payload))
        logger.debug('{} rate: {}', self.name, rate)
        return rate

    def headers(self) -> dict:
        return {'Accept': 'application/json'}

    @abstractmethod
    def extract(self, payload: Any) -> Any:
        """Pull the raw rate value out of the decoded response."""
        pass

    def _to_decimal(self, value: Any) -> Decimal:
        try:
            rate = Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise RateSourceError(f'{self.name} returned a non-numeric rate: {value!r}') from exc
        if not rate.is_finite() or rate <= 0:
            raise RateSourceError(f'{self.name} returned an invalid rate: {value!r}')
        return rate


class PaycrestRateSource(RateSource):
    """Liquidity aggregator quote for 1 USDC in NGN."""

    name = 'paycrest'

    def __init__(self, base_url: str, api_key: str = '', **kwargs):
        super().__init__(f"{base_url.rstrip('/')}/rates/USDC/1/NGN", **kwargs)
        self.api_key = api_key

    def headers(self) -> dict:
        headers = super().headers()
        if self.api_key:
            headers['x-api-key'] = self.api_key
        return headers

    def extract(self, payload: Any) -> Any:
        if not isinstance(payload, dict) or payload.get('status') != 'success' or not payload.get('data'):
            raise RateSourceError('paycrest returned an unexpected response shape')
        data = payload['data']
        if isinstance(data, dict):
            return data.get('rate')
        return data


class ExchangeRateApiSource(RateSource):
    name = 'exchangerate-api'

    def extract(self, payload: Any) -> Any:
        try:
            return payload['rates']['NGN']
        except (KeyError, TypeError) as exc:
            raise RateSourceError('exchangerate-api response has no NGN rate') from exc


class FawazahmedRateSource(RateSource):
    name = 'fawazahmed0'

    def extract(self, payload: Any) -> Any:
        try:
            return payload['usd']['ngn']
        except (KeyError, TypeError) as exc:
            raise RateSourceError('fawazahmed0 response has no usd.ngn rate') from exc


def default_sources(settings_obj, session: Optional[requests.Session] = None) -> list:
    timeout = getattr(settings_obj, 'RATE_SOURCE_TIMEOUT_SECONDS', 5)
    return [
        PaycrestRateSource(
            getattr(settings_obj, 'PAYCREST_API_URL', 'https://api.paycrest.io/v1'),
            api_key=getattr(settings_obj, 'PAYCREST_API_KEY', ''),
            timeout=timeout,
            session=session,
        ),
        ExchangeRateApiSource(
            getattr(settings_obj, 'EXCHANGERATE_API_URL', ''), timeout=timeout, session=session),
        FawazahmedRateSource(
            getattr(settings_obj, 'FAWAZAHMED_API_URL', ''), timeout=timeout, session=session),
    ]
