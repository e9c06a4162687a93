"""
Bank payout processor (Lenco).
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, Optional

import requests
from django.conf import settings
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from ramp.errors import RailError, SettlementValidationError

SUCCESS_STATUSES = frozenset({'successful', 'completed', 'success'})
FAILURE_STATUSES = frozenset({'failed', 'rejected', 'declined', 'reversed'})
IN_FLIGHT_STATUSES = frozenset({'pending', 'processing', 'queued', 'created'})

COMPLETED_EVENT = 'transfer.completed'
FAILED_EVENT = 'transfer.failed'


@dataclass
class PayoutResult:
    success: bool
    external_transfer_id: Optional[str] = None
    status: Optional[str] = None
    error_reason: Optional[str] = None


@dataclass
class PayoutStatus:
    status: str
    reason: Optional[str] = None


@dataclass
class ResolvedAccount:
    account_name: str
    account_number: str
    bank_code: str
    bank_name: str


class PayoutProcessor(ABC):
    """Outbound bank transfer rail."""

    name = 'payout'

    @abstractmethod
    def initiate_transfer(
        self,
        amount: Decimal,
        account_number: str,
        bank_code: str,
        account_name: str,
        reference: str,
    ) -> PayoutResult:
        pass

    @abstractmethod
    def get_transfer_status(self, external_transfer_id: str) -> PayoutStatus:
        """Raises RailError when the status cannot be read."""
        pass

    @abstractmethod
    def resolve_account(self, account_number: str, bank_code: str) -> ResolvedAccount:
        """Raises SettlementValidationError when the account does not resolve."""
        pass


class LencoClient(PayoutProcessor):
    name = 'lenco'

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        account_id: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_url = (api_url or getattr(settings, 'LENCO_API_URL', '')).rstrip('/')
        self.api_key = api_key if api_key is not None else getattr(settings, 'LENCO_API_KEY', '')
        self.account_id = account_id if account_id is not None else getattr(settings, 'LENCO_ACCOUNT_ID', '')
        self.timeout = timeout or getattr(settings, 'LENCO_TIMEOUT_SECONDS', 15)
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        if not self.api_key:
            raise RailError('Lenco API key not configured', rail=self.name)
        headers = {
            'Authorization': f'Bearer {self.api_key}',
            'Accept': 'application/json',
        }
        try:
            response = self.session.request(
                method, f'{self.api_url}{path}', headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise RailError(f'Lenco request failed: {exc}', rail=self.name) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400 or not body.get('status'):
            message = body.get('message') or f'HTTP {response.status_code}'
            raise RailError(f'Lenco API error: {message}', rail=self.name)
        return body.get('data') or {}

    def initiate_transfer(
        self,
        amount: Decimal,
        account_number: str,
        bank_code: str,
        account_name: str,
        reference: str,
    ) -> PayoutResult:
        payload = {
            'accountId': self.account_id,
            'accountNumber': account_number,
            'bankCode': bank_code,
            'amount': int(Decimal(amount).quantize(Decimal('1'), rounding=ROUND_DOWN)),
            'narration': f'Offramp payout to {account_name}'[:100],
            'reference': reference,
        }
        logger.info('Lenco transfer {} for NGN {} to ******{}', reference, payload['amount'], account_number[-4:])
        try:
            data = self._request('POST', '/transfer', json=payload)
        except RailError as exc:
            logger.error('Lenco transfer {} failed: {}', reference, exc.message)
            return PayoutResult(success=False, error_reason=exc.message)
        return PayoutResult(
            success=True,
            external_transfer_id=str(data.get('id') or ''),
            status=str(data.get('status') or '').lower(),
        )

    def get_transfer_status(self, external_transfer_id: str) -> PayoutStatus:
        data = self._request('GET', f'/transactions/{external_transfer_id}')
        return PayoutStatus(
            status=str(data.get('status') or 'unknown').lower(),
            reason=data.get('reasonForFailure') or data.get('reason'),
        )

    def resolve_account(self, account_number: str, bank_code: str) -> ResolvedAccount:
        try:
            data = self._request(
                'GET', '/resolve', params={'accountNumber': account_number, 'bankCode': bank_code})
        except RailError as exc:
            logger.info('Account resolution failed for bank {}: {}', bank_code, exc.message)
            raise SettlementValidationError('Unable to resolve beneficiary account') from exc
        bank = data.get('bank') or {}
        return ResolvedAccount(
            account_name=data.get('accountName', ''),
            account_number=data.get('accountNumber', account_number),
            bank_code=bank.get('code', bank_code),
            bank_name=bank.get('name', ''),
        )


class LencoWebhookData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='allow')

    id: Optional[str] = None
    reference: Optional[str] = None
    client_reference: Optional[str] = Field(default=None, alias='clientReference')
    status: Optional[str] = None
    reason: Optional[str] = None


class LencoWebhook(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='allow')

    event: str
    data: LencoWebhookData

    @property
    def status_term(self) -> str:
        if self.event == COMPLETED_EVENT:
            return 'successful'
        if self.event == FAILED_EVENT:
            return 'failed'
        return (self.data.status or '').lower()
