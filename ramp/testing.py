"""
In-memory rails and ledger used by the test suite.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from django.contrib.auth import get_user_model
from django.core.cache import caches
from django.utils import timezone
from web3 import Web3

from ramp.authorization import TransactionAuthorizer
from ramp.chain_handlers import (
    NATIVE,
    USDC,
    ChainHandler,
    DepositVerification,
    GasEstimate,
    TransferResult,
)
from ramp.dispatcher import SettlementDispatcher
from ramp.liquidity import LiquidityGuard
from ramp.models import PasskeyCredential, UserWallet
from ramp.passkeys import AssertionResult, AssertionVerifier
from ramp.rails import PayoutProcessor, PayoutResult, PayoutStatus, ResolvedAccount
from ramp.rates import RateCache, RateResolver, RateSource, RateSourceError

CUSTODY_ADDRESS = '0x1111111111111111111111111111111111111111'
USER_ADDRESS = '0x2222222222222222222222222222222222222222'
FRIEND_ADDRESS = '0x3333333333333333333333333333333333333333'
TX_HASH = '0x' + 'ab' * 32


class FrozenClock:
    def __init__(self, now: Optional[datetime] = None):
        self.now = now or timezone.now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class StaticRateSource(RateSource):
    def __init__(self, rate, name: str = 'static'):
        super().__init__(url='')
        self.rate = Decimal(rate) if rate is not None else None
        self.name = name
        self.calls = 0

    def fetch(self) -> Decimal:
        self.calls += 1
        if self.rate is None:
            raise RateSourceError(f'{self.name} unavailable')
        return self.rate

    def extract(self, payload):
        return payload


class FakeChain(ChainHandler):
    def __init__(
        self,
        usdc_balance: Decimal = Decimal('1000'),
        native_balance: Decimal = Decimal('0.01'),
        balances: Optional[Dict[str, Decimal]] = None,
    ):
        super().__init__({'custody_address': CUSTODY_ADDRESS, 'explorer_url': 'https://explorer.test'})
        self.usdc_balance = Decimal(usdc_balance)
        self.native_balance = Decimal(native_balance)
        self.balances = {address.lower(): Decimal(value) for address, value in (balances or {}).items()}
        self.gas_estimate = GasEstimate(gas_units=65000, gas_price_wei=1_000_000_000)
        self.estimate_error: Optional[Exception] = None
        self.read_error: Optional[Exception] = None
        self.transfer_result: Optional[TransferResult] = None
        self.deposit_result = DepositVerification(is_valid=True, amount=Decimal('0'))
        self.transfers: List[dict] = []
        self.balance_reads: List[tuple] = []

    @property
    def chain_name(self) -> str:
        return 'fake'

    def transfer(self, amount, destination, source_address=None) -> TransferResult:
        self.transfers.append({'amount': amount, 'destination': destination, 'source': source_address})
        if self.transfer_result is not None:
            return self.transfer_result
        return TransferResult(
            success=True, tx_hash=TX_HASH, block_number=1, explorer_url=self.get_explorer_url(TX_HASH))

    def read_balance(self, address, asset=USDC) -> Decimal:
        self.balance_reads.append((address, asset))
        if self.read_error is not None:
            raise self.read_error
        if asset == NATIVE:
            return self.native_balance
        if address.lower() == CUSTODY_ADDRESS:
            return self.usdc_balance
        return self.balances.get(address.lower(), Decimal('0'))

    def estimate_transfer_gas(self, amount, destination, source_address=None) -> GasEstimate:
        if self.estimate_error is not None:
            raise self.estimate_error
        return self.gas_estimate

    def verify_deposit(self, tx_hash, expected_to, min_amount) -> DepositVerification:
        return self.deposit_result

    def validate_address(self, address) -> bool:
        return Web3.is_address(address)


class FakePayouts(PayoutProcessor):
    name = 'fake-payouts'

    def __init__(self):
        self.initiate_result = PayoutResult(success=True, external_transfer_id='lenco-1', status='pending')
        self.statuses: Dict[str, PayoutStatus] = {}
        self.status_error: Optional[Exception] = None
        self.account = ResolvedAccount(
            account_name='Ada Obi', account_number='0123456789', bank_code='058', bank_name='GTBank')
        self.transfers: List[dict] = []

    def initiate_transfer(self, amount, account_number, bank_code, account_name, reference) -> PayoutResult:
        self.transfers.append({
            'amount': amount,
            'account_number': account_number,
            'bank_code': bank_code,
            'account_name': account_name,
            'reference': reference,
        })
        return self.initiate_result

    def get_transfer_status(self, external_transfer_id) -> PayoutStatus:
        if self.status_error is not None:
            raise self.status_error
        return self.statuses.get(external_transfer_id, PayoutStatus(status='pending'))

    def resolve_account(self, account_number, bank_code) -> ResolvedAccount:
        return ResolvedAccount(
            account_name=self.account.account_name,
            account_number=account_number,
            bank_code=bank_code,
            bank_name=self.account.bank_name,
        )


class FakeVerifier(AssertionVerifier):
    def __init__(self, verified: bool = True):
        self.verified = verified

    def verify(self, credential, assertion, expected_challenge) -> AssertionResult:
        if not self.verified:
            return AssertionResult(False, reason='Invalid signature')
        return AssertionResult(True, new_sign_count=credential.sign_count + 1)


class SettlementFixtures:
    """Mixin wiring a dispatcher to the fakes above."""

    def setUpSettlement(self) -> None:
        caches['default'].clear()
        User = get_user_model()
        self.user = User.objects.create_user('ada', email='ada@example.com', password='pw')
        self.friend = User.objects.create_user('bola', email='bola@example.com', password='pw')
        UserWallet.objects.create(user=self.user, address=USER_ADDRESS)
        UserWallet.objects.create(user=self.friend, address=FRIEND_ADDRESS)
        PasskeyCredential.objects.create(user=self.user, credential_id='cred-1', public_key='unused')

        self.chain = FakeChain()
        self.payouts = FakePayouts()
        self.resolver = RateResolver(sources=[StaticRateSource('1560.50')], cache=RateCache())
        self.authorizer = TransactionAuthorizer(verifier=FakeVerifier(), secret='test-secret')
        self.dispatcher = SettlementDispatcher(
            resolver=self.resolver,
            chain=self.chain,
            guard=LiquidityGuard(self.chain),
            payouts=self.payouts,
            authorizer=self.authorizer,
        )

    def authorize(self, transaction_type: str, amount, recipient: str) -> str:
        challenge = self.authorizer.issue_challenge(self.user, transaction_type, Decimal(amount), recipient)
        issued = self.authorizer.verify_and_issue_token(
            self.user, challenge.transaction_id, {'credentialId': 'cred-1'})
        return issued.token
