"""
Custodial pool preflight checks and the reservation ledger.

A preflight passes when the custodial wallet holds enough stablecoin for the
order (net of other orders' active reservations), holds at least a minimum
amount of native gas, and the gas estimate for the actual settlement call,
padded by a safety buffer, fits in that gas balance. A failed estimate
degrades the check to the first two conditions.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Sum
from django.utils import timezone
from loguru import logger

from ramp.chain_handlers import NATIVE, USDC, ChainHandler
from ramp.models import LiquidityReservation

MIN_GAS_BUFFER = Decimal('1.5')


@dataclass
class BalanceCheck:
    required: Decimal
    available: Decimal
    passed: bool
    skipped: bool = False
    error: Optional[str] = None


@dataclass
class LiquidityCheckResult:
    usdc_balance: BalanceCheck
    gas_balance: BalanceCheck
    gas_estimate: BalanceCheck
    overall_passed: bool
    degraded: bool = False
    checked_at: datetime = field(default_factory=timezone.now)

    @property
    def failures(self) -> List[str]:
        names = {
            'usdc_balance': self.usdc_balance,
            'gas_balance': self.gas_balance,
            'gas_estimate': self.gas_estimate,
        }
        return [name for name, check in names.items() if not check.passed]

    def as_dict(self) -> dict:
        def render(check: BalanceCheck) -> dict:
            data = asdict(check)
            data['required'] = str(check.required)
            data['available'] = str(check.available)
            return data

        return {
            'usdcBalance': render(self.usdc_balance),
            'gasBalance': render(self.gas_balance),
            'gasEstimate': render(self.gas_estimate),
            'overallPassed': self.overall_passed,
            'degraded': self.degraded,
            'checkedAt': self.checked_at.isoformat(),
        }


class LiquidityGuard:
    def __init__(
        self,
        chain: ChainHandler,
        custody_address: Optional[str] = None,
        min_gas_balance: Optional[Decimal] = None,
        gas_buffer: Optional[Decimal] = None,
        reservation_ttl_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.chain = chain
        self.custody_address = custody_address or chain.custody_address
        self.min_gas_balance = Decimal(
            min_gas_balance if min_gas_balance is not None
            else getattr(settings, 'LIQUIDITY_MIN_GAS_BALANCE', '0.0005'))
        buffer = Decimal(
            gas_buffer if gas_buffer is not None
            else getattr(settings, 'LIQUIDITY_GAS_BUFFER', MIN_GAS_BUFFER))
        self.gas_buffer = max(buffer, MIN_GAS_BUFFER)
        self.reservation_ttl = timedelta(seconds=(
            reservation_ttl_seconds if reservation_ttl_seconds is not None
            else getattr(settings, 'LIQUIDITY_RESERVATION_TTL_SECONDS', 3600)))
        self.clock = clock or timezone.now

    def check_preflight(
        self,
        stablecoin_amount: Decimal,
        rate: Optional[Decimal] = None,
        destination: Optional[str] = None,
        exclude_reference: Optional[str] = None,
    ) -> LiquidityCheckResult:
        required = Decimal(stablecoin_amount)
        usdc_check = self._check_stablecoin(required, exclude_reference)

        native_balance: Optional[Decimal] = None
        try:
            native_balance = self.chain.read_balance(self.custody_address, NATIVE)
            gas_check = BalanceCheck(
                required=self.min_gas_balance,
                available=native_balance,
                passed=native_balance >= self.min_gas_balance,
            )
        except Exception as exc:
            logger.error('Custodial gas balance read failed: {}', exc)
            gas_check = BalanceCheck(
                required=self.min_gas_balance, available=Decimal('0'), passed=False, error=str(exc))

        estimate_check, degraded = self._check_gas_estimate(required, destination, native_balance)

        result = LiquidityCheckResult(
            usdc_balance=usdc_check,
            gas_balance=gas_check,
            gas_estimate=estimate_check,
            overall_passed=usdc_check.passed and gas_check.passed and estimate_check.passed,
            degraded=degraded,
        )
        if result.overall_passed:
            logger.debug('Liquidity preflight passed for {} USDC (rate {})', required, rate)
        else:
            logger.warning('Liquidity preflight failed for {} USDC (rate {}): {}',
                           required, rate, ', '.join(result.failures))
        return result

    def _check_stablecoin(self, required: Decimal, exclude_reference: Optional[str]) -> BalanceCheck:
        try:
            balance = self.chain.read_balance(self.custody_address, USDC)
        except Exception as exc:
            logger.error('Custodial stablecoin balance read failed: {}', exc)
            return BalanceCheck(required=required, available=Decimal('0'), passed=False, error=str(exc))
        available = balance - self.reserved_amount(exclude_reference)
        return BalanceCheck(required=required, available=available, passed=available >= required)

    def _check_gas_estimate(self, amount: Decimal, destination: Optional[str], native_balance):
        if native_balance is None:
            return BalanceCheck(
                required=Decimal('0'), available=Decimal('0'), passed=False,
                error='Gas balance unavailable'), False
        if not destination:
            logger.warning('Gas estimate skipped: no destination address, checking balances only')
            return BalanceCheck(
                required=Decimal('0'), available=native_balance, passed=True, skipped=True), True
        try:
            estimate = self.chain.estimate_transfer_gas(amount, destination)
        except Exception as exc:
            logger.warning('Gas estimate unavailable, degrading to balance checks only: {}', exc)
            return BalanceCheck(
                required=Decimal('0'), available=native_balance, passed=True,
                skipped=True, error=str(exc)), True
        required = estimate.cost * self.gas_buffer
        return BalanceCheck(
            required=required, available=native_balance, passed=required <= native_balance), False

    def reserved_amount(self, exclude_reference: Optional[str] = None) -> Decimal:
        queryset = LiquidityReservation.objects.filter(
            status=LiquidityReservation.Status.ACTIVE,
            expires_at__gt=self.clock(),
        )
        if exclude_reference:
            queryset = queryset.exclude(order_reference=exclude_reference)
        return queryset.aggregate(total=Sum('amount'))['total'] or Decimal('0')

    def reserve(self, reference: str, amount: Decimal) -> LiquidityReservation:
        with transaction.atomic():
            reservation, _ = LiquidityReservation.objects.update_or_create(
                order_reference=reference,
                defaults={
                    'amount': amount,
                    'status': LiquidityReservation.Status.ACTIVE,
                    'expires_at': self.clock() + self.reservation_ttl,
                },
            )
        logger.debug('Reserved {} USDC for {}', amount, reference)
        return reservation

    def consume(self, reference: str) -> None:
        self._close(reference, LiquidityReservation.Status.CONSUMED)

    def release(self, reference: str) -> None:
        self._close(reference, LiquidityReservation.Status.RELEASED)

    def _close(self, reference: str, status: str) -> None:
        updated = LiquidityReservation.objects.filter(
            order_reference=reference,
            status=LiquidityReservation.Status.ACTIVE,
        ).update(status=status, updated_at=timezone.now())
        if updated:
            logger.debug('Reservation for {} marked {}', reference, status)
