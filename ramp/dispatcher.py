"""
Settlement state machine for onramp, offramp and stablecoin sends.

Every transition happens under a row lock on the order, and terminal orders
are never mutated. Calls to external rails happen outside those locks: the
intermediate state (PAID, PROCESSING) is the claim that keeps a second
actor from repeating the call.
"""
import secrets
from dataclasses import dataclass, field
from datetime import datetime, time, timezone as datetime_timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.db.models import Sum
from django.utils import timezone
from loguru import logger
from rest_framework import status

from ramp import alerts
from ramp.authorization import TransactionAuthorizer
from ramp.chain_handlers import USDC, ChainHandler, ChainHandlerFactory
from ramp.errors import (
    LiquidityError,
    OrderNotFound,
    RailError,
    SettlementValidationError,
)
from ramp.liquidity import LiquidityCheckResult, LiquidityGuard
from ramp.models import (
    AuthorizationChallenge,
    OfframpOrder,
    OnrampOrder,
    StablecoinTransfer,
    UserWallet,
)
from ramp.rails import (
    FAILURE_STATUSES,
    PAID,
    SUCCESS_STATUSES,
    USER_CANCELLED,
    LencoClient,
    LencoWebhook,
    MonnifyWebhook,
    PayoutProcessor,
    build_checkout_config,
)
from ramp.rates import Quote, RateResolver

ONRAMP = 'onramp'
OFFRAMP = 'offramp'

BASE36 = '0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ'


def _base36(value: int) -> str:
    digits = ''
    while value:
        value, remainder = divmod(value, 36)
        digits = BASE36[remainder] + digits
    return digits or '0'


def _to_decimal(value: Any, field_name: str = 'amount') -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise SettlementValidationError(f'Invalid {field_name}') from exc
    if not amount.is_finite() or amount <= 0:
        raise SettlementValidationError(f'{field_name.capitalize()} must be a positive number')
    return amount


@dataclass
class OnrampCreation:
    order: OnrampOrder
    quote: Quote
    liquidity: LiquidityCheckResult
    checkout: Dict[str, Any]


@dataclass
class OfframpCreation:
    order: OfframpOrder
    quote: Quote
    deposit_address: str


@dataclass
class EventOutcome:
    """What a webhook did, and how to answer the rail."""
    outcome: str
    order: Optional[Any] = None
    status_code: int = status.HTTP_200_OK
    message: str = ''
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status_code < 400


class SettlementDispatcher:
    def __init__(
        self,
        resolver: Optional[RateResolver] = None,
        chain: Optional[ChainHandler] = None,
        guard: Optional[LiquidityGuard] = None,
        payouts: Optional[PayoutProcessor] = None,
        authorizer: Optional[TransactionAuthorizer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.resolver = resolver or RateResolver()
        self.chain = chain or ChainHandlerFactory.from_settings()
        self.guard = guard or LiquidityGuard(self.chain)
        self.payouts = payouts or LencoClient()
        self.authorizer = authorizer or TransactionAuthorizer()
        self.clock = clock or timezone.now

    # Onramp

    def _onramp_reference(self, user) -> str:
        millis = int(self.clock().timestamp() * 1000)
        return f'ONR_{millis}_{str(user.pk)[-6:]}_{secrets.token_hex(4)}'

    def _daily_onramp_total(self, user) -> Decimal:
        start_of_day = datetime.combine(self.clock().date(), time.min, tzinfo=datetime_timezone.utc)
        total = OnrampOrder.objects.filter(
            user=user,
            created_at__gte=start_of_day,
            status__in=[
                OnrampOrder.Status.PENDING,
                OnrampOrder.Status.PAID,
                OnrampOrder.Status.COMPLETED,
            ],
        ).aggregate(total=Sum('amount_fiat'))['total']
        return total or Decimal('0')

    def create_onramp_order(self, user, amount_fiat) -> OnrampCreation:
        amount = _to_decimal(amount_fiat)
        minimum = Decimal(getattr(settings, 'ONRAMP_MIN_FIAT', '1000'))
        maximum = Decimal(getattr(settings, 'ONRAMP_MAX_FIAT', '1000000'))
        if amount < minimum or amount > maximum:
            raise SettlementValidationError(f'Amount must be between {minimum} and {maximum} NGN')

        daily_limit = Decimal(getattr(settings, 'ONRAMP_DAILY_LIMIT_FIAT', '5000000'))
        used = self._daily_onramp_total(user)
        if used + amount > daily_limit:
            raise SettlementValidationError(
                'Daily limit exceeded',
                details={'dailyLimit': str(daily_limit), 'remaining': str(max(daily_limit - used, 0))},
            )

        wallet = UserWallet.objects.filter(user=user).first()
        if wallet is None:
            raise SettlementValidationError('No wallet registered for this account')

        quote = self.resolver.onramp_quote(amount)
        reference = self._onramp_reference(user)

        liquidity = self.guard.check_preflight(quote.target_amount, quote.marked_up_rate, wallet.address)
        if not liquidity.overall_passed:
            alerts.alert_operator(
                alerts.LIQUIDITY_SHORTFALL,
                'Onramp refused, custodial pool cannot cover order',
                {'reference': reference, 'usdcAmount': quote.target_amount, 'failures': liquidity.failures},
            )
            raise LiquidityError('Service temporarily unavailable, please try again later', liquidity)

        with transaction.atomic():
            order = OnrampOrder.objects.create(
                user=user,
                reference=reference,
                amount_fiat=quote.source_amount,
                fee_amount=quote.fee_amount,
                total_payable_fiat=quote.total_payable,
                stablecoin_amount=quote.target_amount,
                exchange_rate=quote.marked_up_rate,
                rate_source=quote.source,
                wallet_address=wallet.address,
            )
            self.guard.reserve(reference, quote.target_amount)

        logger.info('Onramp order {} created: NGN {} -> {} USDC', reference, quote.total_payable,
                    quote.target_amount)
        return OnrampCreation(
            order=order,
            quote=quote,
            liquidity=liquidity,
            checkout=build_checkout_config(order, user),
        )

    def _locked_onramp(self, webhook: MonnifyWebhook) -> Optional[OnrampOrder]:
        data = webhook.event_data
        queryset = OnrampOrder.objects.select_for_update()
        order = queryset.filter(reference=data.payment_reference).first() if data.payment_reference else None
        if order is None and data.embedded_reference:
            order = queryset.filter(reference=data.embedded_reference).first()
        return order

    def handle_collection_event(self, webhook: MonnifyWebhook) -> EventOutcome:
        data = webhook.event_data
        tolerance = Decimal(getattr(settings, 'ONRAMP_AMOUNT_TOLERANCE', '1'))

        with transaction.atomic():
            order = self._locked_onramp(webhook)
            if order is None:
                raise OrderNotFound(f'No onramp order for reference {data.payment_reference}')

            if order.status == OnrampOrder.Status.COMPLETED:
                logger.info('Duplicate collection event for completed order {}', order.reference)
                return EventOutcome('duplicate', order, message='Order already completed')
            if order.is_terminal and data.payment_status == PAID:
                return self._flag_payment_on_closed_order(order, webhook)
            if order.status != OnrampOrder.Status.PENDING:
                logger.info('Ignoring collection event for {} in state {}', order.reference, order.status)
                return EventOutcome('ignored', order, message=f'Order already {order.status}')

            if data.payment_status != PAID:
                target = (
                    OnrampOrder.Status.CANCELLED
                    if data.payment_status == USER_CANCELLED
                    else OnrampOrder.Status.FAILED
                )
                order.transition(target, reason=f'Payment status {data.payment_status}')
                order.external_payment_reference = data.transaction_reference
                order.save()
                self.guard.release(order.reference)
                logger.info('Onramp order {} moved to {} ({})', order.reference, target, data.payment_status)
                return EventOutcome(target.lower(), order)

            expected = order.amount_fiat + order.fee_amount
            if abs(data.amount_paid - expected) > tolerance:
                order.transition(
                    OnrampOrder.Status.FAILED,
                    reason=f'Amount mismatch: expected {expected}, received {data.amount_paid}',
                    error_code='AMOUNT_MISMATCH',
                )
                order.amount_paid = data.amount_paid
                order.external_payment_reference = data.transaction_reference
                order.save()
                self.guard.release(order.reference)
                logger.warning('Onramp order {} failed on amount mismatch: expected {} got {}',
                               order.reference, expected, data.amount_paid)
                return EventOutcome(
                    'amount_mismatch',
                    order,
                    status_code=status.HTTP_400_BAD_REQUEST,
                    message='Amount mismatch',
                    details={'expected': str(expected), 'received': str(data.amount_paid)},
                )

            order.mark_paid(data.amount_paid, data.transaction_reference, data.payment_method)
            order.save()
            logger.info('Onramp order {} paid: NGN {}', order.reference, data.amount_paid)

        return self._credit_onramp(order)

    def _flag_payment_on_closed_order(self, order: OnrampOrder, webhook: MonnifyWebhook) -> EventOutcome:
        """
        Fiat arrived for an order that is already FAILED or CANCELLED. The
        order stays as it is; an operator settles or refunds the payment.
        """
        data = webhook.event_data
        logger.error('Payment of NGN {} received for {} order {}', data.amount_paid, order.status, order.reference)
        alerts.alert_operator(
            alerts.PAYMENT_ON_CLOSED_ORDER,
            'Fiat collected for an order that is already closed',
            {
                'reference': order.reference,
                'status': order.status,
                'amountPaid': data.amount_paid,
                'transactionReference': data.transaction_reference,
                'paymentMethod': data.payment_method,
            },
        )
        return EventOutcome(
            'paid_after_close',
            order,
            message=f'Order already {order.status}, payment flagged for review',
            details={'amountPaid': str(data.amount_paid)},
        )

    def _credit_onramp(self, order: OnrampOrder) -> EventOutcome:
        liquidity = self.guard.check_preflight(
            order.stablecoin_amount,
            order.exchange_rate,
            order.wallet_address,
            exclude_reference=order.reference,
        )
        if not liquidity.overall_passed:
            return self._fail_paid_order(
                order,
                'Insufficient custodial liquidity at settlement time',
                'LIQUIDITY_INSUFFICIENT',
                {'failures': liquidity.failures},
            )

        result = self.chain.transfer(order.stablecoin_amount, order.wallet_address)
        if not result.success:
            return self._fail_paid_order(
                order,
                result.error_reason or 'Ledger transfer failed',
                'LEDGER_TRANSFER_UNCONFIRMED' if result.unconfirmed else 'LEDGER_TRANSFER_FAILED',
                {'txHash': result.tx_hash, 'unconfirmed': result.unconfirmed},
                tx_hash=result.tx_hash,
                keep_reservation=result.unconfirmed,
            )

        with transaction.atomic():
            order = OnrampOrder.objects.select_for_update().get(pk=order.pk)
            order.mark_completed(result.tx_hash, result.explorer_url or '')
            order.save()
            self.guard.consume(order.reference)
        logger.info('Onramp order {} completed: {} USDC in {}', order.reference, order.stablecoin_amount,
                    result.tx_hash)
        return EventOutcome('completed', order, details={'txHash': result.tx_hash})

    def _fail_paid_order(
        self,
        order: OnrampOrder,
        reason: str,
        error_code: str,
        context: dict,
        tx_hash: Optional[str] = None,
        keep_reservation: bool = False,
    ) -> EventOutcome:
        """
        An unconfirmed transfer keeps its hash on the order and its
        reservation, since the stablecoin may still leave the pool.
        """
        with transaction.atomic():
            order = OnrampOrder.objects.select_for_update().get(pk=order.pk)
            if order.status == OnrampOrder.Status.PAID:
                order.transition(OnrampOrder.Status.FAILED, reason=reason, error_code=error_code)
                if tx_hash:
                    order.chain_tx_hash = tx_hash
                order.save()
            if not keep_reservation:
                self.guard.release(order.reference)
        alerts.alert_operator(
            alerts.CREDIT_FAILED,
            'User paid fiat but stablecoin was not credited',
            {'reference': order.reference, 'reason': reason, 'amountPaid': order.amount_paid, **context},
        )
        return EventOutcome(
            'credit_failed',
            order,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            message=reason,
            details={'errorCode': error_code},
        )

    # Offramp

    def _offramp_reference(self) -> str:
        millis = int(self.clock().timestamp() * 1000)
        return f'OFR_{_base36(millis)}_{secrets.token_hex(4).upper()}'

    def create_offramp_order(self, user, amount_stablecoin, account_number: str, bank_code: str) -> OfframpCreation:
        amount = _to_decimal(amount_stablecoin)
        minimum = Decimal(getattr(settings, 'OFFRAMP_MIN_STABLECOIN', '10'))
        maximum = Decimal(getattr(settings, 'OFFRAMP_MAX_STABLECOIN', '5000'))
        if amount < minimum or amount > maximum:
            raise SettlementValidationError(f'Amount must be between {minimum} and {maximum} USDC')
        if not account_number or not bank_code:
            raise SettlementValidationError('Beneficiary account number and bank code are required')

        account = self.payouts.resolve_account(account_number, bank_code)
        quote = self.resolver.offramp_quote(amount)

        order = OfframpOrder.objects.create(
            user=user,
            reference=self._offramp_reference(),
            stablecoin_amount=quote.source_amount,
            fee_amount=quote.fee_amount,
            net_stablecoin_amount=quote.net_source_amount,
            lp_fee=quote.lp_fee,
            fiat_amount=quote.target_amount,
            exchange_rate=quote.marked_up_rate,
            rate_source=quote.source,
            beneficiary_name=account.account_name,
            beneficiary_account_number=account.account_number,
            beneficiary_bank_code=account.bank_code,
            beneficiary_bank_name=account.bank_name,
        )
        logger.info('Offramp order {} created: {} USDC -> NGN {} to {}', order.reference,
                    quote.source_amount, quote.target_amount, order.masked_account_number)
        return OfframpCreation(order=order, quote=quote, deposit_address=self.chain.custody_address)

    def confirm_offramp_deposit(self, user, reference: str, tx_hash: str, token: Optional[str]) -> OfframpOrder:
        order = OfframpOrder.objects.filter(reference=reference, user=user).first()
        if order is None:
            raise OrderNotFound(f'No offramp order {reference}')

        self.authorizer.consume_token(
            token,
            user,
            AuthorizationChallenge.TransactionType.WITHDRAW,
            order.stablecoin_amount,
            order.reference,
        )

        if order.status != OfframpOrder.Status.PENDING:
            raise SettlementValidationError(f'Order is already {order.status}')
        if not tx_hash:
            raise SettlementValidationError('Deposit transaction hash is required')
        if OfframpOrder.objects.filter(deposit_tx_hash=tx_hash).exclude(pk=order.pk).exists():
            raise SettlementValidationError('Deposit transaction already used by another order')

        verification = self.chain.verify_deposit(tx_hash, self.chain.custody_address, order.stablecoin_amount)
        if not verification.is_valid:
            logger.info('Deposit {} rejected for {}: {}', tx_hash, reference, verification.invalid_reason)
            raise SettlementValidationError(verification.invalid_reason or 'Deposit could not be verified')

        try:
            with transaction.atomic():
                order = OfframpOrder.objects.select_for_update().get(pk=order.pk)
                if order.status != OfframpOrder.Status.PENDING:
                    raise SettlementValidationError(f'Order is already {order.status}')
                order.mark_processing(tx_hash)
                order.save()
        except IntegrityError as exc:
            raise SettlementValidationError('Deposit transaction already used by another order') from exc
        logger.info('Offramp order {} deposit confirmed in {}', reference, tx_hash)

        return self._dispatch_payout(order)

    def _dispatch_payout(self, order: OfframpOrder) -> OfframpOrder:
        payout = self.payouts.initiate_transfer(
            order.fiat_amount,
            order.beneficiary_account_number,
            order.beneficiary_bank_code,
            order.beneficiary_name,
            order.reference,
        )

        with transaction.atomic():
            order = OfframpOrder.objects.select_for_update().get(pk=order.pk)
            if not payout.success:
                order.transition(
                    OfframpOrder.Status.FAILED,
                    reason=payout.error_reason or 'Payout dispatch failed',
                    error_code='PAYOUT_DISPATCH_FAILED',
                )
                order.save()
            else:
                order.external_transfer_id = payout.external_transfer_id or ''
                order.external_status = payout.status or ''
                order.save()

        if not payout.success:
            alerts.alert_operator(
                alerts.PAYOUT_DISPATCH_FAILED,
                'Stablecoin received but bank payout could not be dispatched',
                {'reference': order.reference, 'reason': payout.error_reason, 'fiatAmount': order.fiat_amount},
            )
            return order

        logger.info('Offramp order {} dispatched to payout processor as {}', order.reference,
                    payout.external_transfer_id)
        if payout.status and payout.status in SUCCESS_STATUSES | FAILURE_STATUSES:
            self.apply_payout_status(order.pk, payout.status)
            order.refresh_from_db()
        return order

    def apply_payout_status(self, order_id: int, status_term: str, reason: Optional[str] = None) -> bool:
        """
        Map a payout processor status onto the order. Returns True when the
        order's status changed.
        """
        term = (status_term or '').strip().lower()
        with transaction.atomic():
            order = OfframpOrder.objects.select_for_update().get(pk=order_id)
            if order.is_terminal:
                logger.debug('Order {} already {}, ignoring payout status {}', order.reference, order.status, term)
                return False

            previous = order.status
            order.external_status = term
            if term in SUCCESS_STATUSES:
                order.transition(OfframpOrder.Status.COMPLETED)
            elif term in FAILURE_STATUSES:
                order.transition(
                    OfframpOrder.Status.FAILED,
                    reason=reason or f'Payout {term}',
                    error_code='PAYOUT_FAILED',
                )
            elif order.status == OfframpOrder.Status.PROCESSING:
                order.transition(OfframpOrder.Status.SETTLING)
            order.save()

        if order.status != previous:
            logger.info('Offramp order {} moved {} -> {} ({})', order.reference, previous, order.status, term)
        return order.status != previous

    def _find_offramp(self, webhook: LencoWebhook) -> Optional[OfframpOrder]:
        data = webhook.data
        if data.client_reference:
            order = OfframpOrder.objects.filter(reference=data.client_reference).first()
            if order:
                return order
        if data.id:
            order = OfframpOrder.objects.filter(external_transfer_id=data.id).first()
            if order:
                return order
        if data.reference:
            return (
                OfframpOrder.objects.filter(reference=data.reference).first()
                or OfframpOrder.objects.filter(external_transfer_id=data.reference).first()
            )
        return None

    def handle_payout_event(self, webhook: LencoWebhook) -> EventOutcome:
        order = self._find_offramp(webhook)
        if order is None:
            raise OrderNotFound('No offramp order for payout event')
        if order.is_terminal:
            logger.info('Duplicate payout event {} for {} order {}', webhook.event, order.status, order.reference)
            return EventOutcome('duplicate', order, message=f'Order already {order.status}')
        if order.status == OfframpOrder.Status.PENDING:
            return EventOutcome('ignored', order, message='Order has not been dispatched')

        changed = self.apply_payout_status(order.pk, webhook.status_term, webhook.data.reason)
        order.refresh_from_db()
        return EventOutcome('updated' if changed else 'unchanged', order)

    # Shared

    def get_order(self, user, kind: str, reference: str):
        model = OnrampOrder if kind == ONRAMP else OfframpOrder
        order = model.objects.filter(reference=reference, user=user).first()
        if order is None:
            raise OrderNotFound(f'No {kind} order {reference}')
        return order

    def cancel_order(self, user, kind: str, reference: str):
        model = OnrampOrder if kind == ONRAMP else OfframpOrder
        with transaction.atomic():
            order = model.objects.select_for_update().filter(reference=reference, user=user).first()
            if order is None:
                raise OrderNotFound(f'No {kind} order {reference}')
            if order.status != model.Status.PENDING:
                raise SettlementValidationError('Only pending orders can be cancelled')
            order.transition(model.Status.CANCELLED, reason='Cancelled by user')
            order.save()
            self.guard.release(order.reference)
        logger.info('{} order {} cancelled by user', kind.capitalize(), reference)
        return order

    # Sends

    def _resolve_recipient(self, recipient: str):
        recipient = (recipient or '').strip()
        if not recipient:
            raise SettlementValidationError('Recipient is required')
        if self.chain.validate_address(recipient) and recipient.startswith('0x'):
            wallet = UserWallet.objects.filter(address__iexact=recipient).select_related('user').first()
            return (wallet.user if wallet else None), recipient

        username = recipient.lstrip('@')
        user = get_user_model().objects.filter(username__iexact=username).first()
        if user is None:
            raise OrderNotFound(f'User {username} not found')
        wallet = UserWallet.objects.filter(user=user).first()
        if wallet is None:
            raise OrderNotFound(f'User {username} has no wallet')
        return user, wallet.address

    def execute_send(self, user, token: Optional[str], amount, recipient: str) -> StablecoinTransfer:
        amount = _to_decimal(amount)
        challenge = self.authorizer.consume_token(
            token, user, AuthorizationChallenge.TransactionType.SEND, amount, recipient)

        recipient_user, recipient_address = self._resolve_recipient(recipient)
        sender_wallet = UserWallet.objects.filter(user=user).first()
        if sender_wallet is None:
            raise SettlementValidationError('No wallet registered for this account')
        if recipient_address.lower() == sender_wallet.address.lower():
            raise SettlementValidationError('Cannot send to yourself')

        try:
            balance = self.chain.read_balance(sender_wallet.address, USDC)
        except Exception as exc:
            logger.error('Balance read failed for {}: {}', sender_wallet.address, exc)
            raise RailError('Unable to read wallet balance', rail='ledger') from exc
        if balance < amount:
            raise SettlementValidationError(
                'Insufficient balance', details={'balance': str(balance), 'required': str(amount)})

        record = StablecoinTransfer.objects.create(
            sender=user,
            recipient_user=recipient_user,
            recipient_address=recipient_address,
            amount=amount,
            transaction_id=challenge.transaction_id,
        )
        result = self.chain.transfer(amount, recipient_address, source_address=sender_wallet.address)
        if not result.success:
            record.status = StablecoinTransfer.Status.FAILED
            record.failure_reason = result.error_reason or 'Transfer failed'
            record.tx_hash = result.tx_hash
            record.explorer_url = result.explorer_url or ''
            record.save(update_fields=['status', 'failure_reason', 'tx_hash', 'explorer_url'])
            raise RailError(record.failure_reason, rail='ledger', details={'txHash': result.tx_hash})

        record.status = StablecoinTransfer.Status.COMPLETED
        record.tx_hash = result.tx_hash
        record.explorer_url = result.explorer_url or ''
        record.completed_at = timezone.now()
        record.save(update_fields=['status', 'tx_hash', 'explorer_url', 'completed_at'])
        logger.info('Send {} USDC from user {} to {} completed in {}', amount, user.pk, recipient_address,
                    result.tx_hash)
        return record
