import re
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase, override_settings

from ramp import alerts
from ramp.chain_handlers import DepositVerification, TransferResult
from ramp.errors import (
    AuthenticationError,
    LiquidityError,
    OrderNotFound,
    RailError,
    SettlementValidationError,
)
from ramp.models import (
    LiquidityReservation,
    OfframpOrder,
    OnrampOrder,
    StablecoinTransfer,
)
from ramp.rails import LencoWebhook, MonnifyWebhook, PayoutResult
from ramp.testing import CUSTODY_ADDRESS, FRIEND_ADDRESS, TX_HASH, USER_ADDRESS, SettlementFixtures

DEPOSIT_TX = '0x' + 'cd' * 32


def collection_event(reference, amount_paid='50750.00', payment_status='PAID', meta_reference=None):
    return MonnifyWebhook.model_validate({
        'eventType': 'SUCCESSFUL_TRANSACTION',
        'eventData': {
            'transactionReference': 'MNFY|20240101|000001',
            'paymentReference': reference,
            'amountPaid': amount_paid,
            'paymentStatus': payment_status,
            'paymentMethod': 'ACCOUNT_TRANSFER',
            'metaData': {'paymentReference': meta_reference} if meta_reference else None,
        },
    })


def payout_event(event, reference, status=None):
    return LencoWebhook.model_validate({
        'event': event,
        'data': {'id': 'lenco-1', 'clientReference': reference, 'status': status},
    })


class OnrampDispatcherTests(SettlementFixtures, TestCase):
    def setUp(self) -> None:
        self.setUpSettlement()

    def test_creates_pending_order_with_reservation(self):
        created = self.dispatcher.create_onramp_order(self.user, Decimal('50000'))

        order = created.order
        self.assertEqual(order.status, OnrampOrder.Status.PENDING)
        self.assertEqual(order.total_payable_fiat, Decimal('50750.00'))
        self.assertEqual(order.stablecoin_amount, Decimal('31.240237'))
        self.assertEqual(order.wallet_address, USER_ADDRESS)
        self.assertRegex(order.reference, r'^ONR_\d+_\w{1,6}_[0-9a-f]{8}$')
        self.assertEqual(created.checkout['reference'], order.reference)
        self.assertEqual(created.checkout['amount'], '50750.00')
        reservation = LiquidityReservation.objects.get(order_reference=order.reference)
        self.assertEqual(reservation.amount, Decimal('31.240237'))
        self.assertEqual(reservation.status, LiquidityReservation.Status.ACTIVE)

    def test_amount_limits(self):
        with self.assertRaises(SettlementValidationError):
            self.dispatcher.create_onramp_order(self.user, Decimal('500'))
        with self.assertRaises(SettlementValidationError):
            self.dispatcher.create_onramp_order(self.user, Decimal('2000000'))

    @override_settings(ONRAMP_DAILY_LIMIT_FIAT=Decimal('60000'))
    def test_daily_limit(self):
        self.dispatcher.create_onramp_order(self.user, Decimal('50000'))

        with self.assertRaises(SettlementValidationError) as ctx:
            self.dispatcher.create_onramp_order(self.user, Decimal('20000'))
        self.assertEqual(ctx.exception.details['remaining'], '10000')

    def test_requires_registered_wallet(self):
        self.user.wallet.delete()

        with self.assertRaises(SettlementValidationError):
            self.dispatcher.create_onramp_order(self.user, Decimal('50000'))

    @patch('ramp.alerts.alert_operator')
    def test_refuses_order_the_pool_cannot_cover(self, alert_mock):
        self.chain.usdc_balance = Decimal('40')

        with self.assertRaises(LiquidityError) as ctx:
            self.dispatcher.create_onramp_order(self.user, Decimal('160050'))

        self.assertEqual(ctx.exception.status_code, 503)
        self.assertFalse(ctx.exception.result.overall_passed)
        self.assertEqual(OnrampOrder.objects.count(), 0)
        self.assertEqual(alert_mock.call_args[0][0], alerts.LIQUIDITY_SHORTFALL)

    def test_paid_event_credits_stablecoin_once(self):
        order = self.dispatcher.create_onramp_order(self.user, Decimal('50000')).order

        outcome = self.dispatcher.handle_collection_event(collection_event(order.reference))
        duplicate = self.dispatcher.handle_collection_event(collection_event(order.reference))

        order.refresh_from_db()
        self.assertEqual(outcome.outcome, 'completed')
        self.assertEqual(order.status, OnrampOrder.Status.COMPLETED)
        self.assertEqual(order.amount_paid, Decimal('50750.00'))
        self.assertIsNotNone(order.chain_tx_hash)
        self.assertIsNotNone(order.completed_at)
        self.assertEqual(duplicate.outcome, 'duplicate')
        self.assertTrue(duplicate.success)
        self.assertEqual(len(self.chain.transfers), 1)
        self.assertEqual(self.chain.transfers[0]['amount'], Decimal('31.240237'))
        self.assertEqual(
            LiquidityReservation.objects.get(order_reference=order.reference).status,
            LiquidityReservation.Status.CONSUMED,
        )

    def test_order_found_through_checkout_metadata(self):
        order = self.dispatcher.create_onramp_order(self.user, Decimal('50000')).order

        outcome = self.dispatcher.handle_collection_event(
            collection_event('MNFY-OTHER', meta_reference=order.reference))

        self.assertEqual(outcome.outcome, 'completed')

    def test_unknown_reference(self):
        with self.assertRaises(OrderNotFound):
            self.dispatcher.handle_collection_event(collection_event('ONR_missing'))

    def test_amount_mismatch_fails_order_without_credit(self):
        order = self.dispatcher.create_onramp_order(self.user, Decimal('50000')).order

        outcome = self.dispatcher.handle_collection_event(
            collection_event(order.reference, amount_paid='50000.00'))

        order.refresh_from_db()
        self.assertEqual(outcome.outcome, 'amount_mismatch')
        self.assertEqual(outcome.status_code, 400)
        self.assertEqual(order.status, OnrampOrder.Status.FAILED)
        self.assertEqual(order.error_code, 'AMOUNT_MISMATCH')
        self.assertEqual(self.chain.transfers, [])
        self.assertEqual(
            LiquidityReservation.objects.get(order_reference=order.reference).status,
            LiquidityReservation.Status.RELEASED,
        )

    def test_amount_within_tolerance_is_accepted(self):
        order = self.dispatcher.create_onramp_order(self.user, Decimal('50000')).order

        outcome = self.dispatcher.handle_collection_event(
            collection_event(order.reference, amount_paid='50749.50'))

        self.assertEqual(outcome.outcome, 'completed')

    def test_user_cancelled_payment(self):
        order = self.dispatcher.create_onramp_order(self.user, Decimal('50000')).order

        outcome = self.dispatcher.handle_collection_event(
            collection_event(order.reference, payment_status='USER_CANCELLED'))

        order.refresh_from_db()
        self.assertEqual(outcome.outcome, 'cancelled')
        self.assertEqual(order.status, OnrampOrder.Status.CANCELLED)

    @patch('ramp.alerts.alert_operator')
    def test_ledger_failure_after_payment_alerts_operator(self, alert_mock):
        order = self.dispatcher.create_onramp_order(self.user, Decimal('50000')).order
        self.chain.transfer_result = TransferResult(success=False, error_reason='execution reverted')

        outcome = self.dispatcher.handle_collection_event(collection_event(order.reference))

        order.refresh_from_db()
        self.assertEqual(outcome.outcome, 'credit_failed')
        self.assertEqual(outcome.status_code, 500)
        self.assertEqual(order.status, OnrampOrder.Status.FAILED)
        self.assertEqual(order.error_code, 'LEDGER_TRANSFER_FAILED')
        self.assertEqual(alert_mock.call_args[0][0], alerts.CREDIT_FAILED)

    @patch('ramp.alerts.alert_operator')
    def test_unconfirmed_credit_keeps_hash_and_reservation(self, alert_mock):
        order = self.dispatcher.create_onramp_order(self.user, Decimal('50000')).order
        self.chain.transfer_result = TransferResult(
            success=False,
            tx_hash=TX_HASH,
            error_reason='Transaction submitted but not confirmed: timed out',
            unconfirmed=True,
        )

        outcome = self.dispatcher.handle_collection_event(collection_event(order.reference))

        order.refresh_from_db()
        self.assertEqual(outcome.outcome, 'credit_failed')
        self.assertEqual(order.status, OnrampOrder.Status.FAILED)
        self.assertEqual(order.error_code, 'LEDGER_TRANSFER_UNCONFIRMED')
        self.assertEqual(order.chain_tx_hash, TX_HASH)
        self.assertEqual(
            LiquidityReservation.objects.get(order_reference=order.reference).status,
            LiquidityReservation.Status.ACTIVE,
        )
        context = alert_mock.call_args[0][2]
        self.assertEqual(context['txHash'], TX_HASH)
        self.assertTrue(context['unconfirmed'])

    @patch('ramp.alerts.alert_operator')
    def test_pool_drained_between_order_and_payment(self, alert_mock):
        order = self.dispatcher.create_onramp_order(self.user, Decimal('50000')).order
        self.chain.usdc_balance = Decimal('10')

        outcome = self.dispatcher.handle_collection_event(collection_event(order.reference))

        order.refresh_from_db()
        self.assertEqual(order.error_code, 'LIQUIDITY_INSUFFICIENT')
        self.assertEqual(outcome.outcome, 'credit_failed')
        self.assertEqual(self.chain.transfers, [])

    @patch('ramp.alerts.alert_operator')
    def test_payment_after_user_cancel_is_flagged(self, alert_mock):
        order = self.dispatcher.create_onramp_order(self.user, Decimal('50000')).order
        self.dispatcher.cancel_order(self.user, 'onramp', order.reference)

        outcome = self.dispatcher.handle_collection_event(collection_event(order.reference))

        order.refresh_from_db()
        self.assertEqual(outcome.outcome, 'paid_after_close')
        self.assertEqual(outcome.status_code, 200)
        self.assertEqual(order.status, OnrampOrder.Status.CANCELLED)
        self.assertIsNone(order.amount_paid)
        self.assertEqual(self.chain.transfers, [])
        kind, _, context = alert_mock.call_args[0]
        self.assertEqual(kind, alerts.PAYMENT_ON_CLOSED_ORDER)
        self.assertEqual(context['reference'], order.reference)
        self.assertEqual(context['amountPaid'], Decimal('50750.00'))
        self.assertEqual(context['transactionReference'], 'MNFY|20240101|000001')

    @patch('ramp.alerts.alert_operator')
    def test_terminal_orders_never_leave_their_state(self, alert_mock):
        terminal_states = (
            OnrampOrder.Status.COMPLETED,
            OnrampOrder.Status.FAILED,
            OnrampOrder.Status.CANCELLED,
        )
        for terminal in terminal_states:
            for payment_status in ('PAID', 'FAILED', 'USER_CANCELLED', 'EXPIRED'):
                with self.subTest(status=terminal, payment_status=payment_status):
                    alert_mock.reset_mock()
                    order = self.dispatcher.create_onramp_order(self.user, Decimal('1000')).order
                    OnrampOrder.objects.filter(pk=order.pk).update(status=terminal)

                    outcome = self.dispatcher.handle_collection_event(
                        collection_event(order.reference, amount_paid='1015.00', payment_status=payment_status))

                    order.refresh_from_db()
                    self.assertEqual(order.status, terminal)
                    self.assertTrue(outcome.success)
                    self.assertEqual(self.chain.transfers, [])
                    flagged = terminal != OnrampOrder.Status.COMPLETED and payment_status == 'PAID'
                    self.assertEqual(alert_mock.called, flagged)

    def test_cancel_pending_order(self):
        order = self.dispatcher.create_onramp_order(self.user, Decimal('50000')).order

        cancelled = self.dispatcher.cancel_order(self.user, 'onramp', order.reference)

        self.assertEqual(cancelled.status, OnrampOrder.Status.CANCELLED)
        with self.assertRaises(SettlementValidationError):
            self.dispatcher.cancel_order(self.user, 'onramp', order.reference)

    def test_orders_are_scoped_to_owner(self):
        order = self.dispatcher.create_onramp_order(self.user, Decimal('50000')).order

        with self.assertRaises(OrderNotFound):
            self.dispatcher.get_order(self.friend, 'onramp', order.reference)


class OfframpDispatcherTests(SettlementFixtures, TestCase):
    def setUp(self) -> None:
        self.setUpSettlement()

    def _order(self, amount='100') -> OfframpOrder:
        return self.dispatcher.create_offramp_order(self.user, Decimal(amount), '0123456789', '058').order

    def _confirm(self, order: OfframpOrder, tx_hash=DEPOSIT_TX) -> OfframpOrder:
        token = self.authorize('withdraw', order.stablecoin_amount, order.reference)
        return self.dispatcher.confirm_offramp_deposit(self.user, order.reference, tx_hash, token)

    def test_creates_order_with_deposit_address(self):
        created = self.dispatcher.create_offramp_order(self.user, Decimal('100'), '0123456789', '058')

        order = created.order
        self.assertEqual(created.deposit_address, CUSTODY_ADDRESS)
        self.assertEqual(order.fiat_amount, Decimal('156469.50'))
        self.assertEqual(order.net_stablecoin_amount, Decimal('99.000000'))
        self.assertEqual(order.beneficiary_name, 'Ada Obi')
        self.assertEqual(order.masked_account_number, '******6789')
        self.assertTrue(re.match(r'^OFR_[0-9A-Z]+_[0-9A-F]{8}$', order.reference))

    def test_amount_limits(self):
        with self.assertRaises(SettlementValidationError):
            self._order('5')

    def test_confirm_requires_authorization_token(self):
        order = self._order()

        with self.assertRaises(AuthenticationError):
            self.dispatcher.confirm_offramp_deposit(self.user, order.reference, DEPOSIT_TX, None)

        order.refresh_from_db()
        self.assertEqual(order.status, OfframpOrder.Status.PENDING)
        self.assertEqual(self.payouts.transfers, [])

    def test_token_for_another_order_is_rejected(self):
        order = self._order()
        other = self._order()
        token = self.authorize('withdraw', other.stablecoin_amount, other.reference)

        with self.assertRaises(AuthenticationError):
            self.dispatcher.confirm_offramp_deposit(self.user, order.reference, DEPOSIT_TX, token)

    def test_confirmed_deposit_dispatches_payout(self):
        order = self._confirm(self._order())

        self.assertEqual(order.status, OfframpOrder.Status.PROCESSING)
        self.assertEqual(order.deposit_tx_hash, DEPOSIT_TX)
        self.assertEqual(order.external_transfer_id, 'lenco-1')
        self.assertIsNotNone(order.processed_at)
        self.assertEqual(self.payouts.transfers[0]['amount'], Decimal('156469.50'))
        self.assertEqual(self.payouts.transfers[0]['reference'], order.reference)

    def test_immediately_settled_payout_completes_order(self):
        self.payouts.initiate_result = PayoutResult(
            success=True, external_transfer_id='lenco-1', status='successful')

        order = self._confirm(self._order())

        self.assertEqual(order.status, OfframpOrder.Status.COMPLETED)

    @patch('ramp.alerts.alert_operator')
    def test_payout_dispatch_failure(self, alert_mock):
        self.payouts.initiate_result = PayoutResult(success=False, error_reason='Insufficient balance')

        order = self._confirm(self._order())

        self.assertEqual(order.status, OfframpOrder.Status.FAILED)
        self.assertEqual(order.error_code, 'PAYOUT_DISPATCH_FAILED')
        self.assertEqual(alert_mock.call_args[0][0], alerts.PAYOUT_DISPATCH_FAILED)

    def test_unverified_deposit_is_rejected(self):
        order = self._order()
        self.chain.deposit_result = DepositVerification(is_valid=False, invalid_reason='Transaction failed')

        with self.assertRaises(SettlementValidationError):
            self._confirm(order)

        order.refresh_from_db()
        self.assertEqual(order.status, OfframpOrder.Status.PENDING)

    def test_deposit_hash_cannot_be_reused(self):
        self._confirm(self._order())
        second = self._order()

        with self.assertRaises(SettlementValidationError):
            self._confirm(second)

    def test_completion_event_is_applied_once(self):
        order = self._confirm(self._order())

        first = self.dispatcher.handle_payout_event(payout_event('transfer.completed', order.reference))
        second = self.dispatcher.handle_payout_event(payout_event('transfer.completed', order.reference))

        order.refresh_from_db()
        self.assertEqual(first.outcome, 'updated')
        self.assertEqual(order.status, OfframpOrder.Status.COMPLETED)
        self.assertEqual(second.outcome, 'duplicate')

    def test_in_flight_status_moves_order_to_settling(self):
        order = self._confirm(self._order())

        outcome = self.dispatcher.handle_payout_event(
            payout_event('transfer.updated', order.reference, status='processing'))

        self.assertEqual(outcome.order.status, OfframpOrder.Status.SETTLING)

    def test_failed_payout(self):
        order = self._confirm(self._order())

        self.dispatcher.handle_payout_event(payout_event('transfer.failed', order.reference))

        order.refresh_from_db()
        self.assertEqual(order.status, OfframpOrder.Status.FAILED)
        self.assertEqual(order.error_code, 'PAYOUT_FAILED')

    def test_terminal_orders_never_leave_their_state(self):
        order = self._order()
        OfframpOrder.objects.filter(pk=order.pk).update(external_transfer_id='lenco-1')
        events = (
            ('transfer.completed', None),
            ('transfer.failed', None),
            ('transfer.updated', 'processing'),
        )
        terminal_states = (
            OfframpOrder.Status.COMPLETED,
            OfframpOrder.Status.FAILED,
            OfframpOrder.Status.TIMEOUT,
            OfframpOrder.Status.CANCELLED,
        )
        for terminal in terminal_states:
            OfframpOrder.objects.filter(pk=order.pk).update(status=terminal)
            for event, status in events:
                with self.subTest(status=terminal, event=event):
                    outcome = self.dispatcher.handle_payout_event(payout_event(event, order.reference, status=status))

                    order.refresh_from_db()
                    self.assertEqual(outcome.outcome, 'duplicate')
                    self.assertEqual(order.status, terminal)
            for term in ('successful', 'failed', 'pending'):
                with self.subTest(status=terminal, polled=term):
                    self.assertFalse(self.dispatcher.apply_payout_status(order.pk, term))
                    order.refresh_from_db()
                    self.assertEqual(order.status, terminal)

    def test_event_for_undispatched_order_is_ignored(self):
        order = self._order()

        outcome = self.dispatcher.handle_payout_event(payout_event('transfer.completed', order.reference))

        order.refresh_from_db()
        self.assertEqual(outcome.outcome, 'ignored')
        self.assertEqual(order.status, OfframpOrder.Status.PENDING)


class SendDispatcherTests(SettlementFixtures, TestCase):
    def setUp(self) -> None:
        self.setUpSettlement()
        self.chain.balances[USER_ADDRESS.lower()] = Decimal('100')

    def test_send_without_token_never_touches_the_ledger(self):
        with self.assertRaises(AuthenticationError):
            self.dispatcher.execute_send(self.user, None, Decimal('25'), '@bola')

        self.assertEqual(self.chain.balance_reads, [])
        self.assertEqual(self.chain.transfers, [])
        self.assertEqual(StablecoinTransfer.objects.count(), 0)

    def test_send_to_username(self):
        token = self.authorize('send', '25', '@bola')

        record = self.dispatcher.execute_send(self.user, token, Decimal('25'), '@bola')

        self.assertEqual(record.status, StablecoinTransfer.Status.COMPLETED)
        self.assertEqual(record.recipient_user, self.friend)
        self.assertEqual(record.recipient_address, FRIEND_ADDRESS)
        self.assertEqual(self.chain.transfers[0]['source'], USER_ADDRESS)

    def test_send_to_address(self):
        address = '0x4444444444444444444444444444444444444444'
        token = self.authorize('send', '10', address)

        record = self.dispatcher.execute_send(self.user, token, Decimal('10'), address)

        self.assertIsNone(record.recipient_user)
        self.assertEqual(record.recipient_address, address)

    def test_token_cannot_be_replayed(self):
        token = self.authorize('send', '10', '@bola')
        self.dispatcher.execute_send(self.user, token, Decimal('10'), '@bola')

        with self.assertRaises(AuthenticationError):
            self.dispatcher.execute_send(self.user, token, Decimal('10'), '@bola')
        self.assertEqual(len(self.chain.transfers), 1)

    def test_insufficient_balance(self):
        token = self.authorize('send', '150', '@bola')

        with self.assertRaises(SettlementValidationError):
            self.dispatcher.execute_send(self.user, token, Decimal('150'), '@bola')
        self.assertEqual(self.chain.transfers, [])

    def test_cannot_send_to_self(self):
        token = self.authorize('send', '10', '@ada')

        with self.assertRaises(SettlementValidationError):
            self.dispatcher.execute_send(self.user, token, Decimal('10'), '@ada')

    def test_unknown_recipient(self):
        token = self.authorize('send', '10', '@nobody')

        with self.assertRaises(OrderNotFound):
            self.dispatcher.execute_send(self.user, token, Decimal('10'), '@nobody')

    def test_failed_transfer_is_recorded(self):
        self.chain.transfer_result = TransferResult(success=False, error_reason='nonce too low')
        token = self.authorize('send', '10', '@bola')

        with self.assertRaises(RailError):
            self.dispatcher.execute_send(self.user, token, Decimal('10'), '@bola')

        record = StablecoinTransfer.objects.get()
        self.assertEqual(record.status, StablecoinTransfer.Status.FAILED)
        self.assertEqual(record.failure_reason, 'nonce too low')

    def test_unconfirmed_transfer_keeps_its_hash(self):
        self.chain.transfer_result = TransferResult(
            success=False,
            tx_hash=TX_HASH,
            error_reason='Transaction submitted but not confirmed: timed out',
            unconfirmed=True,
        )
        token = self.authorize('send', '10', '@bola')

        with self.assertRaises(RailError) as ctx:
            self.dispatcher.execute_send(self.user, token, Decimal('10'), '@bola')

        record = StablecoinTransfer.objects.get()
        self.assertEqual(record.status, StablecoinTransfer.Status.FAILED)
        self.assertEqual(record.tx_hash, TX_HASH)
        self.assertEqual(ctx.exception.details['txHash'], TX_HASH)
