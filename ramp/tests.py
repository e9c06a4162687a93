import hashlib
import hmac
import json
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from django.urls import reverse

from ramp.models import OfframpOrder, OnrampOrder, WebhookEvent
from ramp.testing import SettlementFixtures

COLLECTOR_SECRET = 'collector-secret'
PAYOUT_SECRET = 'payout-secret'
DEPOSIT_TX = '0x' + 'cd' * 32


def _signature(secret: str, body: str) -> str:
    return hmac.new(secret.encode(), body.encode(), hashlib.sha512).hexdigest()


@override_settings(MONNIFY_SECRET_KEY=COLLECTOR_SECRET, LENCO_WEBHOOK_SECRET=PAYOUT_SECRET, MONNIFY_ALLOWED_IPS=[])
class SettlementViewTestCase(SettlementFixtures, TestCase):
    def setUp(self) -> None:
        self.setUpSettlement()
        for name, value in (
            ('ramp.views.get_dispatcher', self.dispatcher),
            ('ramp.views.get_resolver', self.resolver),
            ('ramp.views.get_authorizer', self.authorizer),
        ):
            patcher = patch(name, return_value=value)
            patcher.start()
            self.addCleanup(patcher.stop)

    def post_json(self, url, payload, **extra):
        return self.client.post(url, data=json.dumps(payload), content_type='application/json', **extra)


class RateViewTests(SettlementViewTestCase):
    def test_onramp_rate_is_public(self):
        response = self.client.get(reverse('ramp:onramp-rate'), {'amount': '50000'})

        self.assertEqual(response.status_code, 200)
        quote = response.json()['quote']
        self.assertEqual(quote['rate'], '1600.50')
        self.assertEqual(quote['feeAmount'], '750.00')
        self.assertEqual(quote['totalPayable'], '50750.00')
        self.assertEqual(quote['targetAmount'], '31.240237')

    def test_rate_rejects_bad_amount(self):
        response = self.client.get(reverse('ramp:onramp-rate'), {'amount': 'lots'})

        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.json()['success'])

    def test_offramp_rate_for_fiat_target(self):
        response = self.client.get(reverse('ramp:offramp-rate'), {'amountFiat': '156469.50'})

        body = response.json()
        self.assertEqual(response.status_code, 200)
        self.assertEqual(body['quote']['sourceAmount'], '100.000000')
        self.assertEqual(body['info']['rate'], '1580.50')


class OnrampViewTests(SettlementViewTestCase):
    def test_order_creation_requires_login(self):
        response = self.post_json(reverse('ramp:onramp-orders'), {'amount': 50000})

        self.assertIn(response.status_code, (401, 403))
        self.assertEqual(OnrampOrder.objects.count(), 0)

    def test_create_order(self):
        self.client.force_login(self.user)

        response = self.post_json(reverse('ramp:onramp-orders'), {'amount': 50000})

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertTrue(body['success'])
        self.assertEqual(body['order']['status'], 'PENDING')
        self.assertEqual(body['order']['totalPayable'], '50750.00')
        self.assertEqual(body['checkout']['reference'], body['order']['paymentReference'])
        self.assertTrue(body['liquidity']['overallPassed'])

    def test_invalid_body(self):
        self.client.force_login(self.user)

        response = self.post_json(reverse('ramp:onramp-orders'), {'amount': -5})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['errors'][0]['field'], 'amount')

    @patch('ramp.alerts.alert_operator')
    def test_liquidity_shortfall_is_503(self, alert_mock):
        self.client.force_login(self.user)
        self.chain.usdc_balance = Decimal('40')

        response = self.post_json(reverse('ramp:onramp-orders'), {'amount': 160050})

        self.assertEqual(response.status_code, 503)
        body = response.json()
        self.assertFalse(body['success'])
        self.assertFalse(body['liquidity']['overallPassed'])

    def test_order_detail_and_cancel(self):
        order = self.dispatcher.create_onramp_order(self.user, Decimal('50000')).order
        self.client.force_login(self.user)

        detail = self.client.get(reverse('ramp:onramp-order', args=[order.reference]))
        cancel = self.client.post(reverse('ramp:onramp-cancel', args=[order.reference]))

        self.assertEqual(detail.json()['order']['usdcAmount'], '31.240237')
        self.assertEqual(cancel.status_code, 200)
        self.assertEqual(cancel.json()['order']['status'], 'CANCELLED')

    def test_other_users_order_is_not_found(self):
        order = self.dispatcher.create_onramp_order(self.user, Decimal('50000')).order
        self.client.force_login(self.friend)

        response = self.client.get(reverse('ramp:onramp-order', args=[order.reference]))

        self.assertEqual(response.status_code, 404)


class CollectionWebhookTests(SettlementViewTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.order = self.dispatcher.create_onramp_order(self.user, Decimal('50000')).order

    def _deliver(self, amount_paid='50750.00', reference=None, secret=COLLECTOR_SECRET):
        body = json.dumps({
            'eventType': 'SUCCESSFUL_TRANSACTION',
            'eventData': {
                'transactionReference': 'MNFY|20240101|000001',
                'paymentReference': reference or self.order.reference,
                'amountPaid': amount_paid,
                'paymentStatus': 'PAID',
                'paymentMethod': 'CARD',
            },
        })
        return self.client.post(
            reverse('ramp:onramp-webhook'),
            data=body,
            content_type='application/json',
            HTTP_MONNIFY_SIGNATURE=_signature(secret, body),
        )

    def test_paid_event_completes_order_once(self):
        first = self._deliver()
        second = self._deliver()

        self.order.refresh_from_db()
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()['outcome'], 'completed')
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.json()['outcome'], 'duplicate')
        self.assertEqual(self.order.status, OnrampOrder.Status.COMPLETED)
        self.assertEqual(len(self.chain.transfers), 1)
        self.assertEqual(WebhookEvent.objects.filter(signature_valid=True).count(), 2)

    def test_bad_signature_is_rejected_and_recorded(self):
        response = self._deliver(secret='wrong-secret')

        self.order.refresh_from_db()
        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.order.status, OnrampOrder.Status.PENDING)
        event = WebhookEvent.objects.get()
        self.assertEqual(event.outcome, 'rejected_signature')
        self.assertFalse(event.signature_valid)

    @override_settings(MONNIFY_SECRET_KEY='')
    def test_unconfigured_secret_rejects_everything(self):
        response = self._deliver(secret='')

        self.assertEqual(response.status_code, 401)

    def test_amount_mismatch(self):
        response = self._deliver(amount_paid='45000.00')

        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertEqual(body['outcome'], 'amount_mismatch')
        self.assertEqual(body['expected'], '50750.00')

    def test_unknown_reference(self):
        response = self._deliver(reference='ONR_unknown')

        self.assertEqual(response.status_code, 404)
        self.assertEqual(WebhookEvent.objects.get().outcome, 'not_found')

    def test_malformed_payload(self):
        body = json.dumps({'eventType': 'SUCCESSFUL_TRANSACTION'})

        response = self.client.post(
            reverse('ramp:onramp-webhook'),
            data=body,
            content_type='application/json',
            HTTP_MONNIFY_SIGNATURE=_signature(COLLECTOR_SECRET, body),
        )

        self.assertEqual(response.status_code, 400)


class OfframpViewTests(SettlementViewTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.client.force_login(self.user)

    def _create(self) -> dict:
        response = self.post_json(
            reverse('ramp:offramp-orders'),
            {'amount': '100', 'accountNumber': '0123456789', 'bankCode': '058'},
        )
        self.assertEqual(response.status_code, 201)
        return response.json()

    def test_create_order_returns_deposit_address(self):
        body = self._create()

        self.assertEqual(body['order']['fiatAmount'], '156469.50')
        self.assertEqual(body['order']['beneficiary']['accountNumber'], '******6789')
        self.assertEqual(body['depositAddress'], self.chain.custody_address)

    def test_confirm_without_token_is_unauthorized(self):
        reference = self._create()['order']['reference']

        response = self.post_json(reverse('ramp:offramp-confirm', args=[reference]), {'txHash': DEPOSIT_TX})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(OfframpOrder.objects.get(reference=reference).status, OfframpOrder.Status.PENDING)

    def test_confirm_with_token_dispatches_payout(self):
        body = self._create()
        reference = body['order']['reference']
        token = self.authorize('withdraw', body['order']['usdcAmount'], reference)

        response = self.post_json(
            reverse('ramp:offramp-confirm', args=[reference]),
            {'txHash': DEPOSIT_TX},
            HTTP_X_PASSKEY_VERIFIED_TOKEN=token,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['order']['status'], 'PROCESSING')
        self.assertEqual(len(self.payouts.transfers), 1)

    def test_payout_webhook_completes_order(self):
        body = self._create()
        reference = body['order']['reference']
        token = self.authorize('withdraw', body['order']['usdcAmount'], reference)
        self.post_json(
            reverse('ramp:offramp-confirm', args=[reference]),
            {'txHash': DEPOSIT_TX},
            HTTP_X_PASSKEY_VERIFIED_TOKEN=token,
        )
        payload = json.dumps({'event': 'transfer.completed', 'data': {'id': 'lenco-1', 'clientReference': reference}})

        response = self.client.post(
            reverse('ramp:offramp-webhook'),
            data=payload,
            content_type='application/json',
            HTTP_X_LENCO_SIGNATURE=_signature(PAYOUT_SECRET, payload),
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['outcome'], 'updated')
        self.assertEqual(OfframpOrder.objects.get(reference=reference).status, OfframpOrder.Status.COMPLETED)


class AuthorizationViewTests(SettlementViewTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.client.force_login(self.user)
        self.chain.balances[self.user.wallet.address.lower()] = Decimal('100')

    def test_challenge_verify_and_send(self):
        challenge = self.post_json(
            reverse('ramp:authorization-challenge'),
            {'type': 'send', 'amount': '25', 'recipient': '@bola'},
        )
        self.assertEqual(challenge.status_code, 201)
        self.assertEqual(challenge.json()['allowCredentials'], ['cred-1'])

        verified = self.post_json(
            reverse('ramp:authorization-verify'),
            {
                'transactionId': challenge.json()['transactionId'],
                'assertion': {
                    'credentialId': 'cred-1',
                    'clientDataJSON': 'e30',
                    'authenticatorData': 'AA',
                    'signature': 'AA',
                },
            },
        )
        self.assertEqual(verified.status_code, 200)

        sent = self.post_json(
            reverse('ramp:transfers'),
            {'amount': '25', 'recipient': '@bola'},
            HTTP_X_PASSKEY_VERIFIED_TOKEN=verified.json()['token'],
        )
        self.assertEqual(sent.status_code, 201)
        self.assertEqual(sent.json()['transfer']['status'], 'COMPLETED')

    def test_send_without_token(self):
        response = self.post_json(reverse('ramp:transfers'), {'amount': '25', 'recipient': '@bola'})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.chain.balance_reads, [])

    def test_verify_unknown_challenge(self):
        response = self.post_json(
            reverse('ramp:authorization-verify'),
            {
                'transactionId': 'missing',
                'assertion': {
                    'credentialId': 'cred-1',
                    'clientDataJSON': 'e30',
                    'authenticatorData': 'AA',
                    'signature': 'AA',
                },
            },
        )

        self.assertEqual(response.status_code, 401)


class LiquidityViewTests(SettlementViewTestCase):
    def test_requires_staff(self):
        self.client.force_login(self.user)

        response = self.client.get(reverse('ramp:liquidity'))

        self.assertEqual(response.status_code, 403)

    def test_reports_pool_state(self):
        staff = get_user_model().objects.create_user('ops', password='pw', is_staff=True)
        self.client.force_login(staff)

        response = self.client.get(reverse('ramp:liquidity'), {'amount': '10'})

        body = response.json()
        self.assertEqual(response.status_code, 200)
        self.assertTrue(body['liquidity']['overallPassed'])
        self.assertEqual(body['reserved'], '0')
        self.assertIn('interval_seconds', body['reconciliation'])
