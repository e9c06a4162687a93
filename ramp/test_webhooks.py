import hashlib
import hmac

from django.test import RequestFactory, TestCase, override_settings

from ramp.models import WebhookEvent
from ramp.webhooks import WebhookAuthenticator, client_ip

BODY = b'{"eventType":"SUCCESSFUL_TRANSACTION"}'


def _sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


class WebhookAuthenticatorTests(TestCase):
    def setUp(self) -> None:
        self.factory = RequestFactory()
        self.authenticator = WebhookAuthenticator('monnify', 'collector-secret', ['41.58.0.0/16', '35.242.133.146'])

    def test_valid_signature(self):
        self.assertTrue(self.authenticator.verify(BODY, _sign('collector-secret', BODY)))
        self.assertTrue(self.authenticator.verify(BODY, _sign('collector-secret', BODY).upper()))

    def test_signature_over_other_body_is_rejected(self):
        self.assertFalse(self.authenticator.verify(BODY + b' ', _sign('collector-secret', BODY)))
        self.assertFalse(self.authenticator.verify(BODY, ''))

    def test_missing_secret_fails_closed(self):
        authenticator = WebhookAuthenticator('monnify', '')

        self.assertFalse(authenticator.verify(BODY, _sign('', BODY)))

    def test_ip_allowlist_is_advisory(self):
        listed = self.factory.post('/', REMOTE_ADDR='41.58.10.20')
        unlisted = self.factory.post('/', REMOTE_ADDR='8.8.8.8')

        self.assertTrue(self.authenticator.verify_ip(listed).whitelisted)
        check = self.authenticator.verify_ip(unlisted)
        self.assertTrue(check.valid)
        self.assertFalse(check.whitelisted)
        self.assertTrue(check.configured)

    def test_ip_check_without_allowlist(self):
        check = WebhookAuthenticator('lenco', 'secret').verify_ip(self.factory.post('/'))

        self.assertFalse(check.configured)
        self.assertTrue(check.valid)

    def test_forwarded_address_wins(self):
        request = self.factory.post('/', HTTP_X_FORWARDED_FOR='35.242.133.146, 10.0.0.1', REMOTE_ADDR='10.0.0.1')

        self.assertEqual(client_ip(request), '35.242.133.146')

    @override_settings(LENCO_WEBHOOK_SECRET='payout-secret', LENCO_ALLOWED_IPS=[])
    def test_payout_authenticator_reads_its_own_header(self):
        authenticator = WebhookAuthenticator.for_payout()
        request = self.factory.post('/', HTTP_X_LENCO_SIGNATURE='abc')

        self.assertEqual(authenticator.signature_from(request), 'abc')
        self.assertEqual(authenticator.secret, 'payout-secret')

    def test_record_keeps_audit_trail(self):
        check = self.authenticator.verify_ip(self.factory.post('/', REMOTE_ADDR='8.8.8.8'))

        self.authenticator.record(check, False, 'rejected_signature', payload={'a': 1})

        event = WebhookEvent.objects.get()
        self.assertEqual(event.provider, 'monnify')
        self.assertEqual(event.ip_address, '8.8.8.8')
        self.assertFalse(event.signature_valid)
        self.assertFalse(event.ip_allowed)
        self.assertEqual(event.payload, {'a': 1})
