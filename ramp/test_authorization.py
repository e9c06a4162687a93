from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase

from ramp.authorization import TransactionAuthorizer
from ramp.errors import AuthenticationError, SettlementValidationError
from ramp.models import AuthorizationChallenge, PasskeyCredential
from ramp.testing import FakeVerifier, FrozenClock

RECIPIENT = '0xAbCdEf0123456789aBCDef0123456789AbCdEf01'
ASSERTION = {'credentialId': 'cred-1'}


class TransactionAuthorizerTests(TestCase):
    def setUp(self) -> None:
        User = get_user_model()
        self.user = User.objects.create_user('ada', password='pw')
        self.other = User.objects.create_user('bola', password='pw')
        self.credential = PasskeyCredential.objects.create(
            user=self.user, credential_id='cred-1', public_key='unused')
        self.clock = FrozenClock()
        self.verifier = FakeVerifier()
        self.authorizer = TransactionAuthorizer(
            verifier=self.verifier,
            clock=self.clock,
            challenge_ttl_seconds=600,
            token_ttl_seconds=300,
            secret='test-secret',
        )

    def _token(self, amount='25', recipient=RECIPIENT, transaction_type='send'):
        challenge = self.authorizer.issue_challenge(self.user, transaction_type, Decimal(amount), recipient)
        return self.authorizer.verify_and_issue_token(self.user, challenge.transaction_id, ASSERTION)

    def test_challenge_requires_registered_passkey(self):
        with self.assertRaises(SettlementValidationError):
            self.authorizer.issue_challenge(self.other, 'send', Decimal('10'), RECIPIENT)

    def test_challenge_rejects_unknown_type(self):
        with self.assertRaises(SettlementValidationError):
            self.authorizer.issue_challenge(self.user, 'deposit', Decimal('10'), RECIPIENT)

    def test_challenge_rejects_duplicate_transaction_id(self):
        self.authorizer.issue_challenge(self.user, 'send', Decimal('10'), RECIPIENT, transaction_id='tx-1')

        with self.assertRaises(SettlementValidationError):
            self.authorizer.issue_challenge(self.user, 'send', Decimal('10'), RECIPIENT, transaction_id='tx-1')

    def test_token_is_single_use(self):
        issued = self._token()

        challenge = self.authorizer.consume_token(
            issued.token, self.user, 'send', Decimal('25.000000'), RECIPIENT.lower())

        self.assertEqual(challenge.transaction_id, issued.transaction_id)
        self.assertIsNotNone(challenge.token_consumed_at)
        with self.assertRaises(AuthenticationError):
            self.authorizer.consume_token(issued.token, self.user, 'send', Decimal('25'), RECIPIENT)

    def test_mismatched_transaction_does_not_burn_token(self):
        issued = self._token()

        with self.assertRaises(AuthenticationError):
            self.authorizer.consume_token(issued.token, self.user, 'send', Decimal('26'), RECIPIENT)
        with self.assertRaises(AuthenticationError):
            self.authorizer.consume_token(issued.token, self.user, 'withdraw', Decimal('25'), RECIPIENT)

        self.authorizer.consume_token(issued.token, self.user, 'send', Decimal('25'), RECIPIENT)

    def test_token_expires(self):
        issued = self._token()
        self.clock.advance(301)

        with self.assertRaises(AuthenticationError):
            self.authorizer.consume_token(issued.token, self.user, 'send', Decimal('25'), RECIPIENT)

    def test_token_is_bound_to_user(self):
        issued = self._token()

        with self.assertRaises(AuthenticationError):
            self.authorizer.consume_token(issued.token, self.other, 'send', Decimal('25'), RECIPIENT)

    def test_tampered_token_is_rejected(self):
        issued = self._token()

        with self.assertRaises(AuthenticationError):
            self.authorizer.consume_token(issued.token + 'x', self.user, 'send', Decimal('25'), RECIPIENT)
        with self.assertRaises(AuthenticationError):
            self.authorizer.consume_token(None, self.user, 'send', Decimal('25'), RECIPIENT)

    def test_challenge_cannot_be_verified_twice(self):
        challenge = self.authorizer.issue_challenge(self.user, 'send', Decimal('5'), RECIPIENT)
        self.authorizer.verify_and_issue_token(self.user, challenge.transaction_id, ASSERTION)

        with self.assertRaises(AuthenticationError):
            self.authorizer.verify_and_issue_token(self.user, challenge.transaction_id, ASSERTION)

    def test_expired_challenge_is_rejected(self):
        challenge = self.authorizer.issue_challenge(self.user, 'send', Decimal('5'), RECIPIENT)
        self.clock.advance(600)

        with self.assertRaises(AuthenticationError):
            self.authorizer.verify_and_issue_token(self.user, challenge.transaction_id, ASSERTION)

    def test_failed_assertion_leaves_challenge_open(self):
        challenge = self.authorizer.issue_challenge(self.user, 'send', Decimal('5'), RECIPIENT)
        self.verifier.verified = False

        with self.assertRaises(AuthenticationError):
            self.authorizer.verify_and_issue_token(self.user, challenge.transaction_id, ASSERTION)

        challenge.refresh_from_db()
        self.assertEqual(challenge.status, AuthorizationChallenge.Status.ISSUED)
        self.assertIsNone(challenge.token_id)

    def test_verification_advances_sign_count(self):
        self._token()

        self.credential.refresh_from_db()
        self.assertEqual(self.credential.sign_count, 1)
        self.assertIsNotNone(self.credential.last_used_at)

    def test_token_never_outlives_challenge(self):
        authorizer = TransactionAuthorizer(
            verifier=self.verifier, challenge_ttl_seconds=100, token_ttl_seconds=200, secret='s')

        self.assertEqual(authorizer.token_ttl, timedelta(seconds=50))

    def test_sweep_removes_only_unverified_expired_challenges(self):
        stale = self.authorizer.issue_challenge(self.user, 'send', Decimal('5'), RECIPIENT)
        used = self._token()
        self.clock.advance(601)

        deleted = self.authorizer.sweep_expired()

        self.assertEqual(deleted, 1)
        self.assertFalse(AuthorizationChallenge.objects.filter(pk=stale.pk).exists())
        self.assertTrue(AuthorizationChallenge.objects.filter(transaction_id=used.transaction_id).exists())
