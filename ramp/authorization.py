"""
Passkey re-authorization for money movement.

A challenge is bound to one transaction's type, amount and recipient. A
verified passkey assertion over that challenge is exchanged, once, for a
short-lived signed token, and the token is consumed, once, by the
operation it authorizes.
"""
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from django.conf import settings
from django.core import signing
from django.db import transaction
from django.utils import timezone
from loguru import logger
from webauthn.helpers import bytes_to_base64url

from ramp.errors import AuthenticationError, SettlementValidationError
from ramp.models import AuthorizationChallenge, PasskeyCredential
from ramp.passkeys import AssertionVerifier, WebAuthnAssertionVerifier

TOKEN_SALT = 'ramp.authorization.token'
TOKEN_HEADER = 'HTTP_X_PASSKEY_VERIFIED_TOKEN'


@dataclass(frozen=True)
class IssuedToken:
    token: str
    transaction_id: str
    expires_at: datetime


def _normalize_recipient(recipient: str) -> str:
    return (recipient or '').strip().lower()


class TransactionAuthorizer:
    def __init__(
        self,
        verifier: Optional[AssertionVerifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
        challenge_ttl_seconds: Optional[int] = None,
        token_ttl_seconds: Optional[int] = None,
        secret: Optional[str] = None,
    ):
        self.verifier = verifier or WebAuthnAssertionVerifier()
        self.clock = clock or timezone.now
        challenge_ttl = challenge_ttl_seconds or getattr(settings, 'AUTH_CHALLENGE_TTL_SECONDS', 600)
        token_ttl = token_ttl_seconds or getattr(settings, 'AUTH_TOKEN_TTL_SECONDS', 300)
        # tokens must never outlive the challenge they were minted from
        if token_ttl >= challenge_ttl:
            token_ttl = max(1, challenge_ttl // 2)
        self.challenge_ttl = timedelta(seconds=challenge_ttl)
        self.token_ttl = timedelta(seconds=token_ttl)
        self.secret = secret or getattr(settings, 'AUTH_TOKEN_SECRET', '') or settings.SECRET_KEY

    def issue_challenge(
        self,
        user,
        transaction_type: str,
        amount: Decimal,
        recipient: str,
        transaction_id: Optional[str] = None,
    ) -> AuthorizationChallenge:
        if transaction_type not in AuthorizationChallenge.TransactionType.values:
            raise SettlementValidationError(f'Unsupported transaction type: {transaction_type}')
        try:
            amount = Decimal(amount)
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise SettlementValidationError('Invalid amount') from exc
        if amount <= 0:
            raise SettlementValidationError('Amount must be positive')
        if not recipient:
            raise SettlementValidationError('Recipient is required')
        if not PasskeyCredential.objects.filter(user=user).exists():
            raise SettlementValidationError('No passkey registered for this account')

        transaction_id = transaction_id or uuid.uuid4().hex
        if AuthorizationChallenge.objects.filter(transaction_id=transaction_id).exists():
            raise SettlementValidationError('Transaction id already has a challenge')

        record = AuthorizationChallenge.objects.create(
            transaction_id=transaction_id,
            user=user,
            challenge=bytes_to_base64url(secrets.token_bytes(32)),
            transaction_type=transaction_type,
            amount=amount,
            recipient=recipient.strip(),
            expires_at=self.clock() + self.challenge_ttl,
        )
        logger.info('Issued {} challenge {} for user {}', transaction_type, transaction_id, user.pk)
        return record

    def verify_and_issue_token(self, user, transaction_id: str, assertion: Dict[str, Any]) -> IssuedToken:
        now = self.clock()
        with transaction.atomic():
            challenge = (
                AuthorizationChallenge.objects.select_for_update()
                .filter(transaction_id=transaction_id, user=user)
                .first()
            )
            if challenge is None:
                raise AuthenticationError('Unknown authorization challenge')
            if challenge.status == AuthorizationChallenge.Status.CONSUMED:
                raise AuthenticationError('Authorization challenge already used')
            if challenge.status == AuthorizationChallenge.Status.EXPIRED or challenge.is_expired(now):
                raise AuthenticationError('Authorization challenge expired')

            credential = (
                PasskeyCredential.objects.select_for_update()
                .filter(user=user, credential_id=assertion.get('credentialId', ''))
                .first()
            )
            if credential is None:
                raise AuthenticationError('Unknown passkey credential')

            result = self.verifier.verify(credential, assertion, challenge.challenge)
            if not result.verified:
                logger.info('Passkey verification failed for {}: {}', transaction_id, result.reason)
                raise AuthenticationError(f'Passkey verification failed: {result.reason}')

            credential.sign_count = result.new_sign_count
            credential.last_used_at = now
            credential.save(update_fields=['sign_count', 'last_used_at'])

            jti = uuid.uuid4().hex
            expires_at = now + self.token_ttl
            challenge.status = AuthorizationChallenge.Status.CONSUMED
            challenge.verified_at = now
            challenge.token_id = jti
            challenge.token_expires_at = expires_at
            challenge.save(update_fields=['status', 'verified_at', 'token_id', 'token_expires_at'])

        token = signing.dumps(
            {
                'jti': jti,
                'transactionId': challenge.transaction_id,
                'userId': user.pk,
                'transactionData': challenge.transaction_data,
                'exp': int(expires_at.timestamp()),
            },
            key=self.secret,
            salt=TOKEN_SALT,
        )
        logger.info('Issued authorization token for {}', transaction_id)
        return IssuedToken(token=token, transaction_id=challenge.transaction_id, expires_at=expires_at)

    def consume_token(
        self,
        token: Optional[str],
        user,
        transaction_type: str,
        amount: Decimal,
        recipient: str,
    ) -> AuthorizationChallenge:
        """
        Validate ``token`` for exactly this operation and burn it.

        Must run outside any enclosing transaction so the burn commits even
        when the authorized operation later fails.
        """
        if not token:
            raise AuthenticationError('Authorization token required')
        try:
            payload = signing.loads(token, key=self.secret, salt=TOKEN_SALT)
        except signing.BadSignature as exc:
            raise AuthenticationError('Invalid authorization token') from exc

        now = self.clock()
        if now.timestamp() >= payload.get('exp', 0):
            raise AuthenticationError('Authorization token expired')
        if payload.get('userId') != user.pk:
            raise AuthenticationError('Authorization token was issued to another user')

        data = payload.get('transactionData') or {}
        try:
            amount_matches = Decimal(data.get('amount', '')) == Decimal(amount)
        except (InvalidOperation, TypeError, ValueError):
            amount_matches = False
        if (
            data.get('type') != transaction_type
            or not amount_matches
            or _normalize_recipient(data.get('recipient')) != _normalize_recipient(recipient)
        ):
            raise AuthenticationError('Authorization token does not match this transaction')

        with transaction.atomic():
            challenge = (
                AuthorizationChallenge.objects.select_for_update()
                .filter(transaction_id=payload.get('transactionId'), token_id=payload.get('jti'))
                .first()
            )
            if challenge is None:
                raise AuthenticationError('Invalid authorization token')
            if challenge.token_consumed_at is not None:
                raise AuthenticationError('Authorization token already used')
            challenge.token_consumed_at = now
            challenge.save(update_fields=['token_consumed_at'])

        logger.info('Consumed authorization token for {}', challenge.transaction_id)
        return challenge

    def sweep_expired(self) -> int:
        """Drop challenges that expired before being verified."""
        deleted, _ = AuthorizationChallenge.objects.filter(
            status__in=[AuthorizationChallenge.Status.ISSUED, AuthorizationChallenge.Status.EXPIRED],
            expires_at__lte=self.clock(),
        ).delete()
        if deleted:
            logger.debug('Swept {} expired authorization challenges', deleted)
        return deleted
