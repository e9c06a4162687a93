from typing import Dict, FrozenSet, Optional

from django.conf import settings
from django.db import models
from django.utils import timezone

from ramp.errors import InvalidTransition


FIAT_FIELD = {'max_digits': 18, 'decimal_places': 2}
STABLECOIN_FIELD = {'max_digits': 20, 'decimal_places': 6}
RATE_FIELD = {'max_digits': 18, 'decimal_places': 6}


class SettlementOrder(models.Model):
    """
    Shared shape of onramp and offramp orders.

    Subclasses declare their own status vocabulary, the set of terminal
    statuses and a transition table. Terminal orders never change status.
    """

    TERMINAL_STATUSES: FrozenSet[str] = frozenset()
    TRANSITIONS: Dict[str, FrozenSet[str]] = {}

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT)
    reference = models.CharField(max_length=64, unique=True)
    exchange_rate = models.DecimalField(**RATE_FIELD)
    stablecoin_amount = models.DecimalField(**STABLECOIN_FIELD)
    failure_reason = models.TextField(blank=True, default='')
    error_code = models.CharField(max_length=64, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        abstract = True
        ordering = ['-created_at']

    def __str__(self) -> str:
        return f'{self.reference} ({self.status})'

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def can_transition(self, target: str) -> bool:
        return target in self.TRANSITIONS.get(self.status, frozenset())

    def transition(
        self,
        target: str,
        reason: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> None:
        if not self.can_transition(target):
            raise InvalidTransition(
                f'Order {self.reference} cannot move from {self.status} to {target}')
        self.status = target
        if reason:
            self.failure_reason = reason
        if error_code:
            self.error_code = error_code
        if target == self.Status.COMPLETED:
            self.completed_at = timezone.now()


class OnrampOrder(SettlementOrder):
    class Status(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        PAID = 'PAID', 'Paid'
        COMPLETED = 'COMPLETED', 'Completed'
        FAILED = 'FAILED', 'Failed'
        CANCELLED = 'CANCELLED', 'Cancelled'

    TERMINAL_STATUSES = frozenset({Status.COMPLETED, Status.FAILED, Status.CANCELLED})
    TRANSITIONS = {
        Status.PENDING: frozenset({Status.PAID, Status.FAILED, Status.CANCELLED}),
        Status.PAID: frozenset({Status.COMPLETED, Status.FAILED}),
    }

    external_payment_reference = models.CharField(max_length=128, blank=True, default='')
    amount_fiat = models.DecimalField(**FIAT_FIELD)
    fee_amount = models.DecimalField(**FIAT_FIELD)
    total_payable_fiat = models.DecimalField(**FIAT_FIELD)
    amount_paid = models.DecimalField(blank=True, null=True, **FIAT_FIELD)
    payment_method = models.CharField(max_length=32, blank=True, default='')
    wallet_address = models.CharField(max_length=42)
    rate_source = models.CharField(max_length=32, blank=True, default='')
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    chain_tx_hash = models.CharField(max_length=66, blank=True, null=True)
    explorer_url = models.URLField(blank=True, default='')
    paid_at = models.DateTimeField(blank=True, null=True)

    class Meta(SettlementOrder.Meta):
        indexes = [models.Index(fields=['user', 'status', 'created_at'], name='ramp_onramp_user_status_idx')]

    def mark_paid(self, amount_paid, external_reference: str, payment_method: str = '') -> None:
        self.transition(self.Status.PAID)
        self.amount_paid = amount_paid
        self.external_payment_reference = external_reference or self.external_payment_reference
        self.payment_method = payment_method or ''
        self.paid_at = timezone.now()

    def mark_completed(self, tx_hash: str, explorer_url: str = '') -> None:
        self.transition(self.Status.COMPLETED)
        self.chain_tx_hash = tx_hash
        self.explorer_url = explorer_url


class OfframpOrder(SettlementOrder):
    class Status(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        PROCESSING = 'PROCESSING', 'Processing'
        SETTLING = 'SETTLING', 'Settling'
        COMPLETED = 'COMPLETED', 'Completed'
        FAILED = 'FAILED', 'Failed'
        TIMEOUT = 'TIMEOUT', 'Timeout'
        CANCELLED = 'CANCELLED', 'Cancelled'

    TERMINAL_STATUSES = frozenset({
        Status.COMPLETED, Status.FAILED, Status.TIMEOUT, Status.CANCELLED,
    })
    IN_FLIGHT_STATUSES = (Status.PROCESSING, Status.SETTLING)
    TRANSITIONS = {
        Status.PENDING: frozenset({Status.PROCESSING, Status.CANCELLED}),
        Status.PROCESSING: frozenset({
            Status.SETTLING, Status.COMPLETED, Status.FAILED, Status.TIMEOUT,
        }),
        Status.SETTLING: frozenset({Status.COMPLETED, Status.FAILED, Status.TIMEOUT}),
    }

    fee_amount = models.DecimalField(**STABLECOIN_FIELD)
    net_stablecoin_amount = models.DecimalField(**STABLECOIN_FIELD)
    lp_fee = models.DecimalField(default=0, **STABLECOIN_FIELD)
    fiat_amount = models.DecimalField(**FIAT_FIELD)
    rate_source = models.CharField(max_length=32, blank=True, default='')
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    beneficiary_name = models.CharField(max_length=255)
    beneficiary_account_number = models.CharField(max_length=20)
    beneficiary_bank_code = models.CharField(max_length=16)
    beneficiary_bank_name = models.CharField(max_length=128, blank=True, default='')
    deposit_tx_hash = models.CharField(max_length=66, unique=True, blank=True, null=True)
    external_transfer_id = models.CharField(max_length=128, blank=True, default='')
    external_status = models.CharField(max_length=32, blank=True, default='')
    poll_attempts = models.PositiveIntegerField(default=0)
    last_polled_at = models.DateTimeField(blank=True, null=True)
    processed_at = models.DateTimeField(blank=True, null=True)

    class Meta(SettlementOrder.Meta):
        indexes = [models.Index(fields=['status', 'processed_at'], name='ramp_offramp_status_proc_idx')]

    @property
    def masked_account_number(self) -> str:
        return f'******{self.beneficiary_account_number[-4:]}'

    def mark_processing(self, deposit_tx_hash: str) -> None:
        self.transition(self.Status.PROCESSING)
        self.deposit_tx_hash = deposit_tx_hash
        self.processed_at = timezone.now()


class UserWallet(models.Model):
    """Stablecoin wallet address registered for a user."""

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='wallet')
    address = models.CharField(max_length=42, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return self.address


class PasskeyCredential(models.Model):
    class Algorithm(models.TextChoices):
        ES256 = 'ES256', 'ECDSA P-256 SHA-256'
        EDDSA = 'EdDSA', 'Ed25519'

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='passkeys')
    credential_id = models.CharField(max_length=255, unique=True)
    # base64url COSE_Key from the registration ceremony
    public_key = models.TextField()
    algorithm = models.CharField(max_length=8, choices=Algorithm.choices, default=Algorithm.ES256)
    sign_count = models.PositiveBigIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    last_used_at = models.DateTimeField(blank=True, null=True)


class AuthorizationChallenge(models.Model):
    class TransactionType(models.TextChoices):
        SEND = 'send', 'Send'
        WITHDRAW = 'withdraw', 'Withdraw'

    class Status(models.TextChoices):
        ISSUED = 'issued', 'Issued'
        CONSUMED = 'consumed', 'Consumed'
        EXPIRED = 'expired', 'Expired'

    transaction_id = models.CharField(max_length=64, unique=True)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE)
    challenge = models.CharField(max_length=128)
    transaction_type = models.CharField(max_length=16, choices=TransactionType.choices)
    amount = models.DecimalField(**STABLECOIN_FIELD)
    recipient = models.CharField(max_length=255)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.ISSUED)
    expires_at = models.DateTimeField()
    verified_at = models.DateTimeField(blank=True, null=True)
    token_id = models.CharField(max_length=64, blank=True, null=True, unique=True)
    token_expires_at = models.DateTimeField(blank=True, null=True)
    token_consumed_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']

    def is_expired(self, now) -> bool:
        return now >= self.expires_at

    @property
    def transaction_data(self) -> dict:
        return {
            'type': self.transaction_type,
            'amount': str(self.amount),
            'recipient': self.recipient,
        }


class LiquidityReservation(models.Model):
    """Stablecoin earmarked in the custodial pool for an order in flight."""

    class Status(models.TextChoices):
        ACTIVE = 'ACTIVE', 'Active'
        CONSUMED = 'CONSUMED', 'Consumed'
        RELEASED = 'RELEASED', 'Released'

    order_reference = models.CharField(max_length=64, unique=True)
    amount = models.DecimalField(**STABLECOIN_FIELD)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.ACTIVE)
    expires_at = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)


class StablecoinTransfer(models.Model):
    class Status(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        COMPLETED = 'COMPLETED', 'Completed'
        FAILED = 'FAILED', 'Failed'

    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='sent_transfers')
    recipient_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='received_transfers',
        blank=True,
        null=True,
    )
    recipient_address = models.CharField(max_length=42)
    amount = models.DecimalField(**STABLECOIN_FIELD)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    transaction_id = models.CharField(max_length=64, blank=True, default='')
    tx_hash = models.CharField(max_length=66, blank=True, null=True)
    explorer_url = models.URLField(blank=True, default='')
    failure_reason = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        ordering = ['-created_at']


class WebhookEvent(models.Model):
    """Audit record of an inbound rail webhook, accepted or not."""

    class Provider(models.TextChoices):
        MONNIFY = 'monnify', 'Monnify'
        LENCO = 'lenco', 'Lenco'

    provider = models.CharField(max_length=16, choices=Provider.choices)
    event_type = models.CharField(max_length=64, blank=True, default='')
    reference = models.CharField(max_length=128, blank=True, default='')
    ip_address = models.CharField(max_length=64, blank=True, default='')
    ip_allowlist_configured = models.BooleanField(default=False)
    ip_allowed = models.BooleanField(default=False)
    signature_valid = models.BooleanField(default=False)
    outcome = models.CharField(max_length=32, blank=True, default='')
    payload = models.JSONField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
