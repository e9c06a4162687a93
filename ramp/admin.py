from django.contrib import admin

from ramp.models import (
    AuthorizationChallenge,
    LiquidityReservation,
    OfframpOrder,
    OnrampOrder,
    PasskeyCredential,
    StablecoinTransfer,
    UserWallet,
    WebhookEvent,
)


@admin.register(OnrampOrder)
class OnrampOrderAdmin(admin.ModelAdmin):
    list_display = ("reference", "user", "amount_fiat", "stablecoin_amount", "status", "chain_tx_hash", "created_at")
    list_filter = ("status", "rate_source")
    search_fields = ("reference", "external_payment_reference", "wallet_address", "chain_tx_hash")


@admin.register(OfframpOrder)
class OfframpOrderAdmin(admin.ModelAdmin):
    list_display = ("reference", "user", "stablecoin_amount", "fiat_amount", "status", "external_status", "created_at")
    list_filter = ("status",)
    search_fields = ("reference", "deposit_tx_hash", "external_transfer_id")
    readonly_fields = ("poll_attempts", "last_polled_at", "processed_at")


@admin.register(UserWallet)
class UserWalletAdmin(admin.ModelAdmin):
    list_display = ("user", "address", "created_at")
    search_fields = ("address", "user__username")


@admin.register(PasskeyCredential)
class PasskeyCredentialAdmin(admin.ModelAdmin):
    list_display = ("credential_id", "user", "algorithm", "sign_count", "last_used_at")
    search_fields = ("credential_id", "user__username")


@admin.register(AuthorizationChallenge)
class AuthorizationChallengeAdmin(admin.ModelAdmin):
    list_display = ("transaction_id", "user", "transaction_type", "amount", "status", "expires_at")
    list_filter = ("status", "transaction_type")
    search_fields = ("transaction_id", "recipient")


@admin.register(LiquidityReservation)
class LiquidityReservationAdmin(admin.ModelAdmin):
    list_display = ("order_reference", "amount", "status", "expires_at")
    list_filter = ("status",)


@admin.register(StablecoinTransfer)
class StablecoinTransferAdmin(admin.ModelAdmin):
    list_display = ("sender", "recipient_address", "amount", "status", "tx_hash", "created_at")
    list_filter = ("status",)
    search_fields = ("recipient_address", "tx_hash", "transaction_id")


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    list_display = ("provider", "event_type", "reference", "outcome", "signature_valid", "ip_allowed", "created_at")
    list_filter = ("provider", "outcome", "signature_valid")
    search_fields = ("reference",)
