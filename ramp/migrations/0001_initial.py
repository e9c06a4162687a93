import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="OnrampOrder",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("reference", models.CharField(max_length=64, unique=True)),
                ("exchange_rate", models.DecimalField(decimal_places=6, max_digits=18)),
                ("stablecoin_amount", models.DecimalField(decimal_places=6, max_digits=20)),
                ("failure_reason", models.TextField(blank=True, default="")),
                ("error_code", models.CharField(blank=True, default="", max_length=64)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("external_payment_reference", models.CharField(blank=True, default="", max_length=128)),
                ("amount_fiat", models.DecimalField(decimal_places=2, max_digits=18)),
                ("fee_amount", models.DecimalField(decimal_places=2, max_digits=18)),
                ("total_payable_fiat", models.DecimalField(decimal_places=2, max_digits=18)),
                ("amount_paid", models.DecimalField(blank=True, decimal_places=2, max_digits=18, null=True)),
                ("payment_method", models.CharField(blank=True, default="", max_length=32)),
                ("wallet_address", models.CharField(max_length=42)),
                ("rate_source", models.CharField(blank=True, default="", max_length=32)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("PAID", "Paid"),
                            ("COMPLETED", "Completed"),
                            ("FAILED", "Failed"),
                            ("CANCELLED", "Cancelled"),
                        ],
                        default="PENDING",
                        max_length=16,
                    ),
                ),
                ("chain_tx_hash", models.CharField(blank=True, max_length=66, null=True)),
                ("explorer_url", models.URLField(blank=True, default="")),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                (
                    "user",
                    models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, to=settings.AUTH_USER_MODEL),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "abstract": False,
                "indexes": [
                    models.Index(fields=["user", "status", "created_at"], name="ramp_onramp_user_status_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="OfframpOrder",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("reference", models.CharField(max_length=64, unique=True)),
                ("exchange_rate", models.DecimalField(decimal_places=6, max_digits=18)),
                ("stablecoin_amount", models.DecimalField(decimal_places=6, max_digits=20)),
                ("failure_reason", models.TextField(blank=True, default="")),
                ("error_code", models.CharField(blank=True, default="", max_length=64)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("fee_amount", models.DecimalField(decimal_places=6, max_digits=20)),
                ("net_stablecoin_amount", models.DecimalField(decimal_places=6, max_digits=20)),
                ("lp_fee", models.DecimalField(decimal_places=6, default=0, max_digits=20)),
                ("fiat_amount", models.DecimalField(decimal_places=2, max_digits=18)),
                ("rate_source", models.CharField(blank=True, default="", max_length=32)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("PROCESSING", "Processing"),
                            ("SETTLING", "Settling"),
                            ("COMPLETED", "Completed"),
                            ("FAILED", "Failed"),
                            ("TIMEOUT", "Timeout"),
                            ("CANCELLED", "Cancelled"),
                        ],
                        default="PENDING",
                        max_length=16,
                    ),
                ),
                ("beneficiary_name", models.CharField(max_length=255)),
                ("beneficiary_account_number", models.CharField(max_length=20)),
                ("beneficiary_bank_code", models.CharField(max_length=16)),
                ("beneficiary_bank_name", models.CharField(blank=True, default="", max_length=128)),
                ("deposit_tx_hash", models.CharField(blank=True, max_length=66, null=True, unique=True)),
                ("external_transfer_id", models.CharField(blank=True, default="", max_length=128)),
                ("external_status", models.CharField(blank=True, default="", max_length=32)),
                ("poll_attempts", models.PositiveIntegerField(default=0)),
                ("last_polled_at", models.DateTimeField(blank=True, null=True)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "user",
                    models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, to=settings.AUTH_USER_MODEL),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "abstract": False,
                "indexes": [
                    models.Index(fields=["status", "processed_at"], name="ramp_offramp_status_proc_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="UserWallet",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("address", models.CharField(max_length=42, unique=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "user",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="wallet",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="PasskeyCredential",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("credential_id", models.CharField(max_length=255, unique=True)),
                ("public_key", models.TextField()),
                (
                    "algorithm",
                    models.CharField(
                        choices=[("ES256", "ECDSA P-256 SHA-256"), ("EdDSA", "Ed25519")],
                        default="ES256",
                        max_length=8,
                    ),
                ),
                ("sign_count", models.PositiveBigIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("last_used_at", models.DateTimeField(blank=True, null=True)),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="passkeys",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="AuthorizationChallenge",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("transaction_id", models.CharField(max_length=64, unique=True)),
                ("challenge", models.CharField(max_length=128)),
                (
                    "transaction_type",
                    models.CharField(choices=[("send", "Send"), ("withdraw", "Withdraw")], max_length=16),
                ),
                ("amount", models.DecimalField(decimal_places=6, max_digits=20)),
                ("recipient", models.CharField(max_length=255)),
                (
                    "status",
                    models.CharField(
                        choices=[("issued", "Issued"), ("consumed", "Consumed"), ("expired", "Expired")],
                        default="issued",
                        max_length=16,
                    ),
                ),
                ("expires_at", models.DateTimeField()),
                ("verified_at", models.DateTimeField(blank=True, null=True)),
                ("token_id", models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ("token_expires_at", models.DateTimeField(blank=True, null=True)),
                ("token_consumed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "user",
                    models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, to=settings.AUTH_USER_MODEL),
                ),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="LiquidityReservation",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("order_reference", models.CharField(max_length=64, unique=True)),
                ("amount", models.DecimalField(decimal_places=6, max_digits=20)),
                (
                    "status",
                    models.CharField(
                        choices=[("ACTIVE", "Active"), ("CONSUMED", "Consumed"), ("RELEASED", "Released")],
                        default="ACTIVE",
                        max_length=16,
                    ),
                ),
                ("expires_at", models.DateTimeField()),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name="StablecoinTransfer",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("recipient_address", models.CharField(max_length=42)),
                ("amount", models.DecimalField(decimal_places=6, max_digits=20)),
                (
                    "status",
                    models.CharField(
                        choices=[("PENDING", "Pending"), ("COMPLETED", "Completed"), ("FAILED", "Failed")],
                        default="PENDING",
                        max_length=16,
                    ),
                ),
                ("transaction_id", models.CharField(blank=True, default="", max_length=64)),
                ("tx_hash", models.CharField(blank=True, max_length=66, null=True)),
                ("explorer_url", models.URLField(blank=True, default="")),
                ("failure_reason", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "recipient_user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="received_transfers",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "sender",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="sent_transfers",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "provider",
                    models.CharField(choices=[("monnify", "Monnify"), ("lenco", "Lenco")], max_length=16),
                ),
                ("event_type", models.CharField(blank=True, default="", max_length=64)),
                ("reference", models.CharField(blank=True, default="", max_length=128)),
                ("ip_address", models.CharField(blank=True, default="", max_length=64)),
                ("ip_allowlist_configured", models.BooleanField(default=False)),
                ("ip_allowed", models.BooleanField(default=False)),
                ("signature_valid", models.BooleanField(default=False)),
                ("outcome", models.CharField(blank=True, default="", max_length=32)),
                ("payload", models.JSONField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
    ]
