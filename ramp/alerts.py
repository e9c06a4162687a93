"""
Operator alerts for conditions that need a human: an empty custodial pool,
fiat collected without a stablecoin credit (including payments that land on
an order already closed), stablecoin received without a payout, or a payout
that never settled.
"""
import json
from typing import Any, Dict, Optional

import requests
from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.utils import timezone
from loguru import logger

LIQUIDITY_SHORTFALL = 'liquidity_shortfall'
CREDIT_FAILED = 'credit_failed'
PAYOUT_DISPATCH_FAILED = 'payout_dispatch_failed'
RECONCILIATION_TIMEOUT = 'reconciliation_timeout'
PAYMENT_ON_CLOSED_ORDER = 'payment_on_closed_order'


def alert_operator(kind: str, message: str, context: Optional[Dict[str, Any]] = None) -> None:
    context = context or {}
    logger.critical('OPERATOR ALERT [{}] {} {}', kind, message, context)

    url = getattr(settings, 'OPERATOR_ALERT_WEBHOOK_URL', '')
    if not url:
        return
    try:
        response = requests.post(
            url,
            data=json.dumps(
                {
                    'kind': kind,
                    'message': message,
                    'context': context,
                    'raised_at': timezone.now(),
                },
                cls=DjangoJSONEncoder,
            ),
            headers={'Content-Type': 'application/json'},
            timeout=5,
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.error('Failed to deliver operator alert {}: {}', kind, exc)
