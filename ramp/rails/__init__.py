"""
Fiat rails: the collector that takes naira in and the processor that pays it out.
"""
from .lenco import (
    FAILURE_STATUSES,
    IN_FLIGHT_STATUSES,
    SUCCESS_STATUSES,
    LencoClient,
    LencoWebhook,
    PayoutProcessor,
    PayoutResult,
    PayoutStatus,
    ResolvedAccount,
)
from .monnify import PAID, USER_CANCELLED, MonnifyWebhook, build_checkout_config

__all__ = [
    'FAILURE_STATUSES',
    'IN_FLIGHT_STATUSES',
    'PAID',
    'SUCCESS_STATUSES',
    'USER_CANCELLED',
    'LencoClient',
    'LencoWebhook',
    'MonnifyWebhook',
    'PayoutProcessor',
    'PayoutResult',
    'PayoutStatus',
    'ResolvedAccount',
    'build_checkout_config',
]
