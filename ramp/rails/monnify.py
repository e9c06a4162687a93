"""
Fiat collector (Monnify) boundary: checkout configuration handed to the
client and the shape of inbound transaction-completion webhooks.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

from django.conf import settings
from pydantic import BaseModel, ConfigDict, Field

PAID = 'PAID'
USER_CANCELLED = 'USER_CANCELLED'


class MonnifyEventData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='allow')

    transaction_reference: str = Field('', alias='transactionReference')
    payment_reference: str = Field('', alias='paymentReference')
    amount_paid: Decimal = Field(alias='amountPaid')
    payment_status: str = Field(alias='paymentStatus')
    payment_method: str = Field('', alias='paymentMethod')
    customer: Dict[str, Any] = Field(default_factory=dict)
    meta_data: Optional[Dict[str, Any]] = Field(default=None, alias='metaData')

    @property
    def embedded_reference(self) -> str:
        """Our order reference as echoed back through checkout metadata."""
        return str((self.meta_data or {}).get('paymentReference') or '')


class MonnifyWebhook(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='allow')

    event_type: str = Field(alias='eventType')
    event_data: MonnifyEventData = Field(alias='eventData')


def build_checkout_config(order, user) -> Dict[str, Any]:
    """Parameters the client passes to the hosted checkout."""
    customer_name = user.get_full_name() or user.get_username()
    return {
        'amount': str(order.total_payable_fiat),
        'currency': 'NGN',
        'reference': order.reference,
        'customerFullName': customer_name,
        'customerEmail': user.email,
        'apiKey': getattr(settings, 'MONNIFY_API_KEY', ''),
        'contractCode': getattr(settings, 'MONNIFY_CONTRACT_CODE', ''),
        'paymentDescription': f'Buy {order.stablecoin_amount} USDC',
        'metadata': {
            'paymentReference': order.reference,
            'userId': str(user.pk),
            'usdcAmount': str(order.stablecoin_amount),
        },
        'paymentMethods': ['CARD', 'ACCOUNT_TRANSFER'],
    }
