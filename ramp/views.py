"""
HTTP surface of the settlement engine.
"""
import json
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from loguru import logger
from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from ramp.authorization import TOKEN_HEADER, TransactionAuthorizer
from ramp.dispatcher import OFFRAMP, ONRAMP, SettlementDispatcher
from ramp.errors import OrderNotFound, SettlementError, SettlementValidationError
from ramp.liquidity import LiquidityGuard
from ramp.rails import LencoWebhook, MonnifyWebhook
from ramp.rates import Quote, RateResolver
from ramp.reconciliation import ReconciliationPoller
from ramp.schemas import (
    ChallengeRequest,
    ConfirmOfframpRequest,
    CreateOfframpOrderRequest,
    CreateOnrampOrderRequest,
    SendRequest,
    VerifyChallengeRequest,
)
from ramp.webhooks import WebhookAuthenticator


def get_resolver() -> RateResolver:
    return RateResolver()


def get_dispatcher() -> SettlementDispatcher:
    return SettlementDispatcher()


def get_authorizer() -> TransactionAuthorizer:
    return TransactionAuthorizer()


def _parse(model, data):
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        logger.debug('pydantic validation failed: {}', exc)
        errors = [
            {'field': '.'.join(str(part) for part in error['loc']), 'message': error['msg']}
            for error in exc.errors()
        ]
        raise SettlementValidationError('Invalid request body', details={'errors': errors}) from exc


def _query_amount(request, name: str) -> Optional[Decimal]:
    raw = request.query_params.get(name)
    if raw in (None, ''):
        return None
    try:
        amount = Decimal(raw)
    except InvalidOperation as exc:
        raise SettlementValidationError(f'Invalid {name}') from exc
    if not amount.is_finite() or amount <= 0:
        raise SettlementValidationError(f'{name} must be a positive number')
    return amount


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_quote(quote: Quote) -> Dict[str, Any]:
    return {
        'direction': quote.direction,
        'baseRate': str(quote.base_rate),
        'rate': str(quote.marked_up_rate),
        'markup': str(quote.markup),
        'feePercent': str(quote.fee_percent),
        'feeAmount': str(quote.fee_amount),
        'feeCap': str(quote.fee_cap),
        'cappedFee': quote.capped_fee,
        'sourceAmount': str(quote.source_amount),
        'targetAmount': str(quote.target_amount),
        'totalPayable': str(quote.total_payable),
        'effectiveRate': str(quote.effective_rate),
        'lpFee': str(quote.lp_fee),
        'source': quote.source,
        'isCached': quote.is_cached,
        'warning': quote.warning,
    }


def serialize_onramp(order) -> Dict[str, Any]:
    return {
        'paymentReference': order.reference,
        'status': order.status,
        'amount': str(order.amount_fiat),
        'feeAmount': str(order.fee_amount),
        'totalPayable': str(order.total_payable_fiat),
        'usdcAmount': str(order.stablecoin_amount),
        'exchangeRate': str(order.exchange_rate),
        'walletAddress': order.wallet_address,
        'amountPaid': str(order.amount_paid) if order.amount_paid is not None else None,
        'txHash': order.chain_tx_hash,
        'explorerUrl': order.explorer_url or None,
        'failureReason': order.failure_reason or None,
        'createdAt': _iso(order.created_at),
        'paidAt': _iso(order.paid_at),
        'completedAt': _iso(order.completed_at),
    }


def serialize_offramp(order) -> Dict[str, Any]:
    return {
        'reference': order.reference,
        'status': order.status,
        'usdcAmount': str(order.stablecoin_amount),
        'feeAmount': str(order.fee_amount),
        'netUsdcAmount': str(order.net_stablecoin_amount),
        'lpFee': str(order.lp_fee),
        'fiatAmount': str(order.fiat_amount),
        'exchangeRate': str(order.exchange_rate),
        'beneficiary': {
            'name': order.beneficiary_name,
            'accountNumber': order.masked_account_number,
            'bankCode': order.beneficiary_bank_code,
            'bankName': order.beneficiary_bank_name,
        },
        'depositTxHash': order.deposit_tx_hash,
        'externalStatus': order.external_status or None,
        'failureReason': order.failure_reason or None,
        'createdAt': _iso(order.created_at),
        'processedAt': _iso(order.processed_at),
        'completedAt': _iso(order.completed_at),
    }


class SettlementAPIView(APIView):
    """Renders settlement errors as ``{"success": false, "error": ...}``."""

    def handle_exception(self, exc):
        if isinstance(exc, SettlementError):
            if exc.status_code >= 500:
                logger.error('{} failed: {}', self.__class__.__name__, exc.message)
            else:
                logger.info('{} rejected: {}', self.__class__.__name__, exc.message)
            body = {'success': False, 'error': exc.message}
            body.update(exc.details)
            return Response(body, status=exc.status_code)
        if isinstance(exc, APIException):
            return super().handle_exception(exc)
        logger.exception('{} error: {}', self.__class__.__name__, exc)
        return Response(
            {'success': False, 'error': 'Internal server error'},
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class OnrampRateView(SettlementAPIView):
    authentication_classes: list = []
    permission_classes: list = []

    def get(self, request, *args, **kwargs):
        quote = get_resolver().onramp_quote(_query_amount(request, 'amount'))
        return Response({'success': True, 'quote': serialize_quote(quote)}, status=status.HTTP_200_OK)


class OnrampOrderView(SettlementAPIView):
    def post(self, request, *args, **kwargs):
        body = _parse(CreateOnrampOrderRequest, request.data)
        created = get_dispatcher().create_onramp_order(request.user, body.amount)
        return Response(
            {
                'success': True,
                'order': serialize_onramp(created.order),
                'quote': serialize_quote(created.quote),
                'liquidity': created.liquidity.as_dict(),
                'checkout': created.checkout,
            },
            status=status.HTTP_201_CREATED,
        )


class OnrampOrderDetailView(SettlementAPIView):
    def get(self, request, reference, *args, **kwargs):
        order = get_dispatcher().get_order(request.user, ONRAMP, reference)
        return Response({'success': True, 'order': serialize_onramp(order)}, status=status.HTTP_200_OK)


class OnrampCancelView(SettlementAPIView):
    def post(self, request, reference, *args, **kwargs):
        order = get_dispatcher().cancel_order(request.user, ONRAMP, reference)
        return Response({'success': True, 'order': serialize_onramp(order)}, status=status.HTTP_200_OK)


class WebhookView(SettlementAPIView):
    """
    Shared webhook flow: authenticate the raw body, record the attempt,
    parse, then hand the event to the dispatcher.
    """

    authentication_classes: list = []
    permission_classes: list = []

    authenticator_factory = None
    payload_model = None

    def event_type(self, event) -> str:
        raise NotImplementedError

    def event_reference(self, event) -> str:
        raise NotImplementedError

    def dispatch_event(self, event):
        raise NotImplementedError

    def post(self, request, *args, **kwargs):
        authenticator: WebhookAuthenticator = self.authenticator_factory()
        raw_body = request.body
        ip_check = authenticator.verify_ip(request)
        signature_valid = authenticator.verify(raw_body, authenticator.signature_from(request))

        try:
            payload = json.loads(raw_body or b'{}')
        except ValueError:
            payload = None

        if not signature_valid:
            authenticator.record(ip_check, False, 'rejected_signature', payload=payload)
            logger.warning('{} webhook rejected: invalid signature from {}', authenticator.provider, ip_check.ip)
            return Response({'success': False, 'error': 'Invalid signature'}, status=status.HTTP_401_UNAUTHORIZED)

        try:
            event = self.payload_model.model_validate(payload)
        except PydanticValidationError as exc:
            logger.info('{} webhook payload invalid: {}', authenticator.provider, exc)
            authenticator.record(ip_check, True, 'invalid_payload', payload=payload)
            return Response({'success': False, 'error': 'Invalid payload'}, status=status.HTTP_400_BAD_REQUEST)

        try:
            outcome = self.dispatch_event(event)
        except OrderNotFound as exc:
            authenticator.record(
                ip_check, True, 'not_found', payload=payload,
                event_type=self.event_type(event), reference=self.event_reference(event))
            return Response({'success': False, 'error': exc.message}, status=exc.status_code)

        authenticator.record(
            ip_check, True, outcome.outcome, payload=payload,
            event_type=self.event_type(event), reference=outcome.order.reference if outcome.order else '')
        body = {'success': outcome.success, 'outcome': outcome.outcome}
        if outcome.message:
            body['message'] = outcome.message
        body.update(outcome.details)
        return Response(body, status=outcome.status_code)


class OnrampWebhookView(WebhookView):
    authenticator_factory = staticmethod(WebhookAuthenticator.for_collector)
    payload_model = MonnifyWebhook

    def event_type(self, event) -> str:
        return event.event_type

    def event_reference(self, event) -> str:
        return event.event_data.payment_reference or event.event_data.embedded_reference

    def dispatch_event(self, event):
        return get_dispatcher().handle_collection_event(event)


class OfframpRateView(SettlementAPIView):
    authentication_classes: list = []
    permission_classes: list = []

    def get(self, request, *args, **kwargs):
        resolver = get_resolver()
        amount_fiat = _query_amount(request, 'amountFiat')
        if amount_fiat is not None:
            quote = resolver.offramp_quote_for_fiat(amount_fiat)
        else:
            quote = resolver.offramp_quote(_query_amount(request, 'amount'))
        return Response(
            {'success': True, 'quote': serialize_quote(quote), 'info': resolver.rate_info()['offramp']},
            status=status.HTTP_200_OK,
        )


class OfframpOrderView(SettlementAPIView):
    def post(self, request, *args, **kwargs):
        body = _parse(CreateOfframpOrderRequest, request.data)
        created = get_dispatcher().create_offramp_order(
            request.user, body.amount, body.account_number, body.bank_code)
        return Response(
            {
                'success': True,
                'order': serialize_offramp(created.order),
                'quote': serialize_quote(created.quote),
                'depositAddress': created.deposit_address,
            },
            status=status.HTTP_201_CREATED,
        )


class OfframpOrderDetailView(SettlementAPIView):
    def get(self, request, reference, *args, **kwargs):
        order = get_dispatcher().get_order(request.user, OFFRAMP, reference)
        return Response({'success': True, 'order': serialize_offramp(order)}, status=status.HTTP_200_OK)


class OfframpConfirmView(SettlementAPIView):
    def post(self, request, reference, *args, **kwargs):
        token = request.META.get(TOKEN_HEADER)
        body = _parse(ConfirmOfframpRequest, request.data)
        order = get_dispatcher().confirm_offramp_deposit(request.user, reference, body.tx_hash, token)
        return Response(
            {'success': order.status != order.Status.FAILED, 'order': serialize_offramp(order)},
            status=status.HTTP_200_OK,
        )


class OfframpCancelView(SettlementAPIView):
    def post(self, request, reference, *args, **kwargs):
        order = get_dispatcher().cancel_order(request.user, OFFRAMP, reference)
        return Response({'success': True, 'order': serialize_offramp(order)}, status=status.HTTP_200_OK)


class OfframpWebhookView(WebhookView):
    authenticator_factory = staticmethod(WebhookAuthenticator.for_payout)
    payload_model = LencoWebhook

    def event_type(self, event) -> str:
        return event.event

    def event_reference(self, event) -> str:
        return event.data.client_reference or event.data.reference or event.data.id or ''

    def dispatch_event(self, event):
        return get_dispatcher().handle_payout_event(event)


class ChallengeView(SettlementAPIView):
    def post(self, request, *args, **kwargs):
        body = _parse(ChallengeRequest, request.data)
        challenge = get_authorizer().issue_challenge(
            request.user, body.type, body.amount, body.recipient, transaction_id=body.transaction_id)
        return Response(
            {
                'success': True,
                'transactionId': challenge.transaction_id,
                'challenge': challenge.challenge,
                'expiresAt': _iso(challenge.expires_at),
                'allowCredentials': list(
                    request.user.passkeys.values_list('credential_id', flat=True)),
            },
            status=status.HTTP_201_CREATED,
        )


class VerifyChallengeView(SettlementAPIView):
    def post(self, request, *args, **kwargs):
        body = _parse(VerifyChallengeRequest, request.data)
        issued = get_authorizer().verify_and_issue_token(
            request.user, body.transaction_id, body.assertion.as_payload())
        return Response(
            {
                'success': True,
                'transactionId': issued.transaction_id,
                'token': issued.token,
                'expiresAt': _iso(issued.expires_at),
            },
            status=status.HTTP_200_OK,
        )


class TransferView(SettlementAPIView):
    def post(self, request, *args, **kwargs):
        token = request.META.get(TOKEN_HEADER)
        body = _parse(SendRequest, request.data)
        record = get_dispatcher().execute_send(request.user, token, body.amount, body.recipient)
        return Response(
            {
                'success': True,
                'transfer': {
                    'id': record.pk,
                    'amount': str(record.amount),
                    'recipientAddress': record.recipient_address,
                    'status': record.status,
                    'txHash': record.tx_hash,
                    'explorerUrl': record.explorer_url or None,
                },
            },
            status=status.HTTP_201_CREATED,
        )


class LiquidityView(SettlementAPIView):
    permission_classes = [IsAdminUser]

    def get(self, request, *args, **kwargs):
        dispatcher = get_dispatcher()
        amount = _query_amount(request, 'amount') or Decimal('0')
        guard: LiquidityGuard = dispatcher.guard
        result = guard.check_preflight(amount, destination=request.query_params.get('destination'))
        return Response(
            {
                'success': True,
                'liquidity': result.as_dict(),
                'reserved': str(guard.reserved_amount()),
                'reconciliation': ReconciliationPoller(dispatcher=dispatcher).stats(),
            },
            status=status.HTTP_200_OK,
        )
