"""
Authentication of inbound rail webhooks.

The keyed-hash signature over the raw body is mandatory: without a
configured secret every webhook is rejected. The IP allowlist is advisory
and only recorded for audit.
"""
import hashlib
import hmac
import ipaddress
from dataclasses import dataclass
from typing import Iterable, Optional

from django.conf import settings
from loguru import logger

from ramp.models import WebhookEvent


@dataclass(frozen=True)
class IpCheck:
    valid: bool
    whitelisted: bool
    ip: str
    configured: bool


def client_ip(request) -> str:
    """Best-effort client address behind proxies."""
    meta = request.META
    for header in ('HTTP_CF_CONNECTING_IP', 'HTTP_X_FORWARDED_FOR', 'HTTP_X_REAL_IP'):
        value = meta.get(header)
        if value:
            return value.split(',')[0].strip()
    return meta.get('REMOTE_ADDR', '') or ''


class WebhookAuthenticator:
    def __init__(
        self,
        provider: str,
        secret: str,
        allowlist: Optional[Iterable[str]] = None,
        signature_header: str = 'HTTP_MONNIFY_SIGNATURE',
        digestmod=hashlib.sha512,
    ):
        self.provider = provider
        self.secret = secret or ''
        self.allowlist = [entry.strip() for entry in (allowlist or []) if entry.strip()]
        self.signature_header = signature_header
        self.digestmod = digestmod

    @classmethod
    def for_collector(cls) -> 'WebhookAuthenticator':
        return cls(
            WebhookEvent.Provider.MONNIFY,
            getattr(settings, 'MONNIFY_SECRET_KEY', ''),
            getattr(settings, 'MONNIFY_ALLOWED_IPS', []),
            signature_header='HTTP_MONNIFY_SIGNATURE',
        )

    @classmethod
    def for_payout(cls) -> 'WebhookAuthenticator':
        return cls(
            WebhookEvent.Provider.LENCO,
            getattr(settings, 'LENCO_WEBHOOK_SECRET', ''),
            getattr(settings, 'LENCO_ALLOWED_IPS', []),
            signature_header='HTTP_X_LENCO_SIGNATURE',
        )

    def signature_from(self, request) -> str:
        return request.META.get(self.signature_header, '') or ''

    def verify(self, raw_payload: bytes, signature: Optional[str]) -> bool:
        if not self.secret:
            logger.error('{} webhook secret not configured, rejecting webhook', self.provider)
            return False
        if not signature:
            logger.warning('{} webhook received without signature', self.provider)
            return False
        expected = hmac.new(self.secret.encode(), raw_payload, self.digestmod).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    def verify_ip(self, request) -> IpCheck:
        ip = client_ip(request)
        if not self.allowlist:
            return IpCheck(valid=True, whitelisted=False, ip=ip, configured=False)

        listed = self._is_listed(ip)
        if not listed:
            logger.warning('{} webhook from unlisted IP {}, continuing on signature', self.provider, ip)
        return IpCheck(valid=True, whitelisted=listed, ip=ip, configured=True)

    def _is_listed(self, ip: str) -> bool:
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return False
        for entry in self.allowlist:
            try:
                if address in ipaddress.ip_network(entry, strict=False):
                    return True
            except ValueError:
                logger.warning('Ignoring malformed allowlist entry {}', entry)
        return False

    def record(
        self,
        ip_check: IpCheck,
        signature_valid: bool,
        outcome: str,
        payload=None,
        event_type: str = '',
        reference: str = '',
    ) -> WebhookEvent:
        return WebhookEvent.objects.create(
            provider=self.provider,
            event_type=event_type or '',
            reference=reference or '',
            ip_address=ip_check.ip,
            ip_allowlist_configured=ip_check.configured,
            ip_allowed=ip_check.whitelisted,
            signature_valid=signature_valid,
            outcome=outcome,
            payload=payload,
        )
