"""
WebAuthn assertion verification against a stored passkey public key.
"""
import binascii
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from django.conf import settings
from loguru import logger
from webauthn import verify_authentication_response
from webauthn.helpers import base64url_to_bytes
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import AuthenticationCredential, AuthenticatorAssertionResponse

from ramp.models import PasskeyCredential


@dataclass
class AssertionResult:
    verified: bool
    new_sign_count: int = 0
    reason: Optional[str] = None


class AssertionVerifier(ABC):
    @abstractmethod
    def verify(
        self,
        credential: PasskeyCredential,
        assertion: Dict[str, Any],
        expected_challenge: str,
    ) -> AssertionResult:
        pass


class WebAuthnAssertionVerifier(AssertionVerifier):
    """
    Verifies a ``navigator.credentials.get()`` response with py_webauthn.

    The library checks the client data (type, challenge, origin), the
    authenticator data (RP ID hash, presence/verification flags, signature
    counter) and the signature against the stored COSE public key.
    """

    def __init__(
        self,
        rp_id: Optional[str] = None,
        origins: Optional[Iterable[str]] = None,
        require_user_verification: Optional[bool] = None,
    ):
        self.rp_id = rp_id or getattr(settings, 'WEBAUTHN_RP_ID', 'localhost')
        self.origins = list(origins if origins is not None else getattr(settings, 'WEBAUTHN_ORIGINS', []))
        self.require_user_verification = (
            require_user_verification if require_user_verification is not None
            else getattr(settings, 'WEBAUTHN_REQUIRE_USER_VERIFICATION', True))

    def verify(
        self,
        credential: PasskeyCredential,
        assertion: Dict[str, Any],
        expected_challenge: str,
    ) -> AssertionResult:
        try:
            response = AuthenticationCredential(
                id=credential.credential_id,
                raw_id=base64url_to_bytes(credential.credential_id),
                response=AuthenticatorAssertionResponse(
                    client_data_json=base64url_to_bytes(assertion['clientDataJSON']),
                    authenticator_data=base64url_to_bytes(assertion['authenticatorData']),
                    signature=base64url_to_bytes(assertion['signature']),
                ),
            )
            public_key = base64url_to_bytes(credential.public_key)
            challenge = base64url_to_bytes(expected_challenge)
        except (KeyError, TypeError, ValueError, binascii.Error) as exc:
            logger.debug('Malformed assertion: {}', exc)
            return AssertionResult(False, reason='Malformed assertion')

        try:
            verified = verify_authentication_response(
                credential=response,
                expected_challenge=challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origins,
                credential_public_key=public_key,
                credential_current_sign_count=credential.sign_count,
                require_user_verification=self.require_user_verification,
            )
        except (WebAuthnException, ValueError) as exc:
            logger.warning('Passkey {} assertion rejected: {}', credential.credential_id, exc)
            return AssertionResult(False, reason=str(exc))

        return AssertionResult(True, new_sign_count=verified.new_sign_count)
