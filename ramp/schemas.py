"""
Request bodies accepted by the HTTP API.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')


class CreateOnrampOrderRequest(RequestModel):
    amount: Decimal = Field(gt=0)


class CreateOfframpOrderRequest(RequestModel):
    amount: Decimal = Field(gt=0)
    account_number: str = Field(alias='accountNumber', min_length=1, max_length=20)
    bank_code: str = Field(alias='bankCode', min_length=1, max_length=16)

    @field_validator('account_number', 'bank_code')
    @classmethod
    def strip(cls, value: str) -> str:
        return value.strip()


class ConfirmOfframpRequest(RequestModel):
    tx_hash: str = Field(alias='txHash', min_length=66, max_length=66)


class ChallengeRequest(RequestModel):
    type: str
    amount: Decimal = Field(gt=0)
    recipient: str = Field(min_length=1, max_length=255)
    transaction_id: Optional[str] = Field(default=None, alias='transactionId', max_length=64)


class Assertion(RequestModel):
    credential_id: str = Field(alias='credentialId')
    client_data_json: str = Field(alias='clientDataJSON')
    authenticator_data: str = Field(alias='authenticatorData')
    signature: str

    def as_payload(self) -> Dict[str, Any]:
        return {
            'credentialId': self.credential_id,
            'clientDataJSON': self.client_data_json,
            'authenticatorData': self.authenticator_data,
            'signature': self.signature,
        }


class VerifyChallengeRequest(RequestModel):
    transaction_id: str = Field(alias='transactionId')
    assertion: Assertion


class SendRequest(RequestModel):
    amount: Decimal = Field(gt=0)
    recipient: str = Field(min_length=1, max_length=255)
