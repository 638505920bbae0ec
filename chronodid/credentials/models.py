"""chronodid.credentials.models

Credential shapes. Dates stay the exact strings that were signed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from chronodid.core.time import parse_dt
from chronodid.credentials.payload import PAYLOAD_FORMAT_VERSION, canonical_payload, payload_message
from chronodid.did.document import address_from_did

PROOF_TYPE = "EcdsaSecp256k1Signature2019"
PROOF_PURPOSE = "assertionMethod"
URN_UUID_PREFIX = "urn:uuid:"


def normalize_credential_id(credential_id: str) -> str:
    s = str(credential_id).strip()
    return s if s.startswith(URN_UUID_PREFIX) else URN_UUID_PREFIX + s


class CredentialProof(BaseModel):
    type: str = PROOF_TYPE
    created: str
    verification_method: str
    proof_purpose: str = PROOF_PURPOSE
    proof_value: str

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)


class Credential(BaseModel):
    id: str
    issuer: str
    subject: str
    type: list[str]
    claims: dict[str, Any] = Field(default_factory=dict)
    issuance_date: str
    expiration_date: str | None = None
    proof: CredentialProof
    revoked: bool = False
    revoked_at: datetime | None = None

    model_config = {"frozen": True}

    @field_validator("issuance_date")
    @classmethod
    def _issuance_is_iso(cls, v: str) -> str:
        parse_dt(v)
        return v

    @field_validator("expiration_date")
    @classmethod
    def _expiration_is_iso(cls, v: str | None) -> str | None:
        if v:
            parse_dt(v)
        return v or None

    @property
    def issuer_address(self) -> str:
        return address_from_did(self.issuer)

    @property
    def declared_signer(self) -> str:
        """Address behind ``proof.verification_method`` (the issuer when unset)."""

        vm = self.proof.verification_method.split("#", 1)[0]
        return address_from_did(vm) if vm else self.issuer_address

    def signing_payload(self, version: str = PAYLOAD_FORMAT_VERSION) -> dict[str, Any]:
        if version != PAYLOAD_FORMAT_VERSION:
            raise ValueError(f"unsupported payload format {version!r}")
        return canonical_payload(
            types=self.type,
            issuer=self.issuer,
            issuance_date=self.issuance_date,
            expiration_date=self.expiration_date,
            subject=self.subject,
            claims=self.claims,
        )

    def signing_message(self) -> str:
        return payload_message(self.signing_payload())
