"""chronodid.credentials.service

Issue, revoke, look up and render credentials.

Only revocation is stored state. Expiry and validity are computed on every read.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Callable
from datetime import datetime
from enum import StrEnum
from typing import Any
from urllib.parse import quote

from pydantic import BaseModel, Field, field_validator

from chronodid.core.database import Database
from chronodid.core.events import normalize_address
from chronodid.core.exceptions import CredentialNotFoundError, SignatureInvalidError
from chronodid.core.time import parse_dt, utc_now
from chronodid.credentials.models import Credential, CredentialProof, normalize_credential_id
from chronodid.credentials.payload import (
    BASE_CREDENTIAL_TYPE,
    VC_CONTEXTS,
    canonical_payload,
    payload_message,
    recover_signer,
)
from chronodid.credentials.verifier import CredentialVerifier, VerificationResult
from chronodid.did.document import did_for

logger = logging.getLogger(__name__)

STATUS_LIST_TYPE = "CredentialStatusList2021"


def revocation_message(credential_id: str) -> str:
    return f"Revoke credential: {normalize_credential_id(credential_id)}"


class CredentialState(StrEnum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class CredentialStatus(BaseModel):
    id: str
    type: str = STATUS_LIST_TYPE
    status: CredentialState


class IssueCredentialRequest(BaseModel):
    issuer_address: str
    subject_did: str
    type: list[str] = Field(default_factory=list)
    claims: dict[str, Any] = Field(default_factory=dict)
    issuance_date: str
    expiration_date: str | None = None
    signature: str
    # Defaults to the issuer. Set when a delegate signs on the issuer's behalf.
    signer_address: str | None = None

    @field_validator("issuer_address", "signer_address")
    @classmethod
    def _address(cls, v: str | None) -> str | None:
        return None if v is None else normalize_address(v)

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

    def credential_types(self) -> list[str]:
        rest = [t for t in self.type if t != BASE_CREDENTIAL_TYPE]
        return [BASE_CREDENTIAL_TYPE, *rest]


def _row_to_credential(row: sqlite3.Row) -> Credential:
    return Credential(
        id=str(row["id"]),
        issuer=str(row["issuer"]),
        subject=str(row["subject"]),
        type=json.loads(row["type"]),
        claims=json.loads(row["claims"]),
        issuance_date=str(row["issuance_date"]),
        expiration_date=row["expiration_date"],
        proof=CredentialProof.model_validate(json.loads(row["proof"])),
        revoked=bool(int(row["revoked"])),
        revoked_at=parse_dt(row["revoked_at"]) if row["revoked_at"] else None,
    )


class CredentialService:
    def __init__(
        self,
        db: Database,
        verifier: CredentialVerifier,
        *,
        api_base_url: str = "http://localhost:3001",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db
        self._verifier = verifier
        self.api_base_url = api_base_url.rstrip("/")
        self._clock = clock

    def status_url(self, credential_id: str) -> str:
        cid = normalize_credential_id(credential_id)
        return f"{self.api_base_url}/api/credentials/{quote(cid, safe='')}/status"

    def issue(self, request: IssueCredentialRequest) -> Credential:
        """Persist a credential whose signature checks out.

        Raises:
            SignatureInvalidError: signature does not recover to the declared signer.
        """

        issuer_did = did_for(request.issuer_address)
        signer = request.signer_address or request.issuer_address
        types = request.credential_types()

        message = payload_message(
            canonical_payload(
                types=types,
                issuer=issuer_did,
                issuance_date=request.issuance_date,
                expiration_date=request.expiration_date,
                subject=request.subject_did,
                claims=request.claims,
            )
        )
        recovered = recover_signer(message, request.signature)
        if recovered != signer:
            raise SignatureInvalidError(f"signature recovers to {recovered}, expected {signer}")

        credential = Credential(
            id=f"urn:uuid:{uuid.uuid4()}",
            issuer=issuer_did,
            subject=request.subject_did,
            type=types,
            claims=request.claims,
            issuance_date=request.issuance_date,
            expiration_date=request.expiration_date,
            proof=CredentialProof(
                created=request.issuance_date,
                verification_method=f"{did_for(signer)}#controller",
                proof_value=request.signature,
            ),
        )
        self._db.insert_credential(
            credential_id=credential.id,
            issuer=credential.issuer,
            subject=credential.subject,
            types=credential.type,
            claims=credential.claims,
            issuance_date=credential.issuance_date,
            expiration_date=credential.expiration_date,
            proof=credential.proof.model_dump(mode="json"),
        )
        logger.info("issued %s by %s (signer %s)", credential.id, issuer_did, signer)
        return credential

    def get(self, credential_id: str) -> Credential:
        row = self._db.get_credential_row(normalize_credential_id(credential_id))
        if row is None:
            raise CredentialNotFoundError(f"credential not found: {credential_id}")
        return _row_to_credential(row)

    def revoke(self, credential_id: str, issuer_address: str, signature: str) -> Credential:
        """Revoke on the issuer's signed request. Revoking twice is a no-op.

        Raises:
            CredentialNotFoundError: unknown id.
            SignatureInvalidError: requester is not the issuer, or the signature is not theirs.
        """

        credential = self.get(credential_id)
        requester = normalize_address(issuer_address)
        if requester != credential.issuer_address:
            raise SignatureInvalidError("only the issuer can revoke this credential")

        recovered = recover_signer(revocation_message(credential.id), signature)
        if recovered != requester:
            raise SignatureInvalidError("revocation signature does not match the issuer")

        if self._db.mark_credential_revoked(credential.id, at=self._clock()):
            logger.info("revoked %s", credential.id)
        return self.get(credential.id)

    def status(self, credential_id: str) -> CredentialStatus:
        credential = self.get(credential_id)
        if credential.revoked:
            state = CredentialState.REVOKED
        elif credential.expiration_date and parse_dt(credential.expiration_date) < self._clock():
            state = CredentialState.EXPIRED
        else:
            state = CredentialState.ACTIVE
        return CredentialStatus(id=self.status_url(credential.id), status=state)

    def verify(self, credential_id: str) -> VerificationResult:
        return self._verifier.verify(self.get(credential_id))

    def find_by_issuer(self, issuer_did: str, *, limit: int = 100) -> list[Credential]:
        rows = self._db.find_credential_rows(issuer=str(issuer_did).strip().lower(), limit=limit)
        return [_row_to_credential(r) for r in rows]

    def find_by_subject(self, subject_did: str, *, limit: int = 100) -> list[Credential]:
        rows = self._db.find_credential_rows(subject=str(subject_did).strip(), limit=limit)
        return [_row_to_credential(r) for r in rows]

    def to_verifiable_credential(self, credential: Credential) -> dict[str, Any]:
        """W3C VC Data Model 1.1 rendering."""

        vc: dict[str, Any] = {
            "@context": list(VC_CONTEXTS),
            "id": credential.id,
            "type": list(credential.type),
            "issuer": credential.issuer,
            "issuanceDate": credential.issuance_date,
        }
        if credential.expiration_date:
            vc["expirationDate"] = credential.expiration_date
        vc["credentialSubject"] = {"id": credential.subject, **credential.claims}
        vc["credentialStatus"] = {"id": self.status_url(credential.id), "type": STATUS_LIST_TYPE}
        vc["proof"] = credential.proof.model_dump(mode="json", by_alias=True)
        return vc
