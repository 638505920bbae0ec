"""chronodid.credentials.verifier

A signature is only as good as the authority behind it *when it was made*.

Four independent checks, ANDed:
1) signature: canonical payload recovers to the declared signer
2) authority at issuance: that signer owned, or was an unexpired delegate of, the
   issuer at the issuance moment
3) not expired
4) not revoked

Outcomes are data, not exceptions. Every check is always populated.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from chronodid.core.exceptions import InvalidInputError, LedgerUnavailableError, SignatureInvalidError
from chronodid.core.time import parse_dt, utc_now
from chronodid.credentials.models import Credential
from chronodid.credentials.payload import PAYLOAD_FORMAT_VERSION, recover_signer
from chronodid.did.resolver import DidResolver, holds_authority

logger = logging.getLogger(__name__)


class FailureReason(StrEnum):
    SIGNATURE_INVALID = "signature_invalid"
    AUTHORITY_INVALID = "authority_invalid"
    EXPIRED = "expired"
    REVOKED = "revoked"
    LEDGER_UNAVAILABLE = "ledger_unavailable"


class VerificationChecks(BaseModel):
    signature: bool
    authority_at_issuance: bool
    not_expired: bool
    not_revoked: bool


class VerificationDetails(BaseModel):
    credential_id: str
    issuer: str
    issuance_date: str
    payload_format: str = PAYLOAD_FORMAT_VERSION
    declared_signer: str | None = None
    recovered_address: str | None = None
    issuance_block: int | None = None
    owner_at_issuance: str | None = None


class VerificationResult(BaseModel):
    valid: bool
    checks: VerificationChecks
    failures: list[FailureReason] = Field(default_factory=list)
    degraded: bool = False
    details: VerificationDetails


class CredentialVerifier:
    def __init__(self, resolver: DidResolver, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._resolver = resolver
        self._clock = clock

    def _check_signature(self, credential: Credential, details: VerificationDetails) -> bool:
        try:
            declared = credential.declared_signer
        except InvalidInputError as e:
            logger.info("credential %s: unusable verification method: %s", credential.id, e)
            declared = None
        details.declared_signer = declared

        try:
            recovered = recover_signer(credential.signing_message(), credential.proof.proof_value)
        except SignatureInvalidError as e:
            logger.info("credential %s: %s", credential.id, e)
            return False
        details.recovered_address = recovered
        return declared is not None and recovered == declared

    def _check_authority(
        self, credential: Credential, signer: str | None, details: VerificationDetails, failures: list[FailureReason]
    ) -> tuple[bool, bool]:
        """Returns (authorized, degraded)."""

        if signer is None:
            return False, False

        issued_at = parse_dt(credential.issuance_date)
        try:
            pos, ref_ts = self._resolver.anchor(issued_at)
            state = self._resolver.reconstructor.state_at(credential.issuer_address, pos)
        except LedgerUnavailableError as e:
            # Approximation: current authority stands in for historical authority.
            logger.warning(
                "DEGRADED verification of %s: historical authority unavailable (%s); checking current authority",
                credential.id,
                e,
            )
            failures.append(FailureReason.LEDGER_UNAVAILABLE)
            return self._resolver.is_current_signer(credential.issuer, signer), True

        details.issuance_block = pos.block
        details.owner_at_issuance = state.owner
        return holds_authority(state, signer, ref_ts), False

    def verify(self, credential: Credential) -> VerificationResult:
        details = VerificationDetails(
            credential_id=credential.id, issuer=credential.issuer, issuance_date=credential.issuance_date
        )
        failures: list[FailureReason] = []

        signature_ok = self._check_signature(credential, details)
        authority_ok, degraded = self._check_authority(credential, details.recovered_address, details, failures)
        not_expired = credential.expiration_date is None or parse_dt(credential.expiration_date) > self._clock()
        not_revoked = not credential.revoked

        if not signature_ok:
            failures.insert(0, FailureReason.SIGNATURE_INVALID)
        if not authority_ok:
            failures.append(FailureReason.AUTHORITY_INVALID)
        if not not_expired:
            failures.append(FailureReason.EXPIRED)
        if not not_revoked:
            failures.append(FailureReason.REVOKED)

        checks = VerificationChecks(
            signature=signature_ok,
            authority_at_issuance=authority_ok,
            not_expired=not_expired,
            not_revoked=not_revoked,
        )
        valid = signature_ok and authority_ok and not_expired and not_revoked
        logger.info(
            "verified %s: valid=%s failures=%s%s",
            credential.id,
            valid,
            ",".join(failures) or "-",
            " (degraded)" if degraded else "",
        )
        return VerificationResult(valid=valid, checks=checks, failures=failures, degraded=degraded, details=details)
