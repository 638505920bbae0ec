from __future__ import annotations

from pathlib import Path

import pytest

from chronodid.core.blocktime import BlockTimeIndex
from chronodid.core.database import Database
from chronodid.core.exceptions import CredentialNotFoundError, SignatureInvalidError
from chronodid.core.time import from_unix
from chronodid.credentials.models import Credential
from chronodid.credentials.payload import sign_message
from chronodid.credentials.service import (
    CredentialService,
    CredentialState,
    IssueCredentialRequest,
    revocation_message,
)
from chronodid.credentials.verifier import CredentialVerifier
from chronodid.did.document import did_for
from chronodid.did.resolver import DidResolver
from tests.unit._ledger import ISSUER, ISSUER_KEY, OTHER, OTHER_KEY, FakeLedger, signed_request

AT_1500 = "1970-01-01T00:25:00Z"
SUBJECT = "did:ethr:0x00000000000000000000000000000000000000aa"


@pytest.fixture
def service(temp_dir: Path):
    db = Database(temp_dir / "chronodid.db")
    now = from_unix(5000)
    resolver = DidResolver(db, BlockTimeIndex(FakeLedger(head=100)), clock=lambda: now)
    svc = CredentialService(
        db, CredentialVerifier(resolver, clock=lambda: now), api_base_url="https://api.example.com/", clock=lambda: now
    )
    yield svc
    db.close()


def test_issue_persists_and_round_trips(service: CredentialService) -> None:
    cred = service.issue(signed_request(ISSUER_KEY, issuer=ISSUER, issuance_date=AT_1500))

    assert cred.id.startswith("urn:uuid:")
    assert cred.issuer == did_for(ISSUER)
    assert cred.type == ["VerifiableCredential", "UniversityDegreeCredential"]
    assert cred.proof.verification_method == f"{did_for(ISSUER)}#controller"
    assert service.get(cred.id) == cred
    assert service.get(cred.id.removeprefix("urn:uuid:")) == cred


def test_issue_rejects_signature_from_someone_else(service: CredentialService) -> None:
    request = signed_request(OTHER_KEY, issuer=ISSUER, issuance_date=AT_1500)
    with pytest.raises(SignatureInvalidError):
        service.issue(request.model_copy(update={"signer_address": None}))


def test_base_type_is_not_duplicated() -> None:
    request = IssueCredentialRequest(
        issuer_address=ISSUER,
        subject_did=SUBJECT,
        type=["VerifiableCredential", "Diploma"],
        issuance_date=AT_1500,
        signature="0x00",
    )
    assert request.credential_types() == ["VerifiableCredential", "Diploma"]


def test_claim_order_survives_storage(service: CredentialService) -> None:
    claims = {"zeta": 1, "alpha": {"b": 2, "a": 1}, "name": "Zoë"}
    cred = service.issue(signed_request(ISSUER_KEY, issuer=ISSUER, issuance_date=AT_1500, claims=claims))
    stored = service.get(cred.id)
    assert list(stored.claims) == ["zeta", "alpha", "name"]
    assert stored.signing_message() == cred.signing_message()
    assert service.verify(cred.id).checks.signature is True


def test_revoke_requires_the_issuer(service: CredentialService) -> None:
    cred = service.issue(signed_request(ISSUER_KEY, issuer=ISSUER, issuance_date=AT_1500))
    message = revocation_message(cred.id)

    with pytest.raises(SignatureInvalidError):
        service.revoke(cred.id, OTHER, sign_message(OTHER_KEY, message))
    with pytest.raises(SignatureInvalidError):
        service.revoke(cred.id, ISSUER, sign_message(OTHER_KEY, message))
    assert service.get(cred.id).revoked is False


def test_revoke_is_idempotent(service: CredentialService) -> None:
    cred = service.issue(signed_request(ISSUER_KEY, issuer=ISSUER, issuance_date=AT_1500))
    signature = sign_message(ISSUER_KEY, revocation_message(cred.id))

    first = service.revoke(cred.id, ISSUER, signature)
    second = service.revoke(cred.id, ISSUER, signature)

    assert first.revoked and second.revoked
    assert second.revoked_at == first.revoked_at
    assert service.status(cred.id).status == CredentialState.REVOKED


def test_status_states(service: CredentialService) -> None:
    active = service.issue(signed_request(ISSUER_KEY, issuer=ISSUER, issuance_date=AT_1500))
    expired = service.issue(
        signed_request(ISSUER_KEY, issuer=ISSUER, issuance_date=AT_1500, expiration_date="1970-01-01T01:00:00Z")
    )

    status = service.status(active.id)
    assert status.status == CredentialState.ACTIVE
    assert status.id == f"https://api.example.com/api/credentials/urn%3Auuid%3A{active.id[9:]}/status"
    assert service.status(expired.id).status == CredentialState.EXPIRED


def test_unknown_credential(service: CredentialService) -> None:
    with pytest.raises(CredentialNotFoundError):
        service.get("urn:uuid:00000000-0000-0000-0000-000000000000")
    with pytest.raises(CredentialNotFoundError):
        service.verify("nope")


def test_find_by_issuer_and_subject(service: CredentialService) -> None:
    a = service.issue(signed_request(ISSUER_KEY, issuer=ISSUER, issuance_date=AT_1500))
    b = service.issue(signed_request(ISSUER_KEY, issuer=ISSUER, issuance_date=AT_1500, subject="did:ethr:0x" + "bb" * 20))

    by_issuer = service.find_by_issuer(did_for(ISSUER).upper())
    assert {c.id for c in by_issuer} == {a.id, b.id}
    assert [c.id for c in service.find_by_subject(SUBJECT)] == [a.id]
    assert service.find_by_issuer(did_for(OTHER)) == []


def test_verifiable_credential_rendering(service: CredentialService) -> None:
    cred = service.issue(
        signed_request(ISSUER_KEY, issuer=ISSUER, issuance_date=AT_1500, expiration_date="2030-01-01T00:00:00Z")
    )
    vc = service.to_verifiable_credential(cred)

    assert list(vc) == [
        "@context",
        "id",
        "type",
        "issuer",
        "issuanceDate",
        "expirationDate",
        "credentialSubject",
        "credentialStatus",
        "proof",
    ]
    assert vc["credentialSubject"] == {"id": SUBJECT, "degree": "BSc", "name": "Ada"}
    assert vc["credentialStatus"]["type"] == "CredentialStatusList2021"
    assert vc["proof"]["verificationMethod"] == f"{did_for(ISSUER)}#controller"
    assert vc["proof"]["proofPurpose"] == "assertionMethod"
    assert Credential.model_validate(cred.model_dump()) == cred
