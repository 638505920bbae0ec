"""chronodid.credentials

Verifiable credentials checked against authority at issuance time.
"""

from .models import Credential, CredentialProof
from .payload import PAYLOAD_FORMAT_VERSION
from .service import CredentialService, IssueCredentialRequest
from .verifier import CredentialVerifier, FailureReason, VerificationResult

__all__ = [
    "PAYLOAD_FORMAT_VERSION",
    "Credential",
    "CredentialProof",
    "CredentialService",
    "CredentialVerifier",
    "FailureReason",
    "IssueCredentialRequest",
    "VerificationResult",
]
