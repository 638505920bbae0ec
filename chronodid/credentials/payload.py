"""chronodid.credentials.payload

The canonical signing payload is a wire contract.

Key order, field set and serialization match ``JSON.stringify`` on the issuing side:
compact separators, non-ASCII preserved, ``expirationDate`` omitted when absent.
Changing any of it invalidates every signature ever issued, so it is versioned.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from typing import Any

from eth_account import Account
from eth_account.messages import encode_defunct

from chronodid.core.events import normalize_address
from chronodid.core.exceptions import SignatureInvalidError

PAYLOAD_FORMAT_VERSION = "v1"

VC_CONTEXTS = (
    "https://www.w3.org/2018/credentials/v1",
    "https://w3id.org/security/suites/secp256k1-2019/v1",
)

BASE_CREDENTIAL_TYPE = "VerifiableCredential"


def canonical_payload(
    *,
    types: Iterable[str],
    issuer: str,
    issuance_date: str,
    expiration_date: str | None,
    subject: str,
    claims: Mapping[str, Any],
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "@context": list(VC_CONTEXTS),
        "type": list(types),
        "issuer": issuer,
        "issuanceDate": issuance_date,
    }
    if expiration_date:
        payload["expirationDate"] = expiration_date
    # a claim named "id" replaces the subject id in place, as object spread does
    payload["credentialSubject"] = {"id": subject, **claims}
    return payload


def payload_message(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def sign_message(private_key: str | bytes, message: str) -> str:
    """EIP-191 personal-message signature, ``0x`` hex."""

    signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


def recover_signer(message: str, signature: str) -> str:
    """Address that produced ``signature`` over ``message``.

    Raises:
        SignatureInvalidError: the signature is not a recoverable secp256k1 signature.
    """

    try:
        sig = bytes.fromhex(str(signature).removeprefix("0x"))
        recovered = Account.recover_message(encode_defunct(text=message), signature=sig)
    except Exception as e:  # noqa: BLE001
        raise SignatureInvalidError(f"unrecoverable signature: {e}") from e
    return normalize_address(recovered)
