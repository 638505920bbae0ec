"""chronodid.did.document

State → W3C DID Core 1.0 document.

Building is a pure function: the same state always yields a byte-identical document.
Verification method ordering is controller, then delegates in projection order, then
attribute keys; identifier suffixes are positional within that order.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from chronodid import DID_PREFIX
from chronodid.core.events import normalize_address
from chronodid.core.exceptions import InvalidInputError
from chronodid.core.projections import AttributeEntry, DelegateEntry

DID_CONTEXTS = (
    "https://www.w3.org/ns/did/v1",
    "https://w3id.org/security/suites/secp256k1recovery-2020/v2",
    "https://w3id.org/security/suites/secp256k1-2019/v1",
)

RECOVERY_METHOD_TYPE = "EcdsaSecp256k1RecoveryMethod2020"

DELEGATE_SIG_AUTH = "sigAuth"
DELEGATE_VERI_KEY = "veriKey"

PUBLIC_KEY_PREFIX = "did/pub/"
SERVICE_PREFIX = "did/svc/"

_KEY_ENCODINGS = {
    "hex": "public_key_hex",
    "base64": "public_key_base64",
    "base58": "public_key_base58",
    "pem": "public_key_pem",
}


def did_for(address: str) -> str:
    return f"{DID_PREFIX}{normalize_address(address)}"


def address_from_did(did: str) -> str:
    """``did:ethr:[network:]0x…`` or a bare address → normalized address.

    Raises:
        InvalidInputError: other DID methods or a malformed address.
    """

    s = str(did).strip()
    if s.lower().startswith("did:"):
        if not s.lower().startswith(DID_PREFIX):
            raise InvalidInputError(f"unsupported DID method: {did!r}")
        s = s.rsplit(":", 1)[-1]
    return normalize_address(s)


class _DocModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)


class VerificationMethod(_DocModel):
    id: str
    type: str
    controller: str
    blockchain_account_id: str | None = None
    public_key_hex: str | None = None
    public_key_base64: str | None = None
    public_key_base58: str | None = None
    public_key_pem: str | None = None


class ServiceEndpoint(_DocModel):
    id: str
    type: str
    service_endpoint: Any


class DidDocument(_DocModel):
    context: list[str] = Field(default_factory=lambda: list(DID_CONTEXTS), alias="@context")
    id: str
    controller: str | None = None
    verification_method: list[VerificationMethod]
    authentication: list[str]
    assertion_method: list[str]
    key_agreement: list[str] | None = None
    service: list[ServiceEndpoint] | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_json(self, *, indent: int | None = None) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)


def _service_endpoint(value: str) -> Any:
    # JSON objects/arrays are embedded; anything else is a plain URI string.
    stripped = value.strip()
    if stripped[:1] in ("{", "["):
        try:
            return json.loads(stripped)
        except ValueError:
            return value
    return value


def _key_method(key_id: str, did: str, attr: AttributeEntry) -> tuple[VerificationMethod, str]:
    parts = attr.name.split("/")
    algorithm = parts[2] if len(parts) > 2 and parts[2] else "Unknown"
    purpose = parts[3] if len(parts) > 3 and parts[3] else "veriKey"
    encoding = parts[4] if len(parts) > 4 and parts[4] else "base64"

    material: dict[str, str] = {}
    field = _KEY_ENCODINGS.get(encoding)
    if field == "public_key_hex":
        material[field] = attr.value.removeprefix("0x")
    elif field is not None:
        material[field] = attr.value

    vm = VerificationMethod(
        id=key_id,
        type=f"{algorithm}VerificationKey2020",
        controller=did,
        **material,
    )
    return vm, purpose


def build_document(
    address: str,
    owner: str,
    delegates: Iterable[DelegateEntry] = (),
    attributes: Iterable[AttributeEntry] = (),
    *,
    chain_id: int = 1,
) -> DidDocument:
    """Document for ``address`` given its owner and its *already valid* entries.

    Delegate types other than sigAuth/veriKey get a verification method but join no
    relationship.
    """

    addr = normalize_address(address)
    owner_addr = normalize_address(owner)
    did = did_for(addr)
    controller_id = f"{did}#controller"

    methods = [
        VerificationMethod(
            id=controller_id,
            type=RECOVERY_METHOD_TYPE,
            controller=did_for(owner_addr),
            blockchain_account_id=f"eip155:{chain_id}:{owner_addr}",
        )
    ]
    authentication = [controller_id]
    assertion = [controller_id]
    key_agreement: list[str] = []
    services: list[ServiceEndpoint] = []

    for i, d in enumerate(delegates):
        delegate_id = f"{did}#delegate-{i}"
        methods.append(
            VerificationMethod(
                id=delegate_id,
                type=RECOVERY_METHOD_TYPE,
                controller=did,
                blockchain_account_id=f"eip155:{chain_id}:{d.delegate}",
            )
        )
        if d.delegate_type == DELEGATE_SIG_AUTH:
            authentication.append(delegate_id)
        elif d.delegate_type == DELEGATE_VERI_KEY:
            assertion.append(delegate_id)

    attrs = list(attributes)
    key_attrs = [a for a in attrs if a.name.startswith(PUBLIC_KEY_PREFIX)]
    for i, a in enumerate(key_attrs):
        key_id = f"{did}#key-{i}"
        vm, purpose = _key_method(key_id, did, a)
        methods.append(vm)
        if purpose == "veriKey":
            assertion.append(key_id)
        elif purpose == "sigAuth":
            authentication.append(key_id)
        elif purpose == "enc":
            key_agreement.append(key_id)

    svc_attrs = [a for a in attrs if a.name.startswith(SERVICE_PREFIX)]
    for i, a in enumerate(svc_attrs):
        services.append(
            ServiceEndpoint(
                id=f"{did}#service-{i}",
                type=a.name.removeprefix(SERVICE_PREFIX),
                service_endpoint=_service_endpoint(a.value),
            )
        )

    return DidDocument(
        id=did,
        controller=did_for(owner_addr) if owner_addr != addr else None,
        verification_method=methods,
        authentication=authentication,
        assertion_method=assertion,
        key_agreement=key_agreement or None,
        service=services or None,
    )
