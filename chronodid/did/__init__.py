"""chronodid.did

DID documents and the temporal resolver.
"""

from .document import DidDocument, address_from_did, build_document, did_for
from .resolver import DidResolver, Resolution, SignerCheck

__all__ = [
    "DidDocument",
    "DidResolver",
    "Resolution",
    "SignerCheck",
    "address_from_did",
    "build_document",
    "did_for",
]
