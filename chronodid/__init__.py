"""chronodid: temporal DID resolution.

A signature is only as good as the authority behind it *when it was made*.

The ledger is the memory. Everything else here is a view of it.
"""

from __future__ import annotations

__all__ = [
    "__version__",
    "DID_METHOD",
    "DID_PREFIX",
]

__version__ = "1.0.0"

DID_METHOD = "ethr"
DID_PREFIX = f"did:{DID_METHOD}:"
