"""chronodid.core.exceptions

Errors are part of the interface.

Verification outcomes are *not* exceptions; they live on the result object.
"""

from __future__ import annotations


class ChronodidError(Exception):
    """Base exception for chronodid."""


class ConfigError(ChronodidError):
    """Configuration is missing, invalid, or inconsistent."""


class EventStoreError(ChronodidError):
    """Event store failures: schema, IO, integrity, or invariants."""


class DedupeConflictError(EventStoreError):
    """Natural key reused with a different payload."""


class InvalidInputError(ChronodidError, ValueError):
    """Malformed DID, address, timestamp, or position."""


class MalformedEventError(InvalidInputError):
    """A ledger event that cannot be decoded into a known kind."""


class NotFoundError(ChronodidError):
    """Requested record does not exist."""


class CredentialNotFoundError(NotFoundError):
    """No credential with that id."""


class LedgerUnavailableError(ChronodidError):
    """The ledger adapter could not answer in bounded time."""


class SignatureInvalidError(ChronodidError):
    """A signature did not recover to the expected address."""
