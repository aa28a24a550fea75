from __future__ import annotations


class RegistryError(Exception):
    """Base error for the registry core."""


class StoreUnavailableError(RegistryError):
    """A backing store failed or timed out; never treat this as a deny or an allow."""


class IdempotencyKeyInvalidError(RegistryError):
    """Idempotency key is empty or exceeds the configured length."""


class ChainVerificationUnavailableError(RegistryError):
    """Hash chaining is disabled, so audit integrity cannot be verified."""


class AuditChainConflictError(RegistryError):
    """Chain head kept moving under concurrent appends; the entry was not written."""
