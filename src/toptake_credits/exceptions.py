from __future__ import annotations


class CreditError(Exception):
    """Base class for errors raised by the credit subsystem."""


class ConfigurationError(CreditError):
    """
    Raised when an inbound credit type or price id cannot be mapped to a
    known CreditType. Credits are never granted for a guessed type.
    """


class StorageError(CreditError):
    """
    Transient failure of the storage layer. The atomic unit was rolled back;
    callers retry with the same idempotency key.
    """


class InvalidEventError(CreditError):
    """Inbound webhook payload does not match any known event kind."""
