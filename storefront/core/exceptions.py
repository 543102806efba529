# storefront/core/exceptions.py
"""
Error taxonomy shared by the ledger, the settlement worker and the webhook reconciler.

Jobs and HTTP handlers branch on these classes to decide between retrying
(``TransientStoreError``) and giving up (everything else).
"""


class StorefrontError(Exception):
    """Base class for domain errors."""

    retryable = False

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(StorefrontError):
    """Bad input to redemption or to the webhook. Never retried."""


class OrderNotFoundError(ValidationError):
    """The webhook references an order we do not know (yet)."""


class ConflictError(StorefrontError):
    """A concurrent writer won the race for the same row."""


class TransientStoreError(StorefrontError):
    """I/O failure against the store or an upstream service. Safe to retry."""

    retryable = True


class PermanentEntityError(StorefrontError):
    """The entity is configured inconsistently; retrying will not help."""
