from django.core.exceptions import ValidationError


class BillingError(ValidationError):
    """Base class for billing failures.

    Subclasses Django's ``ValidationError`` so admin forms and callers that
    already handle validation failures surface billing errors the same way.
    ``code`` tells callers which failure happened; ``retryable`` marks the
    transient ones.
    """

    default_message = 'Billing operation failed.'
    default_code = 'billing_error'
    retryable = False

    def __init__(self, message=None, *, params=None):
        super().__init__(message or self.default_message, code=self.default_code, params=params)


class AlreadyBilled(BillingError):
    default_message = 'This obligation is already billed.'
    default_code = 'already_billed'


class DuplicateObligation(BillingError):
    default_message = 'The obligation already exists for this period.'
    default_code = 'duplicate_obligation'


class InsufficientStock(BillingError):
    default_message = 'Not enough stock on hand.'
    default_code = 'insufficient_stock'


class OverCollection(BillingError):
    default_message = 'Collected amount exceeds the pending amount.'
    default_code = 'over_collection'


class OptimisticLockConflict(BillingError):
    default_message = 'The record was modified concurrently. Retry the operation.'
    default_code = 'optimistic_lock_conflict'
    retryable = True


class NotFound(BillingError):
    default_message = 'Referenced record was not found.'
    default_code = 'not_found'
