"""Billing error taxonomy.

Every error carries the HTTP status it maps to and a human-readable message
that is safe to show to the user (never the raw gateway payload).
"""

from fastapi import status


class BillingError(Exception):
    """Base class for all billing-core errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(BillingError):
    """Bad input. Never retried automatically by the caller."""

    status_code = status.HTTP_400_BAD_REQUEST


class AuthenticationError(BillingError):
    """Missing or invalid credentials / webhook signature. Fail closed."""

    status_code = status.HTTP_401_UNAUTHORIZED


class NotFoundError(BillingError):
    """Unknown payment, subscription or billing key."""

    status_code = status.HTTP_404_NOT_FOUND


class InvalidTransition(BillingError):
    """Illegal state-machine move: a data-integrity signal."""

    status_code = status.HTTP_409_CONFLICT


class InsufficientBalance(BillingError):
    """The user does not hold enough live credits. Expected business condition."""

    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            f"Not enough credits: {required} required, {available} available."
        )
        self.required = required
        self.available = available


class InvalidAmount(ValidationError):
    """A ledger amount that is zero or negative."""


class GatewayError(BillingError):
    """The payment gateway returned a failure or could not be reached."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        *,
        gateway_status: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.gateway_status = gateway_status
        self.body = body


class DuplicateKey(BillingError):
    """Idempotency-key collision on creation."""

    status_code = status.HTTP_409_CONFLICT


class SweepInProgress(BillingError):
    """Another scheduler run has not finished yet."""

    status_code = status.HTTP_409_CONFLICT
