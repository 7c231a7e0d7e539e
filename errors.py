"""
Error taxonomy for SponsorConnect

Domain modules raise these; main.py maps them onto HTTP responses using
the status_code carried by each class.
"""
from typing import Optional


class SponsorConnectError(Exception):
    status_code = 500
    default_message = "Something went wrong, please try again"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(SponsorConnectError):
    status_code = 400
    default_message = "Please fill in all required fields"


class NotFoundError(SponsorConnectError):
    status_code = 404
    default_message = "Not found"


class PermissionDeniedError(SponsorConnectError):
    status_code = 403
    default_message = "You are not allowed to do that"


class StoreError(SponsorConnectError):
    status_code = 503
    default_message = "Database not available"


# Identity

class AuthError(SponsorConnectError):
    status_code = 401
    default_message = "Authentication required"


class InvalidCredentialsError(AuthError):
    default_message = "Invalid email or password"


class UserNotFoundError(AuthError):
    default_message = "No account found with this email"


class EmailInUseError(AuthError):
    status_code = 409
    default_message = "An account with this email already exists"


class WeakPasswordError(AuthError):
    status_code = 400
    default_message = (
        "Password must be at least 8 characters and contain an uppercase letter, "
        "a lowercase letter and a number"
    )


# Sponsorship lifecycle

class NotAvailableError(SponsorConnectError):
    status_code = 400
    default_message = "This sponsorship is not available for funding"


class NotActiveError(NotAvailableError):
    pass


class AlreadyFundedError(NotAvailableError):
    status_code = 409
    default_message = "This sponsorship has already been funded"


class InvalidTransitionError(SponsorConnectError):
    status_code = 400
    default_message = "Status change not allowed"


# Payments

class PaymentInitError(SponsorConnectError):
    status_code = 500
    default_message = "Failed to create payment intent"


class PaymentDeclinedError(SponsorConnectError):
    status_code = 402
    default_message = "Payment failed"
