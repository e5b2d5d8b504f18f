"""Error taxonomy shared by the trust core and the HTTP layer.

Every error carries an opaque ``error_code`` that is safe to return to a
browser.  The message is for logs only; the HTTP layer replaces it with a
generic phrase before responding.
"""

from __future__ import annotations


class TrustCoreError(Exception):
    """Base class for all trust-core failures."""

    error_code: str = "trust_core_error"
    public_message: str = "Request failed"

    def __init__(self, message: str = "", *, error_code: str | None = None) -> None:
        super().__init__(message or self.public_message)
        if error_code is not None:
            self.error_code = error_code


class AuthenticationFailure(TrustCoreError):
    """No caller credential, or the credential could not be validated."""

    error_code = "authentication_failed"
    public_message = "Authentication required"


class PermissionDenied(TrustCoreError):
    """The caller is authenticated but lacks the required role."""

    error_code = "permission_denied"
    public_message = "Permission denied"


class NotFound(TrustCoreError):
    """A tenant, profile or customer record the operation needs is missing."""

    error_code = "not_found"
    public_message = "Resource not found"


class ExternalServiceError(TrustCoreError):
    """The payment processor was unreachable, timed out or returned an error."""

    error_code = "external_service_error"
    public_message = "Payment provider unavailable"


class SignatureInvalid(TrustCoreError):
    """An inbound webhook payload failed signature verification."""

    error_code = "signature_invalid"
    public_message = "Invalid signature"


class SubscriptionRequired(TrustCoreError):
    """The entitlement gate denied a subscription-gated resource."""

    error_code = "subscription_required"
    public_message = "An active subscription is required"
