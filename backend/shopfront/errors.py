# Overview: Error taxonomy shared by services and routes; each kind maps to one HTTP status.

from __future__ import annotations


class ShopError(Exception):
    """Base class for errors that are answered as {"error": message}."""

    kind = "internal"
    status = 500

    def __init__(self, message: str | None = None):
        super().__init__(message or "Internal server error")
        self.message = message or "Internal server error"


class BadInputError(ShopError):
    """Missing field, malformed JSON, or a business-rule violation."""

    kind = "bad_input"
    status = 400


class UnauthorizedError(ShopError):
    kind = "unauthorized"
    status = 401


class ForbiddenError(ShopError):
    kind = "forbidden"
    status = 403


class NotFoundError(ShopError):
    kind = "not_found"
    status = 404


class MethodNotAllowedError(ShopError):
    kind = "method_not_allowed"
    status = 405


class RateLimitedError(ShopError):
    kind = "rate_limited"
    status = 429

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class SignatureInvalidError(ShopError):
    """Webhook HMAC failure. Never processed, never materialized."""

    kind = "signature_invalid"
    status = 400


class TransientConflictError(ShopError):
    """Optimistic-lock retries exhausted; safe for the caller to retry."""

    kind = "transient_conflict"
    status = 409


class InternalError(ShopError):
    """Upstream (datastore, processor) failure with no better classification."""

    kind = "internal"
    status = 500


class DiscountRejected(BadInputError):
    """Discount code failed evaluation; `reason` is machine readable."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


class GiftCardRejected(BadInputError):
    """Gift card cannot be used; `reason` is machine readable."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


class PIIConfigurationError(InternalError):
    """Encryption key missing or malformed where PII must be encrypted."""
