"""Error taxonomy for the attribution and commission core.

State-changing failures are raised to the caller; the API layer renders them
through one exception handler. ``PartnerNotificationError`` never leaves the
notifier.
"""
from __future__ import annotations


class AffiliateError(Exception):
    """Base class. ``status_code`` and ``code`` drive the HTTP error envelope."""

    status_code = 500
    code = "affiliate_error"

    def __init__(self, message: str, *, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(AffiliateError):
    """Product, partner or tracking record missing."""

    status_code = 404
    code = "not_found"


class PartnerInactiveError(NotFoundError):
    """Click requested for a product whose partner is missing or inactive."""

    code = "partner_inactive"


class InvalidPartnerError(AffiliateError):
    """Webhook sent by a partner that is unknown, inactive or not the click owner."""

    status_code = 403
    code = "invalid_partner"


class CommissionValidationError(AffiliateError):
    """Malformed identifiers or payout parameters; nothing was applied."""

    status_code = 400
    code = "validation_error"


class PartnerNotificationError(AffiliateError):
    """Outbound partner call failed (network, timeout, bad response)."""

    status_code = 502
    code = "partner_unreachable"


class ConflictError(AffiliateError):
    """Row kept changing underneath a read-modify-write; the caller may retry."""

    status_code = 409
    code = "conflict"
