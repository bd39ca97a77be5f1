"""
Error taxonomy for the tracking service.

Each error carries the HTTP status it maps to. DnsLookupError is never
rendered as an HTTP error: it is converted into a failed verification record.
"""

from typing import Optional


class TrackingError(Exception):
    """Base class for errors surfaced by the tracking API"""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"success": False, "message": self.message}


class ValidationError(TrackingError):
    """Malformed domain, identifier, token or event"""
    status_code = 400


class NotFoundError(TrackingError):
    """Unknown customer / API key, or verify called before request-verification"""
    status_code = 404


class DomainUnverifiedError(TrackingError):
    """Cross-domain action blocked until DNS ownership is proven"""
    status_code = 403

    def __init__(self, domain: str):
        super().__init__(
            "Domain not verified. Complete DNS verification before using cross-domain features."
        )
        self.domain = domain


class RateLimitError(TrackingError):
    status_code = 429

    def __init__(self, retry_after: int):
        super().__init__("Rate limit exceeded. Try again later.")
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        return {"success": False, "message": self.message, "retryAfter": self.retry_after}


class ServerError(TrackingError):
    status_code = 500


class DnsLookupError(Exception):
    """
    Resolver failure or timeout during a TXT lookup.

    `kind` is one of "no_records", "timeout" or "failed" so callers can tell
    an absent record from a broken lookup.
    """

    def __init__(self, reason: str, kind: str = "failed", domain: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.kind = kind
        self.domain = domain
