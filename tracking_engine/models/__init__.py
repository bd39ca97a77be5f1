"""Tracking engine models"""

from .tracking_models import (
    VerificationStatus,
    VerificationMethod,
    MatchMethod,
    Customer,
    Interaction,
    DomainVerification,
    RegisterWaiTagRequest,
    VerifyCrossDomainTokenRequest,
    VerifyWaiTagRequest,
    SyncIdentityRequest,
    DomainVerificationRequest,
    TrackResponse,
    CrossDomainIdentity,
    SyncIdentityResponse,
    DnsRecord,
    TrackingConfig
)

__all__ = [
    "VerificationStatus",
    "VerificationMethod",
    "MatchMethod",
    "Customer",
    "Interaction",
    "DomainVerification",
    "RegisterWaiTagRequest",
    "VerifyCrossDomainTokenRequest",
    "VerifyWaiTagRequest",
    "SyncIdentityRequest",
    "DomainVerificationRequest",
    "TrackResponse",
    "CrossDomainIdentity",
    "SyncIdentityResponse",
    "DnsRecord",
    "TrackingConfig"
]
