"""
Core data models for the tracking engine.

Wire models (requests / responses) use the camelCase field names the
browser SDK sends. Stored records use snake_case.
"""

import os
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, validator


class VerificationStatus(str, Enum):
    """Domain verification states"""
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"
    # Read projection only, never stored
    UNVERIFIED = "unverified"


class VerificationMethod(str, Enum):
    """How a domain verification succeeded (or did not)"""
    DIRECT_TXT = "direct_txt"
    SUBDOMAIN_TXT = "subdomain_txt"
    PARENT_DOMAIN_VERIFIED = "parent_domain_verified"
    NONE = "none"


class MatchMethod(str, Enum):
    """Cross-domain correlation method"""
    TOKEN = "token"
    FINGERPRINT = "fingerprint"


# Stored records

class Customer(BaseModel):
    id: int
    name: str = ""
    api_key: str = ""


class Interaction(BaseModel):
    """One stored interaction row"""
    id: Optional[int] = None
    customer_id: Optional[int] = None
    session_id: str
    user_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    page_url: str = ""
    domain: str
    main_domain: Optional[str] = None
    subdomain: Optional[str] = None
    interaction_type: str
    content: Optional[Any] = None
    feature_name: Optional[str] = None
    feature_category: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class DomainVerification(BaseModel):
    """DNS challenge record, keyed by (domain, customer_id)"""
    domain: str
    customer_id: int
    token: str
    status: VerificationStatus = VerificationStatus.PENDING
    created_at: datetime = Field(default_factory=datetime.utcnow)
    verified_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    @validator("status")
    def status_is_stored_state(cls, v):
        if v == VerificationStatus.UNVERIFIED:
            raise ValueError("unverified is a read projection, not a stored status")
        return v


# Request models

class RegisterWaiTagRequest(BaseModel):
    waiTag: Optional[str] = None
    domain: Optional[str] = None
    customerId: Optional[Union[int, str]] = None
    apiKey: Optional[str] = None
    sessionId: Optional[str] = None
    pageUrl: Optional[str] = None
    timestamp: Optional[str] = None
    userAgent: Optional[str] = None
    referrer: Optional[str] = None
    language: Optional[str] = None
    screenSize: Optional[str] = None


class VerifyCrossDomainTokenRequest(BaseModel):
    token: Optional[str] = None
    domain: Optional[str] = None
    customerId: Optional[Union[int, str]] = None
    referrer: Optional[str] = None


class VerifyWaiTagRequest(BaseModel):
    waiTag: Optional[str] = None
    domain: Optional[str] = None


class SyncIdentityRequest(BaseModel):
    customerId: Optional[Union[int, str]] = None
    waiTag: Optional[str] = None
    waitag: Optional[str] = None
    userId: Optional[str] = None
    currentSite: Optional[str] = None
    domain: Optional[str] = None
    sessionId: Optional[str] = None
    pageUrl: Optional[str] = None
    browserFingerprint: Optional[str] = None


class DomainVerificationRequest(BaseModel):
    domain: Optional[str] = None
    customerId: Optional[Union[int, str]] = None


# Response models

class TrackResponse(BaseModel):
    success: bool = True
    eventsProcessed: int
    totalEvents: int


class CrossDomainIdentity(BaseModel):
    """Identity carried by a handoff token"""
    waiTag: str
    sessionId: str
    userId: Optional[str] = None
    issuedAt: Optional[int] = None


class SyncIdentityResponse(BaseModel):
    success: bool = True
    shared: bool
    waiTag: str
    message: str


class DnsRecord(BaseModel):
    type: str = "TXT"
    host: str
    value: str


# Service configuration

def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class TrackingConfig(BaseModel):
    """Configuration for the tracking service"""
    dedup_window_seconds: int = 60
    dedup_sweep_interval_seconds: float = 60.0

    rate_limit_max: int = 100
    rate_limit_window_seconds: int = 60

    dns_timeout_seconds: float = 10.0
    dns_resolvers: List[str] = Field(default_factory=lambda: ["8.8.8.8", "8.8.4.4", "1.1.1.1"])

    # Gate token verification on DNS proof when the storage can answer it
    enforce_domain_verification: bool = True
    # Unset: handoff tokens are accepted regardless of age
    handoff_token_max_age_seconds: Optional[int] = None

    fingerprint_map_max_entries: int = 10000

    database_url: Optional[str] = None

    # Endpoints that answer with a success body when storage faults
    soft_fail: Dict[str, bool] = Field(default_factory=lambda: {
        "track": True,
        "register_waitag": True,
        "sync_identity": True,
        "tracking_event": False,
        "verify_cross_domain_token": False,
        "request_verification": False,
        "verify_domain": False,
    })

    @validator("dedup_window_seconds")
    def window_positive(cls, v):
        if v <= 0:
            raise ValueError("Dedup window must be positive")
        return v

    def is_soft_fail(self, endpoint: str) -> bool:
        return self.soft_fail.get(endpoint, False)

    @classmethod
    def from_env(cls) -> "TrackingConfig":
        """Build a config from TRACKING_* environment variables"""
        defaults = cls()
        return cls(
            dedup_window_seconds=int(os.getenv(
                "TRACKING_DEDUP_WINDOW_SECONDS", defaults.dedup_window_seconds
            )),
            dedup_sweep_interval_seconds=float(os.getenv(
                "TRACKING_DEDUP_SWEEP_SECONDS", defaults.dedup_sweep_interval_seconds
            )),
            rate_limit_max=int(os.getenv("TRACKING_RATE_LIMIT_MAX", defaults.rate_limit_max)),
            rate_limit_window_seconds=int(os.getenv(
                "TRACKING_RATE_LIMIT_WINDOW_SECONDS", defaults.rate_limit_window_seconds
            )),
            dns_timeout_seconds=float(os.getenv(
                "TRACKING_DNS_TIMEOUT_SECONDS", defaults.dns_timeout_seconds
            )),
            enforce_domain_verification=_env_bool(
                "TRACKING_ENFORCE_DOMAIN_VERIFICATION", defaults.enforce_domain_verification
            ),
            database_url=os.getenv("DATABASE_URL"),
        )
