"""DNS-backed domain ownership verification"""

from .dns_verifier import (
    DnsVerifier,
    DnsCheckResult,
    TXT_RECORD_PREFIX,
    extract_parent_domain,
    get_dns_record_value
)
from .domain_state import DomainVerificationService

__all__ = [
    "DnsVerifier",
    "DnsCheckResult",
    "TXT_RECORD_PREFIX",
    "extract_parent_domain",
    "get_dns_record_value",
    "DomainVerificationService"
]
