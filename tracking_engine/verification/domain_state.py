"""
Domain ownership verification state machine.

    (none) --request--> pending --verify--> verified
                           |                  ^
                           +----verify--> failed --verify (retry)

A verified record may always be re-requested or re-checked; both are no-ops
that report the existing verification.
"""

import logging
from datetime import datetime
from typing import Any, Dict

from prometheus_client import Counter

from ..errors import NotFoundError
from ..models.tracking_models import (
    DnsRecord,
    DomainVerification,
    VerificationMethod,
    VerificationStatus
)
from ..router.database import TrackingStorage
from .dns_verifier import (
    DnsVerifier,
    extract_parent_domain,
    generate_verification_token,
    get_dns_record_value,
    get_txt_record_instruction
)

logger = logging.getLogger(__name__)

DOMAIN_VERIFICATIONS = Counter(
    'nylo_domain_verifications_total',
    'Domain verification attempts by outcome',
    ['status', 'method']
)


def _isoformat(value: datetime = None):
    return value.isoformat() if value else None


class DomainVerificationService:
    """Drives DomainVerification records through their lifecycle"""

    def __init__(self, storage: TrackingStorage, dns_verifier: DnsVerifier = None):
        self.storage = storage
        self.dns_verifier = dns_verifier or DnsVerifier()

    async def request_verification(self, domain: str, customer_id: int) -> Dict[str, Any]:
        """
        Start (or resume) a DNS challenge.

        A pending or failed record keeps its token so the TXT value the
        customer already published stays valid.
        """
        existing = await self.storage.get_domain_verification(domain, customer_id)

        if existing and existing.status == VerificationStatus.VERIFIED:
            return {
                "success": True,
                "domain": domain,
                "status": VerificationStatus.VERIFIED.value,
                "verifiedAt": _isoformat(existing.verified_at),
                "message": "Domain is already verified"
            }

        if existing:
            token = existing.token
            if existing.status == VerificationStatus.FAILED:
                await self.storage.update_domain_verification(
                    domain, customer_id, VerificationStatus.PENDING
                )
                logger.info(f"Verification re-requested for {domain} (customer {customer_id})")
        else:
            token = generate_verification_token()
            await self.storage.create_domain_verification(DomainVerification(
                domain=domain,
                customer_id=customer_id,
                token=token,
                status=VerificationStatus.PENDING
            ))
            logger.info(f"Verification requested for {domain} (customer {customer_id})")

        return {
            "success": True,
            "domain": domain,
            "status": VerificationStatus.PENDING.value,
            "token": token,
            "dnsRecord": DnsRecord(host=domain, value=get_dns_record_value(token)).dict(),
            "instruction": get_txt_record_instruction(domain, token)
        }

    async def verify(self, domain: str, customer_id: int) -> Dict[str, Any]:
        """
        Check the DNS challenge and move the record to verified or failed.

        DNS errors never escape: they become a failed record with a reason.
        """
        verification = await self.storage.get_domain_verification(domain, customer_id)
        if verification is None:
            raise NotFoundError(
                "No verification request found for this domain. "
                "Call /api/domains/request-verification first."
            )

        if verification.status == VerificationStatus.VERIFIED:
            return {
                "success": True,
                "domain": domain,
                "status": VerificationStatus.VERIFIED.value,
                "verifiedAt": _isoformat(verification.verified_at),
                "message": "Domain is already verified"
            }

        parent_domain = extract_parent_domain(domain)
        if parent_domain:
            parent_verified = await self.storage.is_domain_verified(parent_domain, customer_id)
            result = await self.dns_verifier.check_subdomain_ownership(
                domain,
                verification.token,
                parent_verified
            )
        else:
            result = await self.dns_verifier.verify_ownership(domain, verification.token)

        now = datetime.utcnow()

        if result.verified:
            await self.storage.update_domain_verification(
                domain,
                customer_id,
                VerificationStatus.VERIFIED,
                verified_at=now,
                last_checked_at=now
            )
            DOMAIN_VERIFICATIONS.labels(status='verified', method=result.method.value).inc()
            logger.info(f"Domain {domain} verified via {result.method.value}")
            return {
                "success": True,
                "domain": domain,
                "status": VerificationStatus.VERIFIED.value,
                "method": result.method.value,
                "verifiedAt": now.isoformat(),
                "message": "Domain ownership verified successfully"
            }

        await self.storage.update_domain_verification(
            domain,
            customer_id,
            VerificationStatus.FAILED,
            last_checked_at=now,
            failure_reason=result.error
        )
        DOMAIN_VERIFICATIONS.labels(status='failed', method=VerificationMethod.NONE.value).inc()
        logger.info(f"Domain {domain} verification failed: {result.error}")
        return {
            "success": False,
            "domain": domain,
            "status": VerificationStatus.FAILED.value,
            "error": result.error,
            "expectedRecord": DnsRecord(
                host=domain,
                value=get_dns_record_value(verification.token)
            ).dict()
        }

    async def status(self, domain: str, customer_id: int) -> Dict[str, Any]:
        verification = await self.storage.get_domain_verification(domain, customer_id)
        if verification is None:
            return {
                "success": True,
                "domain": domain,
                "status": VerificationStatus.UNVERIFIED.value,
                "verifiedAt": None,
                "lastCheckedAt": None
            }
        return {
            "success": True,
            "domain": domain,
            "status": verification.status.value,
            "verifiedAt": _isoformat(verification.verified_at),
            "lastCheckedAt": _isoformat(verification.last_checked_at),
            "failureReason": verification.failure_reason
        }

    async def is_verified(self, domain: str, customer_id: int) -> bool:
        return await self.storage.is_domain_verified(domain, customer_id)
