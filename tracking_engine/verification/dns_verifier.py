"""
DNS TXT challenge checks for domain ownership.

The customer publishes `nylo-verify=<token>` as a TXT record at the apex of
the challenged domain; the lookup goes to a fixed set of public resolvers
with a bounded timeout.
"""

import asyncio
import logging
import secrets
from typing import List, Optional, Sequence

import dns.asyncresolver
import dns.exception
import dns.resolver
from pydantic import BaseModel

from ..errors import DnsLookupError
from ..models.tracking_models import VerificationMethod

logger = logging.getLogger(__name__)

TXT_RECORD_PREFIX = "nylo-verify="
PUBLIC_RESOLVERS = ["8.8.8.8", "8.8.4.4", "1.1.1.1"]


def generate_verification_token() -> str:
    return secrets.token_hex(16)


def get_dns_record_value(token: str) -> str:
    return f"{TXT_RECORD_PREFIX}{token}"


def get_txt_record_instruction(domain: str, token: str) -> str:
    return f"Add a TXT record to {domain} with the value: {get_dns_record_value(token)}"


def extract_parent_domain(domain: str) -> Optional[str]:
    """`blog.example.com` -> `example.com`; None for two labels or fewer"""
    parts = domain.split(".")
    if len(parts) <= 2:
        return None
    return ".".join(parts[1:])


def txt_matches(record: str, expected: str) -> bool:
    return record.strip().lower() == expected.strip().lower()


class DnsCheckResult(BaseModel):
    verified: bool
    method: VerificationMethod = VerificationMethod.NONE
    error: Optional[str] = None
    # DnsLookupError kind when the lookup itself failed
    error_kind: Optional[str] = None


class DnsVerifier:
    """TXT lookups against public resolvers"""

    def __init__(
        self,
        resolvers: Optional[Sequence[str]] = None,
        timeout: float = 10.0
    ):
        self.resolvers = list(resolvers or PUBLIC_RESOLVERS)
        self.timeout = timeout

    async def lookup_txt(self, domain: str) -> List[str]:
        """
        Return the TXT records for `domain`, each with its chunks joined.

        Raises DnsLookupError with kind "no_records", "timeout" or "failed".
        """
        resolver = dns.asyncresolver.Resolver(configure=False)
        resolver.nameservers = list(self.resolvers)
        resolver.timeout = self.timeout
        resolver.lifetime = self.timeout

        try:
            answer = await asyncio.wait_for(
                resolver.resolve(domain, "TXT"),
                timeout=self.timeout
            )
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            raise DnsLookupError(f"No TXT records found for {domain}", "no_records", domain)
        except (asyncio.TimeoutError, dns.exception.Timeout):
            raise DnsLookupError("DNS lookup timed out", "timeout", domain)
        except dns.exception.DNSException as e:
            raise DnsLookupError(f"DNS lookup failed: {type(e).__name__}", "failed", domain)

        return [
            b"".join(rdata.strings).decode("utf-8", errors="replace")
            for rdata in answer
        ]

    async def verify_ownership(self, domain: str, expected_token: str) -> DnsCheckResult:
        """Direct TXT check of `domain` against the expected challenge value"""
        expected = get_dns_record_value(expected_token)

        try:
            records = await self.lookup_txt(domain)
        except DnsLookupError as e:
            logger.info(f"TXT lookup for {domain} failed: {e.reason}")
            return DnsCheckResult(verified=False, error=e.reason, error_kind=e.kind)

        if any(txt_matches(record, expected) for record in records):
            return DnsCheckResult(verified=True, method=VerificationMethod.DIRECT_TXT)

        return DnsCheckResult(
            verified=False,
            error=(
                f'TXT record "{expected}" not found. '
                f"Found {len(records)} TXT record(s) but none matched."
            )
        )

    async def check_subdomain_ownership(
        self,
        subdomain: str,
        subdomain_token: str,
        parent_domain_verified: bool
    ) -> DnsCheckResult:
        """
        The subdomain's own record wins; a verified parent is only the
        fallback when that record is absent or wrong.
        """
        own = await self.verify_ownership(subdomain, subdomain_token)
        if own.verified:
            return DnsCheckResult(verified=True, method=VerificationMethod.SUBDOMAIN_TXT)

        if parent_domain_verified:
            return DnsCheckResult(verified=True, method=VerificationMethod.PARENT_DOMAIN_VERIFIED)

        if own.error_kind == "no_records":
            error = f"Subdomain {subdomain} has no TXT record and parent domain is not verified"
        else:
            error = f"{own.error.rstrip('.')}; parent domain is not verified"
        return DnsCheckResult(verified=False, error=error, error_kind=own.error_kind)
