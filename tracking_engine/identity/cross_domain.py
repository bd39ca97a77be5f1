"""
Cross-domain identity correlation on the receiving domain.

Two paths:
- token: the referring page embedded a handoff token in the link; it is
  decoded structurally and its identity returned as authoritative.
- fingerprint: no token (the user typed the second domain), so identities
  are matched on a coarse user-agent + address fingerprint.

Handoff tokens are base64 JSON without a signature, so a client can forge
any identity. The format is kept as-is for compatibility with deployed
SDKs; tamper resistance needs a signed token format on both sides.
"""

import base64
import binascii
import json
import logging
import time
from collections import OrderedDict
from typing import Dict, Optional

from prometheus_client import Counter
from pydantic import BaseModel

from ..errors import DomainUnverifiedError
from ..models.tracking_models import Customer, CrossDomainIdentity, Interaction, MatchMethod
from ..router.database import TrackingStorage
from .validation import parse_domain

logger = logging.getLogger(__name__)

CROSS_DOMAIN_MATCHES = Counter(
    'nylo_cross_domain_matches_total',
    'Cross-domain identity correlations',
    ['method']
)

UNKNOWN_SITE = "unknown"


def encode_handoff_token(identity: CrossDomainIdentity) -> str:
    payload = identity.dict(exclude_none=True)
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def decode_handoff_token(token: str) -> Optional[CrossDomainIdentity]:
    """Structural decode; None for anything that is not base64 JSON with waiTag and sessionId"""
    try:
        # URL-safe alphabet and stripped padding both survive query strings
        normalized = token.strip().replace("-", "+").replace("_", "/")
        padded = normalized + "=" * (-len(normalized) % 4)
        decoded = json.loads(base64.b64decode(padded).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None

    if not isinstance(decoded, dict):
        return None
    if not decoded.get("waiTag") or not decoded.get("sessionId"):
        return None

    issued_at = decoded.get("issuedAt")
    return CrossDomainIdentity(
        waiTag=str(decoded["waiTag"]),
        sessionId=str(decoded["sessionId"]),
        userId=decoded.get("userId"),
        issuedAt=issued_at if isinstance(issued_at, int) else None
    )


class CrossDomainTokenVerifier:
    """Validates handoff tokens, optionally gated on domain verification"""

    def __init__(
        self,
        storage: TrackingStorage,
        enforce_domain_verification: bool = True,
        max_token_age_seconds: Optional[int] = None
    ):
        self.storage = storage
        self.enforce_domain_verification = enforce_domain_verification
        self.max_token_age_seconds = max_token_age_seconds

    async def verify(
        self,
        token: str,
        domain: Optional[str],
        customer_id: Optional[int]
    ) -> Optional[CrossDomainIdentity]:
        """
        Returns the carried identity, or None when the token does not parse.

        Raises DomainUnverifiedError before the token is inspected when the
        receiving domain has not passed DNS verification.
        """
        if self.enforce_domain_verification and domain and customer_id is not None:
            if not await self.storage.is_domain_verified(domain, customer_id):
                raise DomainUnverifiedError(domain)

        identity = decode_handoff_token(token)
        if identity is None:
            return None

        if self.max_token_age_seconds is not None and identity.issuedAt is not None:
            age_seconds = time.time() - identity.issuedAt / 1000
            if age_seconds > self.max_token_age_seconds:
                logger.info(f"Rejected handoff token issued {age_seconds:.0f}s ago")
                return None

        return identity


class SyncResult(BaseModel):
    waiTag: str
    shared: bool
    sites: Dict[str, str] = {}


class FingerprintCorrelator:
    """
    Process-local map of fingerprint -> {site: wai tag}.

    Soft state: lost on restart and bounded to `max_entries` fingerprints,
    oldest evicted first.
    """

    def __init__(self, max_entries: int = 10000):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, Dict[str, str]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def sync(self, site: str, wai_tag: str, fingerprint: str) -> SyncResult:
        """
        Record the site's identity for this fingerprint.

        Once two or more distinct sites are known the identity first seen for
        the fingerprint is canonical.
        """
        if site and site != UNKNOWN_SITE:
            sites = self._entries.setdefault(fingerprint, {})
            sites[site] = wai_tag
            self._entries.move_to_end(fingerprint)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

        sites = self._entries.get(fingerprint, {})
        if len(sites) >= 2:
            canonical = next(iter(sites.values()))
            return SyncResult(waiTag=canonical, shared=True, sites=dict(sites))

        return SyncResult(waiTag=wai_tag, shared=False, sites=dict(sites))

    def clear(self):
        self._entries.clear()


def build_fingerprint(user_agent: Optional[str], client_address: Optional[str]) -> str:
    return f"{user_agent or ''}-{client_address or ''}"


async def record_correlation(
    storage: TrackingStorage,
    customer: Customer,
    wai_tag: str,
    method: MatchMethod,
    domain: Optional[str],
    session_id: str = "",
    page_url: str = "",
    sites: Optional[Dict[str, str]] = None,
    referrer: Optional[str] = None
) -> Interaction:
    """Audit record of a successful cross-domain match"""
    parsed = parse_domain(domain or "")
    context: Dict[str, object] = {"matchedBy": method.value}
    if sites:
        context["sites"] = {f"{site}WaiTag": tag for site, tag in sites.items()}
    if referrer:
        context["referrer"] = referrer

    CROSS_DOMAIN_MATCHES.labels(method=method.value).inc()
    return await storage.create_interaction(Interaction(
        customer_id=customer.id,
        session_id=session_id,
        user_id=wai_tag,
        page_url=page_url,
        domain=domain or UNKNOWN_SITE,
        main_domain=parsed["main_domain"] or None,
        subdomain=parsed["subdomain"],
        interaction_type="cross_domain_identity_match",
        context=context
    ))

