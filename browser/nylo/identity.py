"""
Identity Manager

Issues, persists and recovers the pseudonymous WaiTag, and hands it across
domain boundaries with a token embedded in outgoing links.

Availability wins over continuity: when recovery or the token round trip
fails the page gets a fresh identity instead of blocking instrumentation.
"""

import base64
import hashlib
import json
import logging
import secrets
import string
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qs, parse_qsl, urlencode, urlparse, urlunparse

import httpx

from .api_client import NyloApiClient
from .schema import Identity, sanitize, utc_now_iso
from .storage import IdentityStore, to_base36

logger = logging.getLogger(__name__)

TOKEN_PARAM = "nylo_token"
LEGACY_TOKEN_PARAM = "wai_token"

_BASE36 = string.digits + string.ascii_lowercase


def domain_hash(domain: str) -> str:
    """First 8 hex chars of sha256(domain); one-way"""
    return hashlib.sha256((domain or "default").encode("utf-8")).hexdigest()[:8]


def generate_wai_tag(domain: str, now_ms: Optional[int] = None) -> str:
    """wai_<ms base36>_<11 random base36><8 hex domain hash>"""
    stamp = to_base36(now_ms if now_ms is not None else int(time.time() * 1000))
    entropy = "".join(secrets.choice(_BASE36) for _ in range(11))
    return f"wai_{stamp}_{entropy}{domain_hash(domain)}"


def generate_session_id(domain: str, now_ms: Optional[int] = None) -> str:
    """<ms base36>-<32 hex>-<8 hex domain hash>"""
    stamp = to_base36(now_ms if now_ms is not None else int(time.time() * 1000))
    return f"{stamp}-{secrets.token_hex(16)}-{domain_hash(domain)}"


def generate_anonymous_session_id() -> str:
    stamp = to_base36(int(time.time() * 1000))
    return f"anon_{stamp}_" + "".join(secrets.choice(_BASE36) for _ in range(8))


def hostname_of(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    try:
        return urlparse(url).hostname
    except ValueError:
        return None


class IdentityManager:
    """
    Owns the current identity for one browsing context.

    `emit(event_type, data)` is called for correlation events (the tracker
    wires it to its event queue).
    """

    def __init__(
        self,
        store: IdentityStore,
        api: Optional[NyloApiClient] = None,
        emit: Optional[Callable[[str, Dict[str, Any]], None]] = None
    ):
        self.store = store
        self.api = api
        self.emit = emit
        self.identity: Optional[Identity] = None
        self.anonymous = False

        self.referring_domain: Optional[str] = None
        self.token_received = False
        self.identity_synced = False
        self.cross_domain_syncs = 0

    # Issue / persist / recover

    def issue(self, domain: str) -> Identity:
        return Identity(
            wai_tag=generate_wai_tag(domain),
            session_id=generate_session_id(domain),
            domain=domain
        )

    def persist(self, identity: Identity):
        written = self.store.save(identity)
        if not written:
            logger.debug("Identity could not be written to any storage tier")

    def recover(self) -> Optional[Identity]:
        """Cookie, then durable local, then session storage"""
        return self.store.load()

    async def register(self, identity: Identity, user_agent: Optional[str] = None):
        """Announce a new identity to the server; failures only logged"""
        if self.api is None:
            return
        try:
            await self.api.register_waitag(identity, user_agent=user_agent)
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"WaiTag registration failed: {e}")

    # Cross-domain handoff

    def create_handoff_token(self, identity: Optional[Identity] = None, session_id: Optional[str] = None) -> str:
        """base64 JSON {waiTag, sessionId, userId?, issuedAt}; not signed"""
        identity = identity or self.identity
        if identity is None:
            raise ValueError("No identity to hand off")
        payload = {
            "waiTag": identity.wai_tag,
            "sessionId": session_id or identity.session_id,
            "issuedAt": int(time.time() * 1000),
        }
        if identity.user_id:
            payload["userId"] = identity.user_id
        return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")

    def decorate_url(self, url: str, identity: Optional[Identity] = None) -> str:
        """Append a handoff token to an outgoing cross-domain link"""
        if self.anonymous or (identity or self.identity) is None:
            return url
        parsed = urlparse(url)
        query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
                 if k not in (TOKEN_PARAM, LEGACY_TOKEN_PARAM)]
        query.append((TOKEN_PARAM, self.create_handoff_token(identity)))
        return urlunparse(parsed._replace(query=urlencode(query)))

    @staticmethod
    def extract_handoff_token(url: str) -> Optional[str]:
        """Fragment parameters win over the query string"""
        parsed = urlparse(url)
        for part in (parsed.fragment, parsed.query):
            if not part:
                continue
            params = parse_qs(part)
            for name in (TOKEN_PARAM, LEGACY_TOKEN_PARAM):
                values = params.get(name)
                if values and values[0]:
                    # An unescaped "+" in base64 arrives as a space
                    return values[0].replace(" ", "+")
        return None

    async def consume_handoff_token(
        self,
        token: str,
        domain: str,
        referrer: Optional[str] = None
    ) -> Optional[Identity]:
        """
        Validate a token through the server and adopt the identity it carries.

        Returns None (and leaves the current identity alone) when the server
        rejects the token or cannot be reached.
        """
        if self.api is None:
            return None

        self.token_received = True
        self.referring_domain = hostname_of(referrer)

        try:
            result = await self.api.verify_cross_domain_token(token, domain, referrer)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Cross-domain token verification failed: {e}")
            return None

        carried = result.get("identity") if result.get("success") else None
        identity = Identity.from_dict(carried) if isinstance(carried, dict) else None
        if identity is None:
            logger.info("Cross-domain token rejected")
            return None

        identity.domain = domain
        identity.synced_at = utc_now_iso()
        self.identity = identity
        self.identity_synced = True
        self.cross_domain_syncs += 1
        self.persist(identity)

        if self.emit:
            self.emit("cross_domain_arrival", {
                "referringDomain": self.referring_domain,
                "tokenVerified": True,
                "identityPreserved": True,
            })

        logger.info("Cross-domain identity synchronized")
        return identity

    async def sync_by_fingerprint(self, site: str, page_url: Optional[str] = None) -> bool:
        """
        Ask the server to correlate this visit with other sites seen from the
        same client fingerprint. On a match the canonical WaiTag is adopted.
        """
        if self.api is None or self.identity is None or self.anonymous:
            return False
        try:
            result = await self.api.sync_identity(
                self.identity.wai_tag,
                site,
                self.identity.domain,
                session_id=self.identity.session_id,
                page_url=page_url
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Identity sync failed: {e}")
            return False

        canonical = result.get("waiTag")
        if not result.get("shared") or not isinstance(canonical, str) or not canonical:
            return False

        if canonical != self.identity.wai_tag:
            self.identity.wai_tag = canonical
            self.identity.synced_at = utc_now_iso()
            self.persist(self.identity)
        self.identity_synced = True
        self.cross_domain_syncs += 1
        return True

    async def resolve(self, landing_url: str, referrer: Optional[str] = None) -> Identity:
        """
        Establish the identity for a page load: handoff token first, then
        stored identity, then a freshly issued one.
        """
        domain = hostname_of(landing_url) or ""

        token = self.extract_handoff_token(landing_url)
        if token:
            logger.info("Cross-domain token detected")
            adopted = await self.consume_handoff_token(token, domain, referrer)
            if adopted is not None:
                return adopted

        stored = self.recover()
        if stored is not None:
            self.identity = stored
            return stored

        identity = self.issue(domain)
        self.identity = identity
        self.persist(identity)
        await self.register(identity)
        logger.info(f"New identity generated: {identity.wai_tag}")
        return identity

    def identify(self, user_id: str):
        if self.anonymous or self.identity is None:
            logger.info("identify() ignored without an identity")
            return
        self.identity.user_id = sanitize(user_id)
        self.persist(self.identity)

    async def set_consent(self, analytics: bool, domain: str) -> Optional[Identity]:
        """
        Denying clears the identity and every storage tier and switches to
        anonymous mode. Granting recovers the stored identity or issues one.
        """
        if not analytics:
            self.identity = None
            self.identity_synced = False
            self.anonymous = True
            self.store.clear()
            logger.info("Consent denied - switched to anonymous mode")
            return None

        self.anonymous = False
        identity = self.recover()
        if identity is None:
            identity = self.issue(domain)
            self.persist(identity)
            await self.register(identity)
        self.identity = identity
        logger.info("Consent granted - identity tracking enabled")
        return identity

    def cross_domain_context(self) -> Dict[str, Any]:
        return {
            "waiTag": self.identity.wai_tag if self.identity else None,
            "referringDomain": self.referring_domain,
            "identitySynced": self.identity_synced,
            "tokenReceived": self.token_received,
        }
