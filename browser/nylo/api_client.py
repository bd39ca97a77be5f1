"""
HTTP client for the Nylo tracking service.
"""

import logging
from http.cookiejar import CookieJar
from typing import Any, Dict, List, Optional

import httpx

from .config import SDK_VERSION
from .schema import Identity

logger = logging.getLogger(__name__)


class NyloApiClient:
    """
    Thin async wrapper over the tracking endpoints.

    Methods raise httpx.HTTPError on transport failures and non-2xx answers;
    callers decide whether that is fatal.
    """

    def __init__(
        self,
        api_url: str = "http://localhost:8000",
        customer_id: str = "1",
        timeout: float = 10.0,
        sdk_version: str = SDK_VERSION,
        cookies: Optional[CookieJar] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_url = api_url.rstrip("/")
        self.customer_id = customer_id
        self.sdk_version = sdk_version
        self.client = httpx.AsyncClient(
            base_url=self.api_url,
            timeout=timeout,
            cookies=cookies,
            transport=transport
        )
        logger.info(f"NyloApiClient initialized: {self.api_url}")

    async def _post(self, path: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        response = await self.client.post(path, json=payload, headers=headers)
        response.raise_for_status()
        return response.json()

    async def send_batch(self, payload: Dict[str, Any], batch: List[Dict[str, Any]]) -> Dict[str, Any]:
        """POST one (compressed) batch to /api/track"""
        first = batch[0] if batch else {}
        headers = {
            "X-Customer-ID": str(self.customer_id),
            "X-Batch-Size": str(len(batch)),
            "X-SDK-Version": self.sdk_version,
        }
        if first.get("sessionId"):
            headers["X-Session-ID"] = first["sessionId"]
        if first.get("waiTag"):
            headers["X-WaiTag"] = first["waiTag"]
        return await self._post("/api/track", payload, headers=headers)

    async def register_waitag(self, identity: Identity, user_agent: Optional[str] = None) -> Dict[str, Any]:
        return await self._post("/api/tracking/register-waitag", {
            "waiTag": identity.wai_tag,
            "sessionId": identity.session_id,
            "domain": identity.domain,
            "customerId": self.customer_id,
            "timestamp": identity.created_at,
            "userAgent": user_agent,
        })

    async def verify_cross_domain_token(
        self,
        token: str,
        domain: str,
        referrer: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self._post("/api/tracking/verify-cross-domain-token", {
            "token": token,
            "domain": domain,
            "customerId": self.customer_id,
            "referrer": referrer,
        })

    async def sync_identity(
        self,
        wai_tag: str,
        current_site: str,
        domain: str,
        session_id: Optional[str] = None,
        page_url: Optional[str] = None
    ) -> Dict[str, Any]:
        """Fingerprint correlation for arrivals without a handoff token"""
        return await self._post("/api/tracking/sync-identity", {
            "customerId": self.customer_id,
            "waiTag": wai_tag,
            "currentSite": current_site,
            "domain": domain,
            "sessionId": session_id,
            "pageUrl": page_url,
        })

    async def close(self):
        await self.client.aclose()
        logger.info("NyloApiClient closed")
