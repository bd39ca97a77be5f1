"""
Nylo tracker facade

Wires the identity manager, delivery pipeline and API client together and
exposes the page-level tracking calls.
"""

import logging
import traceback
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from .api_client import NyloApiClient
from .config import SdkConfig, TrackingFeatures, is_domain_authorized, parse_feature_config
from .identity import IdentityManager, generate_anonymous_session_id
from .pipeline import DeliveryPipeline
from .schema import TrackingEvent, sanitize_metadata
from .storage import CookieBackend, IdentityStore

logger = logging.getLogger(__name__)


class NyloTracker:
    """
    One tracker per page.

    Usage:
        tracker = NyloTracker(SdkConfig(customer_id="42", api_url=...))
        await tracker.start("https://shop.example.com/?nylo_token=...", referrer=...)
        tracker.track("signup", {"plan": "pro"})
        await tracker.on_page_hide()
        await tracker.destroy()
    """

    def __init__(
        self,
        config: Optional[SdkConfig] = None,
        store: Optional[IdentityStore] = None,
        api: Optional[NyloApiClient] = None,
        pipeline: Optional[DeliveryPipeline] = None
    ):
        self.config = config or SdkConfig()
        self.store = store or IdentityStore(customer_id=self.config.customer_id)

        if api is None:
            cookies = None
            if isinstance(self.store.tiers[0].backend, CookieBackend):
                cookies = self.store.tiers[0].backend.jar.jar
            api = NyloApiClient(
                api_url=self.config.api_url,
                customer_id=self.config.customer_id,
                timeout=self.config.timeout,
                sdk_version=self.config.version,
                cookies=cookies
            )
        self.api = api
        self.identity = IdentityManager(self.store, api=self.api, emit=self._queue_cross_domain_event)
        self.identity.anonymous = self.config.anonymous_mode

        self.pipeline = pipeline or DeliveryPipeline(
            self.api.send_batch,
            customer_id=self.config.customer_id,
            batch_size=self.config.batch_size,
            batch_interval=self.config.batch_interval,
            max_retries=self.config.max_retries,
            base_retry_delay=self.config.base_retry_delay,
            circuit_cooldown=self.config.circuit_cooldown,
            compression_enabled=self.config.compression_enabled
        )

        self.features = TrackingFeatures.defaults()
        self.initialized = False
        self.anonymous_session_id: Optional[str] = None

        self.url = ""
        self.domain = ""
        self.path = ""
        self.title = ""
        self.referrer = ""

    # Lifecycle

    async def start(self, url: str, referrer: Optional[str] = None, title: str = "") -> bool:
        """
        Initialise for a page load. Returns False when the page's domain is
        not authorised for this embed.
        """
        if self.initialized:
            return True

        parsed = urlparse(url)
        self.url = url
        self.domain = parsed.hostname or ""
        self.path = parsed.path or "/"
        self.title = title
        self.referrer = referrer or ""

        logger.info(f"Initializing Nylo v{self.config.version} for customer {self.config.customer_id}")

        if not is_domain_authorized(self.config.encrypted_security, self.domain):
            logger.error("Domain not authorized - tracking blocked")
            return False

        if self.identity.anonymous:
            self.anonymous_session_id = generate_anonymous_session_id()
            initialization_type = "anonymous_session"
            logger.info("Anonymous mode - no identity tracking")
        else:
            await self.identity.resolve(url, referrer)
            initialization_type = "cross_domain_arrival" if self.identity.identity_synced else "new_session"

        self.features = parse_feature_config(self.config.encrypted_config)

        self.page_view({
            "initializationType": initialization_type,
            "waiTag": self.wai_tag,
        })

        self.pipeline.start()
        self.initialized = True
        logger.info("Initialization complete")
        return True

    async def destroy(self):
        """Stop timers, flush what is queued and release the HTTP client"""
        await self.pipeline.close()
        await self.api.close()
        self.initialized = False
        logger.info("Cleanup complete")

    async def flush(self) -> int:
        return await self.pipeline.flush()

    async def on_page_hide(self) -> int:
        return await self.pipeline.on_page_hide()

    async def on_unload(self) -> int:
        return await self.pipeline.on_unload()

    # Identity

    @property
    def session_id(self) -> Optional[str]:
        if self.identity.anonymous:
            return self.anonymous_session_id
        return self.identity.identity.session_id if self.identity.identity else None

    @property
    def wai_tag(self) -> Optional[str]:
        if self.identity.anonymous or self.identity.identity is None:
            return None
        return self.identity.identity.wai_tag

    @property
    def user_id(self) -> Optional[str]:
        if self.identity.anonymous or self.identity.identity is None:
            return None
        return self.identity.identity.user_id

    def identify(self, user_id: str):
        if self.identity.anonymous:
            logger.info("identify() is a no-op in anonymous mode")
            return
        self.identity.identify(user_id)

    async def set_consent(self, analytics: bool):
        await self.identity.set_consent(analytics, self.domain)
        if analytics:
            self.anonymous_session_id = None
        elif self.anonymous_session_id is None:
            self.anonymous_session_id = generate_anonymous_session_id()

    async def sync_identity(self, site: str) -> bool:
        """Fingerprint correlation for visits that arrived without a token"""
        if not self.config.cross_domain_enabled:
            return False
        return await self.identity.sync_by_fingerprint(site, page_url=self.url)

    def get_consent(self) -> Dict[str, bool]:
        return {"analytics": not self.identity.anonymous}

    def decorate_url(self, url: str) -> str:
        """Link to another domain carrying the current identity"""
        if not self.config.cross_domain_enabled:
            return url
        return self.identity.decorate_url(url)

    def get_session(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "waiTag": self.wai_tag,
            "userId": self.user_id,
            "customerId": self.config.customer_id,
            "queueSize": len(self.pipeline.queue),
            "crossDomainSynced": self.identity.identity_synced,
        }

    def get_cross_domain_identity(self) -> Dict[str, Any]:
        return {
            "waiTag": self.wai_tag,
            "identitySynced": self.identity.identity_synced,
            "referringDomain": self.identity.referring_domain,
        }

    def get_metrics(self) -> Dict[str, Any]:
        self.pipeline.cross_domain_syncs = self.identity.cross_domain_syncs
        return self.pipeline.metrics()

    def get_features(self) -> Dict[str, bool]:
        return self.features.to_dict()

    # Events

    def _create_event(self, event_type: str, metadata: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        if not event_type or not isinstance(event_type, str):
            logger.error("Invalid event type provided")
            return None
        if not self.features.is_enabled(event_type):
            return None

        cross_domain_context = None
        if self.identity.identity_synced:
            cross_domain_context = {
                "referringDomain": self.identity.referring_domain,
                "identityPreserved": True,
                "syncMethod": "token_verification",
            }

        return TrackingEvent(
            event_type=event_type,
            session_id=self.session_id or "",
            domain=self.domain,
            wai_tag=self.wai_tag,
            user_id=self.user_id,
            customer_id=self.config.customer_id,
            embed_id=self.config.embed_id,
            url=self.url,
            path=self.path,
            title=self.title,
            referrer=self.referrer,
            metadata=sanitize_metadata(metadata or {}),
            cross_domain_context=cross_domain_context
        ).to_dict()

    def queue_event(self, event_type: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        event = self._create_event(event_type, metadata)
        if event is None:
            return False
        self.pipeline.enqueue(event)
        return True

    def _queue_cross_domain_event(self, event_type: str, data: Dict[str, Any]):
        self.queue_event(event_type, {**data, "crossDomainContext": self.identity.cross_domain_context()})

    def page_view(self, data: Optional[Dict[str, Any]] = None) -> bool:
        return self.queue_event("page_view", data)

    def click(self, element: Dict[str, Any], data: Optional[Dict[str, Any]] = None) -> bool:
        """`element` carries tag, id, class and text of the clicked node"""
        text = element.get("text") or ""
        return self.queue_event("click", {
            "elementTag": element.get("tag"),
            "elementId": element.get("id"),
            "elementClass": element.get("class"),
            "elementText": text[:100],
            **(data or {}),
        })

    def form_submit(self, form_id: str, action: str = "", method: str = "get", field_count: int = 0) -> bool:
        return self.queue_event("form_submit", {
            "formId": form_id,
            "formAction": action,
            "formMethod": method,
            "fieldCount": field_count,
        })

    def track(self, name: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """Custom event"""
        return self.queue_event("custom", {
            "customEventName": str(name),
            "customEventData": data or {},
        })

    def conversion(self, conversion_type: str, value: Optional[float] = None, data: Optional[Dict[str, Any]] = None) -> bool:
        return self.queue_event("conversion", {
            "conversionType": conversion_type,
            "conversionValue": value,
            **(data or {}),
        })

    def error(self, exc: BaseException, context: Optional[Dict[str, Any]] = None) -> bool:
        return self.queue_event("error", {
            "errorMessage": str(exc) or exc.__class__.__name__,
            "errorStack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            "errorContext": context or {},
        })
