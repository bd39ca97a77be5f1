"""
Tracking Service - FastAPI Application

Single entry point for event ingestion, identity registration, cross-domain
correlation and domain ownership verification.

Ingestion endpoints favour availability: storage faults on `track`,
`register-waitag` and `sync-identity` still answer with a success body
(see TrackingConfig.soft_fail) so a misbehaving backend never blocks page
rendering. Registration and verification validation errors are reported
precisely.
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional
import secrets

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Gauge, Histogram, make_asgi_app

from ..errors import NotFoundError, RateLimitError, ServerError, TrackingError, ValidationError
from ..identity.cross_domain import (
    CrossDomainTokenVerifier,
    FingerprintCorrelator,
    build_fingerprint,
    record_correlation
)
from ..identity.secure_id import generate_session_id, generate_waitag_id, is_valid_waitag_id
from ..identity.validation import (
    parse_customer_id,
    parse_domain,
    sanitize_form_data,
    validate_api_key,
    validate_domain,
    validate_tracking_event,
    validate_waitag
)
from ..models.tracking_models import (
    Customer,
    DomainVerificationRequest,
    Interaction,
    MatchMethod,
    RegisterWaiTagRequest,
    SyncIdentityRequest,
    SyncIdentityResponse,
    TrackingConfig,
    TrackResponse,
    VerifyCrossDomainTokenRequest,
    VerifyWaiTagRequest
)
from ..verification.dns_verifier import DnsVerifier
from ..verification.domain_state import DomainVerificationService
from .database import DatabaseClient, InMemoryStorage, TrackingStorage
from .dedup import DedupCache
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)

NYLO_HEADERS = [
    "Origin", "X-Requested-With", "Content-Type", "Accept", "X-API-Key",
    "X-Customer-ID", "X-Session-ID", "X-WaiTag", "X-Batch-Size", "X-SDK-Version",
]
EXPOSED_HEADERS = ["X-WaiTag", "X-Cross-Domain-WaiTag", "X-Session-ID"]

SECURITY_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


# Prometheus metrics

EVENTS_INGESTED = Counter(
    'nylo_events_ingested_total',
    'Inbound tracking events by outcome',
    ['outcome']
)

REQUEST_LATENCY = Histogram(
    'nylo_request_latency_seconds',
    'API request latency in seconds',
    ['endpoint'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 10.0]
)

RATE_LIMITED = Counter(
    'nylo_rate_limited_requests_total',
    'Requests rejected by the rate limiter'
)

DEDUP_CACHE_SIZE = Gauge(
    'nylo_dedup_cache_entries',
    'Live keys in the dedup cache'
)


class TrackingState:
    """Service-owned state, built once per app"""

    def __init__(
        self,
        config: TrackingConfig,
        storage: TrackingStorage,
        dns_verifier: Optional[DnsVerifier] = None
    ):
        self.config = config
        self.storage = storage
        self.dedup = DedupCache(
            window_seconds=config.dedup_window_seconds,
            sweep_interval_seconds=config.dedup_sweep_interval_seconds
        )
        self.rate_limiter = RateLimiter(
            max_requests=config.rate_limit_max,
            window_seconds=config.rate_limit_window_seconds
        )
        self.correlator = FingerprintCorrelator(max_entries=config.fingerprint_map_max_entries)
        self.domains = DomainVerificationService(
            storage,
            dns_verifier or DnsVerifier(
                resolvers=config.dns_resolvers,
                timeout=config.dns_timeout_seconds
            )
        )
        self.token_verifier = CrossDomainTokenVerifier(
            storage,
            enforce_domain_verification=config.enforce_domain_verification,
            max_token_age_seconds=config.handoff_token_max_age_seconds
        )

    async def start(self):
        await self.storage.connect()
        self.dedup.start()
        self.rate_limiter.start()

    async def stop(self):
        await self.dedup.stop()
        await self.rate_limiter.stop()
        await self.storage.disconnect()


def get_state(request: Request) -> TrackingState:
    return request.app.state.tracking


async def resolve_customer(
    storage: TrackingStorage,
    api_key: Optional[str],
    customer_id: Any
) -> Customer:
    """API key wins over an explicit customer id"""
    customer = None
    if api_key:
        customer = await storage.get_customer_by_api_key(api_key)
    if customer is None and customer_id not in (None, ""):
        customer = await storage.get_customer(parse_customer_id(customer_id))
    if customer is None:
        raise NotFoundError("Customer not found")
    return customer


def expand_batch(payload: Any) -> List[Any]:
    """
    Normalise the accepted body shapes into a flat list of events:
    a bare list, {events: [...]}, {common, events} and the SDK's compressed
    {events: {common, events}}, or a single event object.
    """
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []

    events = payload.get("events")
    common = payload.get("common") or {}

    if isinstance(events, dict):
        common = events.get("common") or {}
        events = events.get("events") or []

    if events is None:
        return [payload]
    if not isinstance(events, list):
        return []

    return [{**common, **event} if isinstance(event, dict) else event for event in events]


def _timestamp_string(value: Any) -> str:
    if value is None or value == "":
        return ""
    return str(value)


def _header_customer_id(request: Request) -> Optional[int]:
    raw = request.headers.get("x-customer-id")
    if raw and raw.strip().isdigit():
        return int(raw)
    return None


router = APIRouter()


@router.get("/health")
async def health_check(state: TrackingState = Depends(get_state)):
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "dedupEntries": len(state.dedup),
        "fingerprints": len(state.correlator)
    }


@router.post("/api/track", response_model=TrackResponse)
async def track_events(request: Request, state: TrackingState = Depends(get_state)):
    """
    Batch event ingestion.

    Every event is filtered through the dedup cache before storage; events
    missing sessionId, eventType or domain are skipped.
    """
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON body")

    events = expand_batch(payload)
    if not events:
        raise ValidationError("No events provided")

    customer_id = _header_customer_id(request)
    processed = 0

    for item in events:
        if not isinstance(item, dict):
            EVENTS_INGESTED.labels(outcome='invalid').inc()
            continue

        event = dict(item)
        event_type = event.pop("eventType", None)
        domain = event.pop("domain", None)
        session_id = event.pop("sessionId", None)
        timestamp = event.pop("timestamp", None)
        url = event.pop("url", None) or event.pop("pageUrl", None)
        event.pop("pageUrl", None)
        user_id = event.pop("userId", None)
        metadata = event.pop("metadata", None)

        if not session_id or not event_type or not domain:
            EVENTS_INGESTED.labels(outcome='invalid').inc()
            continue

        timestamp_str = _timestamp_string(timestamp)
        if not state.dedup.claim(str(session_id), str(event_type), timestamp_str):
            EVENTS_INGESTED.labels(outcome='duplicate').inc()
            continue

        parsed = parse_domain(str(domain))
        try:
            await state.storage.create_interaction(Interaction(
                customer_id=customer_id,
                session_id=str(session_id),
                user_id=user_id or None,
                page_url=url or "",
                domain=str(domain),
                main_domain=parsed["main_domain"],
                subdomain=parsed["subdomain"],
                interaction_type=str(event_type),
                content=metadata or "",
                feature_name=str(event_type),
                feature_category="tracking",
                context={"metadata": metadata or "", **event}
            ))
            processed += 1
            EVENTS_INGESTED.labels(outcome='stored').inc()
        except Exception as e:
            # A later retry of this event must not be mistaken for a duplicate
            state.dedup.release(str(session_id), str(event_type), timestamp_str)
            EVENTS_INGESTED.labels(outcome='failed').inc()
            logger.error(f"Failed to store event {event_type}: {e}")
            if not state.config.is_soft_fail("track"):
                raise ServerError("Failed to store event")

    DEDUP_CACHE_SIZE.set(len(state.dedup))
    return TrackResponse(eventsProcessed=processed, totalEvents=len(events))


@router.post("/api/tracking/register-waitag")
async def register_waitag(
    body: RegisterWaiTagRequest,
    request: Request,
    response: Response,
    state: TrackingState = Depends(get_state)
):
    """Register a pseudonymous identifier for a domain, issuing one if absent or malformed"""
    data = sanitize_form_data(body.dict())

    try:
        wai_tag = validate_waitag(data.get("waiTag")) if data.get("waiTag") else generate_waitag_id()
    except ValidationError:
        wai_tag = generate_waitag_id()

    if not data.get("domain"):
        raise ValidationError("Domain is required")
    try:
        domain = validate_domain(data["domain"])
    except ValidationError as e:
        raise ValidationError(f"Invalid domain: {e.message}")

    api_key = None
    for candidate in (request.headers.get("x-api-key"), data.get("apiKey")):
        if candidate:
            try:
                api_key = validate_api_key(candidate)
                break
            except ValidationError:
                continue

    customer = await resolve_customer(state.storage, api_key, data.get("customerId"))

    response.headers["X-WaiTag"] = wai_tag
    session_id = str(data.get("sessionId") or generate_session_id())
    parsed = parse_domain(domain)

    try:
        await state.storage.create_interaction(Interaction(
            customer_id=customer.id,
            session_id=session_id,
            user_id=wai_tag,
            page_url=data.get("pageUrl") or "",
            domain=domain,
            main_domain=parsed["main_domain"],
            subdomain=parsed["subdomain"],
            interaction_type="waitag_registration",
            context={
                "waiTag": wai_tag,
                "userAgent": data.get("userAgent") or request.headers.get("user-agent"),
                "referrer": data.get("referrer"),
                "language": data.get("language"),
                "screenSize": data.get("screenSize")
            }
        ))
    except Exception as e:
        logger.error(f"Error storing WaiTag registration: {e}")
        if not state.config.is_soft_fail("register_waitag"):
            raise ServerError("Server error storing registration")
        return {
            "success": True,
            "waiTag": wai_tag,
            "sessionId": generate_session_id(),
            "domain": domain
        }

    return {
        "success": True,
        "waiTag": wai_tag,
        "sessionId": session_id,
        "domain": domain,
        "customerId": customer.id
    }


@router.post("/api/tracking/verify-cross-domain-token")
async def verify_cross_domain_token(
    body: VerifyCrossDomainTokenRequest,
    request: Request,
    response: Response,
    state: TrackingState = Depends(get_state)
):
    """Validate a handoff token on the receiving domain"""
    if not body.token:
        raise ValidationError("Token is required")

    domain = validate_domain(body.domain) if body.domain else None
    customer_id = parse_customer_id(body.customerId) if body.customerId not in (None, "") else None

    identity = await state.token_verifier.verify(body.token, domain, customer_id)
    if identity is None:
        return {"success": False, "message": "Invalid or expired cross-domain token"}

    if customer_id is not None:
        try:
            customer = await state.storage.get_customer(customer_id)
            if customer:
                await record_correlation(
                    state.storage,
                    customer,
                    identity.waiTag,
                    MatchMethod.TOKEN,
                    domain,
                    session_id=identity.sessionId,
                    referrer=body.referrer
                )
        except Exception as e:
            logger.warning(f"Failed to record token correlation: {e}")
            if not state.config.is_soft_fail("verify_cross_domain_token"):
                raise ServerError("Server error recording correlation")

    response.headers["X-Cross-Domain-WaiTag"] = identity.waiTag
    return {
        "success": True,
        "identity": {
            "waiTag": identity.waiTag,
            "sessionId": identity.sessionId,
            "userId": identity.userId
        },
        "verifiedAt": datetime.utcnow().isoformat()
    }


@router.post("/api/tracking/verify-waitag")
async def verify_waitag(body: VerifyWaiTagRequest):
    """Shallow format check of a WaiTag"""
    if not body.waiTag or not body.domain:
        raise ValidationError("Missing required fields")
    return {"success": True, "isValid": is_valid_waitag_id(body.waiTag.strip()), "waiTag": body.waiTag}


@router.post("/api/tracking/event")
async def track_single_event(request: Request, state: TrackingState = Depends(get_state)):
    """Single validated event with customer lookup"""
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON body")

    if not payload:
        raise ValidationError("Empty request body")

    event = validate_tracking_event(payload)
    event_type = event.pop("eventType", None) or "custom"
    wai_tag = event.pop("waiTag", None)
    domain = event.pop("domain", None) or ""
    customer_id = event.pop("customerId", None)
    page_url = event.pop("pageUrl", None) or ""
    session_id = event.pop("sessionId", None)
    metadata = event.pop("metadata", None)

    customer = await resolve_customer(state.storage, request.headers.get("x-api-key"), customer_id)
    parsed = parse_domain(domain)

    try:
        await state.storage.create_interaction(Interaction(
            customer_id=customer.id,
            session_id=str(session_id or generate_session_id()),
            user_id=wai_tag,
            page_url=page_url,
            domain=domain,
            main_domain=parsed["main_domain"],
            subdomain=parsed["subdomain"],
            interaction_type=event_type,
            context={"metadata": metadata, **event}
        ))
    except Exception as e:
        logger.error(f"Tracking event error: {e}")
        if not state.config.is_soft_fail("tracking_event"):
            raise ServerError("Server error")

    return {"success": True, "message": "Event tracked"}


@router.post("/api/tracking/sync-identity", response_model=SyncIdentityResponse)
async def sync_identity(
    body: SyncIdentityRequest,
    request: Request,
    state: TrackingState = Depends(get_state)
):
    """
    Fingerprint-based correlation for visitors who arrive without a token.

    The fingerprint is the client's user agent (or an explicit
    browserFingerprint) joined with its network address.
    """
    wai_tag = body.waiTag or body.waitag or body.userId or (
        f"wai-temp-{int(time.time() * 1000)}-{secrets.token_hex(3)}"
    )
    site = body.currentSite or "unknown"

    try:
        user_agent = body.browserFingerprint or request.headers.get("user-agent", "")
        client_address = request.client.host if request.client else ""
        fingerprint = build_fingerprint(user_agent, client_address)

        result = state.correlator.sync(site, wai_tag, fingerprint)
        if not result.shared:
            return SyncIdentityResponse(shared=False, waiTag=wai_tag, message="Identity synced")

        try:
            customer = await resolve_customer(
                state.storage,
                request.headers.get("x-api-key"),
                body.customerId
            )
            await record_correlation(
                state.storage,
                customer,
                result.waiTag,
                MatchMethod.FINGERPRINT,
                body.domain,
                session_id=body.sessionId or "",
                page_url=body.pageUrl or "",
                sites=result.sites
            )
        except TrackingError as e:
            logger.info(f"Fingerprint match not recorded: {e.message}")

        return SyncIdentityResponse(
            shared=True,
            waiTag=result.waiTag,
            message="Cross-domain identity matched"
        )
    except Exception as e:
        logger.error(f"Identity sync error: {e}")
        if not state.config.is_soft_fail("sync_identity"):
            raise ServerError("Server error during identity sync")
        return SyncIdentityResponse(
            shared=False,
            waiTag=body.waiTag or "unknown",
            message="Identity sync processed with warnings"
        )


@router.post("/api/domains/request-verification")
async def request_domain_verification(
    body: DomainVerificationRequest,
    request: Request,
    state: TrackingState = Depends(get_state)
):
    """Start a DNS TXT challenge for a domain"""
    domain = validate_domain(body.domain)
    customer = await resolve_customer(state.storage, request.headers.get("x-api-key"), body.customerId)
    return await state.domains.request_verification(domain, customer.id)


@router.post("/api/domains/verify")
async def verify_domain(
    body: DomainVerificationRequest,
    request: Request,
    state: TrackingState = Depends(get_state)
):
    """Check a previously requested DNS TXT challenge"""
    domain = validate_domain(body.domain)
    customer = await resolve_customer(state.storage, request.headers.get("x-api-key"), body.customerId)
    return await state.domains.verify(domain, customer.id)


@router.get("/api/domains/status")
async def domain_status(
    request: Request,
    domain: Optional[str] = None,
    customerId: Optional[str] = None,
    state: TrackingState = Depends(get_state)
):
    """Read-only verification state"""
    if not domain:
        raise ValidationError("Domain parameter is required")
    valid_domain = validate_domain(domain)
    customer = await resolve_customer(state.storage, request.headers.get("x-api-key"), customerId)
    return await state.domains.status(valid_domain, customer.id)


@router.get("/api/stats")
async def get_stats(state: TrackingState = Depends(get_state)) -> Dict[str, Any]:
    """Aggregate counts from storage"""
    return await state.storage.get_stats()


@router.get("/api/events/recent")
async def recent_events(limit: int = 50, state: TrackingState = Depends(get_state)):
    """Most recent stored interactions, newest first"""
    events = await state.storage.get_recent_events(limit=max(1, min(limit, 500)))
    return {"events": [e.dict() for e in events]}


def create_app(
    config: Optional[TrackingConfig] = None,
    storage: Optional[TrackingStorage] = None,
    dns_verifier: Optional[DnsVerifier] = None
) -> FastAPI:
    """Build the tracking service with its own state objects"""
    config = config or TrackingConfig.from_env()
    if storage is None:
        storage = DatabaseClient(config.database_url) if config.database_url else InMemoryStorage()

    app = FastAPI(
        title="Nylo Tracking Service",
        description="Privacy-first cross-domain event collection and identity correlation",
        version="1.0.0"
    )
    app.state.tracking = TrackingState(config, storage, dns_verifier)

    @app.on_event("startup")
    async def startup():
        await app.state.tracking.start()
        logger.info("Tracking service initialized")

    @app.on_event("shutdown")
    async def shutdown():
        await app.state.tracking.stop()
        logger.info("Tracking service shutdown")

    @app.exception_handler(TrackingError)
    async def tracking_error_handler(request: Request, exc: TrackingError):
        headers = {}
        if isinstance(exc, RateLimitError):
            headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        if request.method == "OPTIONS" or not request.url.path.startswith("/api/"):
            return await call_next(request)

        key = request.client.host if request.client else "unknown"
        try:
            remaining = app.state.tracking.rate_limiter.hit(key)
        except RateLimitError as e:
            RATE_LIMITED.inc()
            return JSONResponse(
                status_code=e.status_code,
                content=e.to_dict(),
                headers={"Retry-After": str(e.retry_after)}
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(app.state.tracking.rate_limiter.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        if request.headers.get("x-forwarded-proto") == "https" or request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        endpoint = request.url.path if response.status_code != 404 else "unmatched"
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - start_time)
        return response

    # Registered last so it is outermost: rejected requests still carry CORS headers
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=".*",
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=NYLO_HEADERS,
        expose_headers=EXPOSED_HEADERS,
        max_age=86400,
    )

    app.include_router(router)
    app.mount("/metrics", make_asgi_app())
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
