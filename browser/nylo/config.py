"""
SDK configuration and dashboard-controlled feature flags.

The feature payload (`data-config` on the embed tag) and the domain
authorisation payload (`data-security`) are base64 JSON. Neither is
authenticated: anyone who can edit the embed tag can change them.
"""

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

SDK_VERSION = "1.0.0"


@dataclass
class SdkConfig:
    """Client configuration with the embed-tag defaults"""
    customer_id: str = "1"
    api_url: str = field(default_factory=lambda: os.getenv("NYLO_API_URL", "http://localhost:8000"))
    embed_id: str = "default"
    version: str = SDK_VERSION

    batch_size: int = 25
    batch_interval: float = 12.0   # seconds
    max_retries: int = 3
    base_retry_delay: float = 1.0  # seconds, doubled per retry
    circuit_cooldown: float = 30.0

    compression_enabled: bool = True
    cross_domain_enabled: bool = True
    anonymous_mode: bool = False

    # Raw `data-config` / `data-security` attribute values
    encrypted_config: Optional[str] = None
    encrypted_security: Optional[str] = None

    timeout: float = 10.0


@dataclass
class TrackingFeatures:
    """Per-event-type switches; cross-domain tracking is always on"""
    track_page_views: bool = False
    track_links: bool = False
    track_buttons: bool = False
    track_forms: bool = False
    track_scrolling: bool = False
    track_hovers: bool = False
    track_clicks: bool = False
    track_errors: bool = False
    track_custom_events: bool = False
    track_file_downloads: bool = False
    track_external_links: bool = False
    track_video_interactions: bool = False
    track_searches: bool = False
    track_element_visibility: bool = False
    track_page_performance: bool = False
    track_user_engagement: bool = False
    track_conversions: bool = False
    track_cross_domain: bool = True
    track_bounce_rate: bool = False
    track_return_visitors: bool = False
    track_device_info: bool = False
    track_browser_info: bool = False
    track_referrer_tracking: bool = False

    privacy: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def defaults(cls) -> "TrackingFeatures":
        """Used when no feature payload is configured or it cannot be read"""
        return cls(track_page_views=True, track_clicks=True, track_cross_domain=True)

    @classmethod
    def from_names(cls, names: Iterable[str], privacy: Optional[Dict[str, Any]] = None) -> "TrackingFeatures":
        """Enable exactly the named features (dashboard camelCase or snake_case)"""
        features = cls(privacy=privacy or {})
        for name in names:
            if not isinstance(name, str):
                continue
            attr = _snake_case(name)
            if attr in FEATURE_FLAGS:
                setattr(features, attr, True)
        features.track_cross_domain = True
        return features

    def is_enabled(self, event_type: str) -> bool:
        """Event types without a feature switch are always allowed"""
        feature = FEATURE_MAP.get(event_type)
        return feature is None or getattr(self, feature)

    def to_dict(self) -> Dict[str, bool]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "privacy"
        }


FEATURE_MAP = {
    "page_view": "track_page_views",
    "link_click": "track_links",
    "button_click": "track_buttons",
    "form_submit": "track_forms",
    "scroll": "track_scrolling",
    "hover": "track_hovers",
    "click": "track_clicks",
    "error": "track_errors",
    "custom": "track_custom_events",
    "file_download": "track_file_downloads",
    "outbound_click": "track_external_links",
    "video_interaction": "track_video_interactions",
    "search": "track_searches",
    "element_visible": "track_element_visibility",
    "performance": "track_page_performance",
    "user_engagement": "track_user_engagement",
    "conversion": "track_conversions",
    "cross_domain": "track_cross_domain",
    "bounce_rate": "track_bounce_rate",
    "return_visitor": "track_return_visitors",
    "device_info": "track_device_info",
    "browser_info": "track_browser_info",
    "referrer": "track_referrer_tracking",
}

FEATURE_FLAGS = set(FEATURE_MAP.values())


def _snake_case(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


def _decode_json_payload(encoded: str) -> Any:
    return json.loads(base64.b64decode(encoded.strip(), validate=True).decode("utf-8"))


def parse_feature_config(encoded: Optional[str]) -> TrackingFeatures:
    """
    Read the dashboard feature payload `{"features": [...], "privacy": {...}}`.

    An absent or unreadable payload falls back to page views, clicks and
    cross-domain tracking.
    """
    if not encoded:
        return TrackingFeatures.defaults()
    try:
        payload = _decode_json_payload(encoded)
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        logger.warning(f"Feature config unreadable, using defaults: {e}")
        return TrackingFeatures.defaults()

    if not isinstance(payload, dict):
        return TrackingFeatures.defaults()

    names: List[str] = payload.get("features") if isinstance(payload.get("features"), list) else []
    privacy = payload.get("privacy") if isinstance(payload.get("privacy"), dict) else {}
    return TrackingFeatures.from_names(names, privacy)


def is_domain_authorized(encoded_security: Optional[str], hostname: str) -> bool:
    """
    Check the page host against `{"authorizedDomains": [...]}`.

    Exact names and `*.example.com` wildcards are accepted. A payload without
    a domain list authorises everything; an unreadable one authorises nothing.
    """
    if not encoded_security:
        return True
    try:
        payload = _decode_json_payload(encoded_security)
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        logger.error(f"Domain authorization payload unreadable: {e}")
        return False

    domains = payload.get("authorizedDomains") if isinstance(payload, dict) else None
    if not isinstance(domains, list):
        return True

    for domain in domains:
        if not isinstance(domain, str):
            continue
        if domain.startswith("*."):
            base = domain[2:]
            if hostname == base or hostname.endswith("." + base):
                return True
        elif domain == hostname:
            return True
    return False
