"""
Input validation and sanitisation for tracking payloads.

Validators return the cleaned value or raise ValidationError.
"""

import re
from typing import Any, Dict

from ..errors import ValidationError
from .secure_id import WAITAG_PATTERN

DOMAIN_PATTERN = re.compile(
    r"^[a-zA-Z0-9][a-zA-Z0-9-]{0,61}[a-zA-Z0-9]?(\.[a-zA-Z0-9][a-zA-Z0-9-]{0,61}[a-zA-Z0-9])*$"
)
API_KEY_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{8,128}$")

VALID_EVENT_TYPES = {
    "page_view", "click", "link_click", "button_click", "form_submit",
    "scroll", "hover", "error", "custom", "file_download", "outbound_click",
    "video_interaction", "search", "element_visible", "performance",
    "user_engagement", "conversion", "cross_domain", "cross_domain_arrival",
    "cross_domain_identity_match", "waitag_registration", "bounce_rate",
    "return_visitor", "device_info", "browser_info", "referrer",
}

_SCRIPT_FRAGMENTS = [
    (re.compile(r"[<>]"), ""),
    (re.compile(r"javascript:", re.IGNORECASE), ""),
    (re.compile(r"on\w+=", re.IGNORECASE), ""),
]


def validate_domain(domain: Any) -> str:
    if not domain or not isinstance(domain, str):
        raise ValidationError("Domain is required")
    cleaned = domain.strip().lower()
    if len(cleaned) > 253:
        raise ValidationError("Domain too long")
    if not DOMAIN_PATTERN.match(cleaned) and "localhost" not in cleaned:
        raise ValidationError("Invalid domain format")
    return cleaned


def validate_api_key(api_key: Any) -> str:
    if not api_key or not isinstance(api_key, str):
        raise ValidationError("API key is required")
    cleaned = api_key.strip()
    if not API_KEY_PATTERN.match(cleaned):
        raise ValidationError("Invalid API key format")
    return cleaned


def validate_waitag(waitag: Any) -> str:
    if not waitag or not isinstance(waitag, str):
        raise ValidationError("WaiTag is required")
    cleaned = waitag.strip()
    if not WAITAG_PATTERN.match(cleaned):
        raise ValidationError("Invalid WaiTag format")
    return cleaned


def validate_event_type(event_type: Any) -> str:
    if not event_type or not isinstance(event_type, str):
        raise ValidationError("Event type is required")
    cleaned = event_type.strip().lower()
    if cleaned not in VALID_EVENT_TYPES:
        raise ValidationError(f"Invalid event type: {cleaned}")
    return cleaned


def parse_customer_id(raw: Any) -> int:
    """Customer ids arrive as ints or numeric strings"""
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid customer id: {raw!r}")


def sanitize_string(value: str, max_length: int = 10000) -> str:
    for pattern, replacement in _SCRIPT_FRAGMENTS:
        value = pattern.sub(replacement, value)
    return value[:max_length]


def sanitize_form_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively strip markup and script fragments from string values"""
    sanitized: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, str):
            sanitized[key] = sanitize_string(value)
        elif isinstance(value, dict):
            sanitized[key] = sanitize_form_data(value)
        else:
            sanitized[key] = value
    return sanitized


def validate_tracking_event(payload: Any) -> Dict[str, Any]:
    """
    Sanitise a single-event payload.

    Unknown event types are downgraded to "custom" and a malformed domain is
    left as-is, so a sloppy client still gets its event recorded.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid payload")

    sanitized = sanitize_form_data(payload)

    if sanitized.get("eventType"):
        try:
            sanitized["eventType"] = validate_event_type(sanitized["eventType"])
        except ValidationError:
            sanitized["eventType"] = "custom"

    if sanitized.get("domain"):
        try:
            sanitized["domain"] = validate_domain(sanitized["domain"])
        except ValidationError:
            pass

    return sanitized


def parse_domain(domain: str) -> Dict[str, Any]:
    """Split a host into main domain and first-label subdomain"""
    parts = (domain or "").split(".")
    if len(parts) > 2:
        return {"main_domain": ".".join(parts[1:]), "subdomain": parts[0]}
    return {"main_domain": domain, "subdomain": None}
