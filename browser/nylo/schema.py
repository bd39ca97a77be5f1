"""
Client-side identity and event records.

Both serialise to the camelCase JSON the tracking service accepts.
"""

import html
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

# Fields factored into the batch header by compression
COMMON_FIELDS = ("sessionId", "userId", "waiTag", "domain", "customerId")


def utc_now_iso() -> str:
    return datetime.utcnow().isoformat() + "Z"


def sanitize(value: Any, max_length: int = 1000) -> str:
    """HTML-escape and truncate a caller-supplied string"""
    if not isinstance(value, str):
        value = "" if value is None else str(value)
    return html.escape(value, quote=True)[:max_length]


def sanitize_metadata(value: Any) -> Any:
    """Escape every string inside caller metadata; keeps structure"""
    if isinstance(value, str):
        return sanitize(value)
    if isinstance(value, dict):
        return {str(k): sanitize_metadata(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(v) for v in value]
    return value


def split_domain(domain: str) -> Dict[str, Optional[str]]:
    """`blog.example.com` -> main `example.com`, subdomain `blog`"""
    parts = domain.split(".")
    if len(parts) > 2:
        return {"main_domain": ".".join(parts[1:]), "subdomain": parts[0]}
    return {"main_domain": domain, "subdomain": None}


@dataclass
class Identity:
    """Pseudonymous identity persisted across the storage tiers"""
    wai_tag: str
    session_id: str
    domain: str = ""
    user_id: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    synced_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "waiTag": self.wai_tag,
            "sessionId": self.session_id,
            "userId": self.user_id,
            "domain": self.domain,
            "createdAt": self.created_at,
        }
        if self.synced_at:
            data["syncedAt"] = self.synced_at
        return data

    @classmethod
    def from_dict(cls, data: Any) -> Optional["Identity"]:
        """None unless the record carries a non-empty waiTag and sessionId"""
        if not isinstance(data, dict):
            return None
        wai_tag = data.get("waiTag")
        session_id = data.get("sessionId")
        if not isinstance(wai_tag, str) or not isinstance(session_id, str):
            return None
        if not wai_tag or not session_id:
            return None
        user_id = data.get("userId")
        return cls(
            wai_tag=wai_tag,
            session_id=session_id,
            domain=data.get("domain") or "",
            user_id=user_id if isinstance(user_id, str) else None,
            created_at=data.get("createdAt") or utc_now_iso(),
            synced_at=data.get("syncedAt")
        )


@dataclass
class TrackingEvent:
    """One queued event; immutable once handed to the pipeline"""
    event_type: str
    session_id: str
    domain: str
    wai_tag: Optional[str] = None
    user_id: Optional[str] = None
    customer_id: str = "1"
    embed_id: str = "default"
    timestamp: str = field(default_factory=utc_now_iso)
    url: str = ""
    path: str = ""
    title: str = ""
    referrer: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    cross_domain_context: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        parts = split_domain(self.domain)
        return {
            "sessionId": self.session_id,
            "waiTag": self.wai_tag,
            "userId": self.user_id,
            "customerId": self.customer_id,
            "embedId": self.embed_id,
            "timestamp": self.timestamp,
            "eventType": self.event_type,
            "domain": self.domain,
            "mainDomain": parts["main_domain"],
            "subdomain": parts["subdomain"],
            "url": self.url,
            "path": self.path,
            "title": self.title,
            "referrer": self.referrer,
            "metadata": self.metadata,
            "crossDomainContext": self.cross_domain_context,
        }
