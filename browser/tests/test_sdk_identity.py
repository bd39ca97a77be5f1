"""Tests for identity issue, recovery and cross-domain handoff"""

import base64
import json
import re
from typing import Any, Dict, List

import httpx
import pytest

from nylo.api_client import NyloApiClient
from nylo.identity import (
    IdentityManager,
    domain_hash,
    generate_anonymous_session_id,
    generate_session_id,
    generate_wai_tag
)
from nylo.schema import Identity
from nylo.storage import IdentityStore, MemoryBackend


class FakeTrackingService:
    """MockTransport handler that records requests and answers per path"""

    def __init__(self):
        self.requests: List[Dict[str, Any]] = []
        self.token_identity: Dict[str, Any] = {}
        self.token_status = 200
        self.sync_result = {"shared": False, "waiTag": "", "message": "Identity synced"}
        self.offline = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.offline:
            raise httpx.ConnectError("connection refused", request=request)

        body = json.loads(request.content) if request.content else {}
        self.requests.append({"path": request.url.path, "body": body, "headers": request.headers})

        if request.url.path == "/api/tracking/verify-cross-domain-token":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "Domain not verified"})
            if not self.token_identity:
                return httpx.Response(200, json={"success": False})
            return httpx.Response(200, json={"success": True, "identity": self.token_identity})
        if request.url.path == "/api/tracking/sync-identity":
            return httpx.Response(200, json=self.sync_result)
        return httpx.Response(200, json={"success": True})

    def paths(self) -> List[str]:
        return [r["path"] for r in self.requests]


@pytest.fixture
def service():
    return FakeTrackingService()


@pytest.fixture
def store():
    return IdentityStore("42", local=MemoryBackend(), session=MemoryBackend())


@pytest.fixture
def manager(service, store):
    api = NyloApiClient("http://tracking.test", customer_id="42", transport=httpx.MockTransport(service))
    emitted = []
    manager = IdentityManager(store, api=api, emit=lambda event_type, data: emitted.append((event_type, data)))
    manager.emitted = emitted
    return manager


class TestIdentifierFormats:

    def test_wai_tag_shape(self):
        tag = generate_wai_tag("shop.example.com", now_ms=1700000000000)
        assert re.match(r"^wai_[0-9a-z]+_[0-9a-z]{11}[0-9a-f]{8}$", tag)
        assert tag.endswith(domain_hash("shop.example.com"))

    def test_wai_tags_are_unique(self):
        tags = {generate_wai_tag("shop.example.com") for _ in range(200)}
        assert len(tags) == 200

    def test_session_id_shape(self):
        session_id = generate_session_id("shop.example.com")
        assert re.match(r"^[0-9a-z]+-[0-9a-f]{32}-[0-9a-f]{8}$", session_id)

    def test_domain_hash_is_stable_and_short(self):
        assert domain_hash("a.com") == domain_hash("a.com")
        assert domain_hash("a.com") != domain_hash("b.com")
        assert len(domain_hash("a.com")) == 8

    def test_anonymous_session_id(self):
        assert generate_anonymous_session_id().startswith("anon_")


class TestHandoffToken:

    def test_decorate_then_extract(self, manager):
        manager.identity = Identity(wai_tag="wai_abc_123", session_id="s-1", user_id="u-9")

        url = manager.decorate_url("https://blog.example.org/post?ref=home")
        assert "ref=home" in url

        token = IdentityManager.extract_handoff_token(url)
        payload = json.loads(base64.b64decode(token))
        assert payload["waiTag"] == "wai_abc_123"
        assert payload["sessionId"] == "s-1"
        assert payload["userId"] == "u-9"
        assert isinstance(payload["issuedAt"], int)

    def test_decorate_replaces_existing_token(self, manager):
        manager.identity = Identity(wai_tag="wai_abc_123", session_id="s-1")
        url = manager.decorate_url("https://b.com/?nylo_token=stale&wai_token=old")
        assert "stale" not in url
        assert "wai_token" not in url

    def test_no_identity_leaves_url(self, manager):
        assert manager.decorate_url("https://b.com/") == "https://b.com/"
        with pytest.raises(ValueError):
            manager.create_handoff_token()

    def test_fragment_wins_over_query(self):
        url = "https://b.com/?nylo_token=from-query#nylo_token=from-fragment"
        assert IdentityManager.extract_handoff_token(url) == "from-fragment"

    def test_legacy_parameter(self):
        assert IdentityManager.extract_handoff_token("https://b.com/?wai_token=abc") == "abc"

    def test_plus_survives_unescaped(self):
        assert IdentityManager.extract_handoff_token("https://b.com/?nylo_token=ab+cd") == "ab+cd"

    def test_no_token(self):
        assert IdentityManager.extract_handoff_token("https://b.com/page") is None


class TestResolve:

    @pytest.mark.asyncio
    async def test_token_identity_adopted(self, manager, service, store):
        service.token_identity = {"waiTag": "wai_origin_1", "sessionId": "origin-session", "userId": None}

        identity = await manager.resolve(
            "https://blog.example.org/?nylo_token=dG9rZW4=",
            referrer="https://shop.example.com/cart"
        )

        assert identity.wai_tag == "wai_origin_1"
        assert identity.domain == "blog.example.org"
        assert manager.identity_synced
        assert manager.referring_domain == "shop.example.com"
        assert manager.cross_domain_syncs == 1
        assert store.load().wai_tag == "wai_origin_1"

        event_type, data = manager.emitted[0]
        assert event_type == "cross_domain_arrival"
        assert data["referringDomain"] == "shop.example.com"

        verify = service.requests[0]
        assert verify["body"]["token"] == "dG9rZW4="
        assert verify["body"]["domain"] == "blog.example.org"

    @pytest.mark.asyncio
    async def test_rejected_token_falls_back_to_stored(self, manager, service, store):
        store.save(Identity(wai_tag="wai_stored_1", session_id="s-stored"))
        service.token_status = 403

        identity = await manager.resolve("https://blog.example.org/?nylo_token=abc")

        assert identity.wai_tag == "wai_stored_1"
        assert not manager.identity_synced
        assert manager.token_received
        assert manager.emitted == []

    @pytest.mark.asyncio
    async def test_fresh_identity_registered(self, manager, service, store):
        identity = await manager.resolve("https://shop.example.com/")

        assert identity.wai_tag.startswith("wai_")
        assert identity.domain == "shop.example.com"
        assert store.load().wai_tag == identity.wai_tag
        assert service.paths() == ["/api/tracking/register-waitag"]
        assert service.requests[0]["body"]["customerId"] == "42"

    @pytest.mark.asyncio
    async def test_offline_still_yields_identity(self, manager, service):
        service.offline = True
        identity = await manager.resolve("https://shop.example.com/?nylo_token=abc")
        assert identity.wai_tag.startswith("wai_")
        assert not manager.identity_synced

    @pytest.mark.asyncio
    async def test_non_json_reply_does_not_block_issue(self, store):
        def proxy_page(request):
            return httpx.Response(200, text="<html>proxy</html>")

        api = NyloApiClient("http://tracking.test", customer_id="42", transport=httpx.MockTransport(proxy_page))
        manager = IdentityManager(store, api=api)

        identity = await manager.resolve("https://shop.example.com/")

        assert identity.wai_tag.startswith("wai_")
        assert store.load().wai_tag == identity.wai_tag
        await api.close()

    @pytest.mark.asyncio
    async def test_rejection_body_keeps_identity(self, manager, service):
        manager.identity = Identity(wai_tag="wai_keep_1", session_id="s")
        adopted = await manager.consume_handoff_token("garbage", "blog.example.org")
        assert adopted is None
        assert manager.identity.wai_tag == "wai_keep_1"


class TestFingerprintSync:

    @pytest.mark.asyncio
    async def test_canonical_tag_adopted(self, manager, service, store):
        manager.identity = Identity(wai_tag="wai_local_1", session_id="s", domain="blog.example.org")
        service.sync_result = {"shared": True, "waiTag": "wai_canonical_1", "message": "matched"}

        assert await manager.sync_by_fingerprint("blog", page_url="https://blog.example.org/")
        assert manager.identity.wai_tag == "wai_canonical_1"
        assert store.load().wai_tag == "wai_canonical_1"
        assert service.requests[0]["body"]["currentSite"] == "blog"

    @pytest.mark.asyncio
    async def test_no_match(self, manager, service):
        manager.identity = Identity(wai_tag="wai_local_1", session_id="s")
        assert not await manager.sync_by_fingerprint("blog")
        assert manager.identity.wai_tag == "wai_local_1"


class TestConsent:

    @pytest.mark.asyncio
    async def test_deny_clears_every_tier(self, manager, store):
        await manager.resolve("https://shop.example.com/")

        await manager.set_consent(False, "shop.example.com")

        assert manager.anonymous
        assert manager.identity is None
        assert store.load() is None
        assert manager.decorate_url("https://b.com/") == "https://b.com/"

    @pytest.mark.asyncio
    async def test_grant_recovers_or_issues(self, manager, store):
        store.save(Identity(wai_tag="wai_stored_1", session_id="s"))
        identity = await manager.set_consent(True, "shop.example.com")
        assert identity.wai_tag == "wai_stored_1"
        assert not manager.anonymous

    def test_identify_persists_user(self, manager, store):
        manager.identity = Identity(wai_tag="wai_abc_1", session_id="s")
        manager.identify("<user@example.com>")
        assert store.load().user_id == "&lt;user@example.com&gt;"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
