"""Tests for the tracker facade, including a round trip through the service"""

import base64
import json

import httpx
import pytest

from nylo import NyloApiClient, NyloTracker, SdkConfig
from nylo.storage import IdentityStore, MemoryBackend
from tracking_engine.models.tracking_models import TrackingConfig
from tracking_engine.router.database import InMemoryStorage
from tracking_engine.router.main import create_app, expand_batch


def encode(payload) -> str:
    return base64.b64encode(json.dumps(payload).encode()).decode()


class RecordingTransport:
    """MockTransport handler answering every endpoint with success"""

    def __init__(self, token_identity=None):
        self.requests = []
        self.token_identity = token_identity

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.requests.append((request.url.path, body, request.headers))
        if request.url.path == "/api/tracking/verify-cross-domain-token" and self.token_identity:
            return httpx.Response(200, json={"success": True, "identity": self.token_identity})
        return httpx.Response(200, json={"success": True})

    def bodies(self, path):
        return [body for p, body, _ in self.requests if p == path]


def make_tracker(handler, **config):
    config.setdefault("customer_id", "42")
    sdk_config = SdkConfig(api_url="http://tracking.test", **config)
    api = NyloApiClient(
        sdk_config.api_url,
        customer_id=sdk_config.customer_id,
        transport=httpx.MockTransport(handler)
    )
    return NyloTracker(sdk_config, store=IdentityStore(sdk_config.customer_id, local=MemoryBackend()), api=api)


class TestStart:

    @pytest.mark.asyncio
    async def test_new_session(self):
        handler = RecordingTransport()
        tracker = make_tracker(handler)

        assert await tracker.start("https://shop.example.com/products", title="Products")

        assert tracker.wai_tag.startswith("wai_")
        assert handler.bodies("/api/tracking/register-waitag")[0]["waiTag"] == tracker.wai_tag

        event = tracker.pipeline.queue[0]
        assert event["eventType"] == "page_view"
        assert event["metadata"]["initializationType"] == "new_session"
        assert event["path"] == "/products"
        assert event["mainDomain"] == "example.com"
        assert event["subdomain"] == "shop"

        await tracker.destroy()
        batch = handler.bodies("/api/track")[0]
        assert batch["events"]["common"]["waiTag"] == tracker.wai_tag
        _, _, headers = [r for r in handler.requests if r[0] == "/api/track"][0]
        assert headers["x-customer-id"] == "42"
        assert headers["x-batch-size"] == "1"

    @pytest.mark.asyncio
    async def test_token_arrival(self):
        handler = RecordingTransport(token_identity={"waiTag": "wai_origin_1", "sessionId": "origin-s"})
        tracker = make_tracker(handler)

        await tracker.start("https://blog.example.org/?nylo_token=abc", referrer="https://shop.example.com/")

        assert tracker.wai_tag == "wai_origin_1"
        assert tracker.session_id == "origin-s"
        types = [e["eventType"] for e in tracker.pipeline.queue]
        assert types == ["cross_domain_arrival", "page_view"]
        page_view = tracker.pipeline.queue[1]
        assert page_view["metadata"]["initializationType"] == "cross_domain_arrival"
        assert page_view["crossDomainContext"]["referringDomain"] == "shop.example.com"
        assert tracker.get_cross_domain_identity()["identitySynced"]
        assert tracker.get_metrics()["crossDomainSyncs"] == 1
        await tracker.destroy()

    @pytest.mark.asyncio
    async def test_unauthorized_domain_blocked(self):
        handler = RecordingTransport()
        tracker = make_tracker(handler, encrypted_security=encode({"authorizedDomains": ["shop.example.com"]}))

        assert not await tracker.start("https://evil.example.net/")
        assert handler.requests == []
        assert tracker.pipeline.queue == []
        await tracker.api.close()

    @pytest.mark.asyncio
    async def test_anonymous_mode(self):
        handler = RecordingTransport()
        tracker = make_tracker(handler, anonymous_mode=True)

        await tracker.start("https://shop.example.com/")
        tracker.identify("user-1")

        assert tracker.session_id.startswith("anon_")
        assert tracker.wai_tag is None
        assert tracker.user_id is None
        assert tracker.pipeline.queue[0]["metadata"]["initializationType"] == "anonymous_session"
        assert handler.bodies("/api/tracking/register-waitag") == []
        assert tracker.decorate_url("https://b.com/") == "https://b.com/"
        await tracker.destroy()


class TestEvents:

    @pytest.mark.asyncio
    async def test_default_features_gate_events(self):
        tracker = make_tracker(RecordingTransport())
        await tracker.start("https://shop.example.com/")

        assert tracker.click({"tag": "button", "id": "buy", "text": "Buy now"})
        assert not tracker.conversion("purchase", 19.99)
        assert not tracker.track("signup")
        await tracker.destroy()

    @pytest.mark.asyncio
    async def test_configured_features(self):
        features = encode({"features": ["trackCustomEvents", "trackErrors", "trackConversions"]})
        tracker = make_tracker(RecordingTransport(), encrypted_config=features)
        await tracker.start("https://shop.example.com/")

        assert tracker.track("<signup>", {"plan": "<b>pro</b>"})
        custom = tracker.pipeline.queue[-1]
        assert custom["eventType"] == "custom"
        assert custom["metadata"]["customEventName"] == "&lt;signup&gt;"
        assert custom["metadata"]["customEventData"]["plan"] == "&lt;b&gt;pro&lt;/b&gt;"

        try:
            raise RuntimeError("checkout failed")
        except RuntimeError as e:
            assert tracker.error(e, {"step": "payment"})
        error = tracker.pipeline.queue[-1]
        assert error["metadata"]["errorMessage"] == "checkout failed"
        assert "RuntimeError" in error["metadata"]["errorStack"]

        assert tracker.conversion("purchase", 19.99)
        assert not tracker.page_view()
        assert tracker.get_features()["track_conversions"]
        await tracker.destroy()

    @pytest.mark.asyncio
    async def test_consent_withdrawal(self):
        tracker = make_tracker(RecordingTransport())
        await tracker.start("https://shop.example.com/")

        await tracker.set_consent(False)

        assert tracker.get_consent() == {"analytics": False}
        assert tracker.wai_tag is None
        assert tracker.session_id.startswith("anon_")
        assert tracker.store.load() is None

        await tracker.set_consent(True)
        assert tracker.wai_tag.startswith("wai_")
        await tracker.destroy()

    @pytest.mark.asyncio
    async def test_withdrawn_tag_not_applied_to_later_events(self):
        handler = RecordingTransport()
        tracker = make_tracker(handler)
        await tracker.start("https://shop.example.com/")
        tag = tracker.wai_tag

        await tracker.set_consent(False)
        tracker.page_view()
        await tracker.destroy()

        events = expand_batch(handler.bodies("/api/track")[0])
        assert [e["waiTag"] for e in events] == [tag, None]
        assert events[1]["sessionId"].startswith("anon_")
        assert events[0]["sessionId"] != events[1]["sessionId"]

    @pytest.mark.asyncio
    async def test_session_snapshot(self):
        tracker = make_tracker(RecordingTransport())
        await tracker.start("https://shop.example.com/")
        tracker.identify("user-7")

        session = tracker.get_session()
        assert session["userId"] == "user-7"
        assert session["customerId"] == "42"
        assert session["queueSize"] == 1
        await tracker.destroy()


class TestServiceRoundTrip:

    @pytest.mark.asyncio
    async def test_identity_follows_link_across_domains(self):
        storage = InMemoryStorage()
        app = create_app(config=TrackingConfig(enforce_domain_verification=False), storage=storage)

        def tracker_for():
            config = SdkConfig(customer_id="1", api_url="http://tracking.test")
            api = NyloApiClient(config.api_url, customer_id="1", transport=httpx.ASGITransport(app=app))
            return NyloTracker(config, api=api)

        shop = tracker_for()
        await shop.start("https://shop.example.com/")
        link = shop.decorate_url("https://blog.example.org/welcome")

        blog = tracker_for()
        await blog.start(link, referrer="https://shop.example.com/")

        assert blog.wai_tag == shop.wai_tag
        assert blog.identity.identity_synced

        await shop.destroy()
        await blog.destroy()

        page_views = [i for i in storage.interactions if i.interaction_type == "page_view"]
        assert {i.domain for i in page_views} == {"shop.example.com", "blog.example.org"}
        assert {i.context["waiTag"] for i in page_views} == {shop.wai_tag}
        assert any(i.interaction_type == "cross_domain_identity_match" for i in storage.interactions)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
