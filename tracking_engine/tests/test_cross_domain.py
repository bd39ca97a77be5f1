"""Tests for handoff tokens and fingerprint correlation"""

import base64
import json
import time

import pytest

from tracking_engine.errors import DomainUnverifiedError
from tracking_engine.identity.cross_domain import (
    CrossDomainTokenVerifier,
    FingerprintCorrelator,
    build_fingerprint,
    decode_handoff_token,
    encode_handoff_token,
    record_correlation
)
from tracking_engine.models.tracking_models import (
    CrossDomainIdentity,
    DomainVerification,
    MatchMethod,
    VerificationStatus
)
from tracking_engine.router.database import DEMO_CUSTOMER, InMemoryStorage


def token_for(payload) -> str:
    return base64.b64encode(json.dumps(payload).encode()).decode()


class TestHandoffToken:

    def test_encode_decode(self):
        identity = CrossDomainIdentity(waiTag="wai_a_b", sessionId="s1", issuedAt=1700000000000)
        decoded = decode_handoff_token(encode_handoff_token(identity))
        assert decoded == identity

    def test_url_safe_alphabet_without_padding(self):
        raw = base64.urlsafe_b64encode(json.dumps({"waiTag": "w>>?", "sessionId": "s"}).encode()).decode()
        decoded = decode_handoff_token(raw.rstrip("="))
        assert decoded.waiTag == "w>>?"

    @pytest.mark.parametrize("token", [
        "",
        "not base64 at all!",
        base64.b64encode(b"\xff\xfe").decode(),
        token_for(["waiTag", "sessionId"]),
        token_for({"waiTag": "wai_a_b"}),
        token_for({"sessionId": "s1"}),
    ])
    def test_malformed_tokens(self, token):
        assert decode_handoff_token(token) is None


class TestCrossDomainTokenVerifier:

    @pytest.fixture
    def storage(self):
        return InMemoryStorage()

    @pytest.mark.asyncio
    async def test_unverified_domain_rejected_before_decoding(self, storage):
        verifier = CrossDomainTokenVerifier(storage)
        with pytest.raises(DomainUnverifiedError):
            await verifier.verify("garbage", "b.com", 1)

    @pytest.mark.asyncio
    async def test_verified_domain_returns_identity(self, storage):
        await storage.create_domain_verification(DomainVerification(
            domain="b.com", customer_id=1, token="t", status=VerificationStatus.VERIFIED
        ))
        verifier = CrossDomainTokenVerifier(storage)

        identity = await verifier.verify(token_for({"waiTag": "wai_a_b", "sessionId": "s1"}), "b.com", 1)
        assert identity.waiTag == "wai_a_b"

    @pytest.mark.asyncio
    async def test_gate_skipped_without_customer(self, storage):
        verifier = CrossDomainTokenVerifier(storage)
        identity = await verifier.verify(token_for({"waiTag": "w", "sessionId": "s"}), "b.com", None)
        assert identity is not None

    @pytest.mark.asyncio
    async def test_age_not_enforced_by_default(self, storage):
        verifier = CrossDomainTokenVerifier(storage, enforce_domain_verification=False)
        token = token_for({"waiTag": "w", "sessionId": "s", "issuedAt": 1})
        assert await verifier.verify(token, None, None) is not None

    @pytest.mark.asyncio
    async def test_age_enforced_when_configured(self, storage):
        verifier = CrossDomainTokenVerifier(
            storage,
            enforce_domain_verification=False,
            max_token_age_seconds=300
        )
        now_ms = int(time.time() * 1000)
        stale = token_for({"waiTag": "w", "sessionId": "s", "issuedAt": now_ms - 600_000})
        fresh = token_for({"waiTag": "w", "sessionId": "s", "issuedAt": now_ms})

        assert await verifier.verify(stale, None, None) is None
        assert await verifier.verify(fresh, None, None) is not None


class TestFingerprintCorrelator:

    def test_single_site_not_shared(self):
        correlator = FingerprintCorrelator()
        result = correlator.sync("a", "wai_1", "fp")
        assert result.shared is False
        assert result.waiTag == "wai_1"

    def test_second_site_shares_first_identity(self):
        correlator = FingerprintCorrelator()
        correlator.sync("a", "wai_1", "fp")
        result = correlator.sync("b", "wai_2", "fp")

        assert result.shared is True
        assert result.waiTag == "wai_1"
        assert result.sites == {"a": "wai_1", "b": "wai_2"}

    def test_same_site_twice_is_not_a_match(self):
        correlator = FingerprintCorrelator()
        correlator.sync("a", "wai_1", "fp")
        assert correlator.sync("a", "wai_3", "fp").shared is False

    def test_unknown_site_ignored(self):
        correlator = FingerprintCorrelator()
        correlator.sync("unknown", "wai_1", "fp")
        assert len(correlator) == 0

    def test_oldest_fingerprint_evicted(self):
        correlator = FingerprintCorrelator(max_entries=2)
        correlator.sync("a", "w1", "fp1")
        correlator.sync("a", "w2", "fp2")
        correlator.sync("a", "w3", "fp3")

        assert len(correlator) == 2
        assert correlator.sync("b", "w4", "fp1").shared is False

    def test_fingerprint_shape(self):
        assert build_fingerprint("Mozilla", "10.0.0.1") == "Mozilla-10.0.0.1"
        assert build_fingerprint(None, None) == "-"


class TestRecordCorrelation:

    @pytest.mark.asyncio
    async def test_audit_interaction(self):
        storage = InMemoryStorage()
        stored = await record_correlation(
            storage,
            DEMO_CUSTOMER,
            "wai_1",
            MatchMethod.FINGERPRINT,
            "shop.example.com",
            sites={"a": "wai_1", "b": "wai_2"}
        )

        assert stored.interaction_type == "cross_domain_identity_match"
        assert stored.customer_id == DEMO_CUSTOMER.id
        assert stored.subdomain == "shop"
        assert stored.context == {
            "matchedBy": "fingerprint",
            "sites": {"aWaiTag": "wai_1", "bWaiTag": "wai_2"}
        }


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
