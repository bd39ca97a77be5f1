"""Shared fixtures for the tracking service tests"""

from typing import Dict, List

import pytest
from fastapi.testclient import TestClient

from tracking_engine.errors import DnsLookupError
from tracking_engine.models.tracking_models import Interaction, TrackingConfig
from tracking_engine.router.database import InMemoryStorage
from tracking_engine.router.main import create_app
from tracking_engine.verification.dns_verifier import DnsVerifier


class StaticDnsVerifier(DnsVerifier):
    """Answers TXT lookups from a dict instead of the network"""

    def __init__(self):
        super().__init__(timeout=1.0)
        self.records: Dict[str, List[str]] = {}
        self.errors: Dict[str, DnsLookupError] = {}
        self.lookups: List[str] = []

    def publish(self, domain: str, value: str):
        self.records.setdefault(domain, []).append(value)

    async def lookup_txt(self, domain: str) -> List[str]:
        self.lookups.append(domain)
        if domain in self.errors:
            raise self.errors[domain]
        if domain not in self.records:
            raise DnsLookupError(f"No TXT records found for {domain}", "no_records", domain)
        return list(self.records[domain])


class FailingStorage(InMemoryStorage):
    """Storage whose interaction writes always fail"""

    async def create_interaction(self, interaction: Interaction) -> Interaction:
        raise RuntimeError("database unavailable")


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def dns_verifier():
    return StaticDnsVerifier()


@pytest.fixture
def config():
    return TrackingConfig()


@pytest.fixture
def app(config, storage, dns_verifier):
    return create_app(config=config, storage=storage, dns_verifier=dns_verifier)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
