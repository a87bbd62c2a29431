"""Shared fixtures: an in-memory registry and DNS/TLS fakes."""

from __future__ import annotations

import pytest

from domainmapper.certificates.provisioner import CertificateProvisioner
from domainmapper.core.config import CertificateSettings
from domainmapper.domains.events import MemoryDispatcher
from domainmapper.domains.manager import LifecycleManager
from domainmapper.domains.registry import InMemoryRegistry
from domainmapper.domains.verification import ChallengeVerifier
from domainmapper.proxy.generator import ProxyConfigGenerator
from tests.fakes import FakeInspector, FakeResolver


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def verifier(resolver: FakeResolver) -> ChallengeVerifier:
    return ChallengeVerifier(resolver, {"192.0.2.1": ("Test", resolver)})


@pytest.fixture
def registry() -> InMemoryRegistry:
    return InMemoryRegistry()


@pytest.fixture
def dispatcher() -> MemoryDispatcher:
    return MemoryDispatcher()


@pytest.fixture
def inspector() -> FakeInspector:
    return FakeInspector()


@pytest.fixture
def cert_settings() -> CertificateSettings:
    return CertificateSettings(
        certs_dir="/etc/ssl/test",
        acme_contact_email="ops@example.net",
        acme_client_paths=[],
    )


@pytest.fixture
def provisioner(registry, inspector, verifier, dispatcher, cert_settings) -> CertificateProvisioner:
    return CertificateProvisioner(registry, inspector, verifier, dispatcher, cert_settings)


@pytest.fixture
def manager(registry, verifier, provisioner, dispatcher) -> LifecycleManager:
    return LifecycleManager(
        registry,
        verifier,
        provisioner,
        ProxyConfigGenerator("/etc/ssl/test"),
        dispatcher=dispatcher,
        max_domains_per_owner=1,
        default_upstream="http://127.0.0.1:8080",
    )
