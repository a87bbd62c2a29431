"""Tests for the HTTP API."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from domainmapper.api import create_app
from domainmapper.bootstrap import build_components
from domainmapper.core.config import load_settings
from domainmapper.domains.events import MemoryDispatcher
from domainmapper.domains.registry import InMemoryRegistry
from domainmapper.domains.verification import ChallengeVerifier
from tests.fakes import FakeInspector, FakeResolver, cert_info


@pytest.fixture
def dns() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def events() -> MemoryDispatcher:
    return MemoryDispatcher()


@pytest.fixture
def client(dns, events):
    settings = load_settings(registry={"max_domains_per_owner": 2})
    components = build_components(
        settings,
        registry=InMemoryRegistry(),
        verifier=ChallengeVerifier(dns, {"192.0.2.1": ("Test", dns)}),
        dispatcher=events,
    )
    components.provisioner.inspector = FakeInspector({"example.com": cert_info("example.com", 20)})
    with TestClient(create_app(components)) as client:
        yield client


def add(client, owner_id: str = "42", domain: str = "https://www.Example.com/") -> dict:
    response = client.post("/domains", json={"owner_id": owner_id, "domain": domain})
    assert response.status_code == 201, response.text
    return response.json()


def verify(client, dns, data: dict) -> None:
    dns.txt[data["mapping"]["domain"]] = [data["mapping"]["verification_token"]]
    response = client.post(f"/domains/{data['mapping']['id']}/verify")
    assert response.json()["verified"] is True


class TestDomainRoutes:
    """Tests for /domains."""

    def test_add(self, client):
        """Test registration returns the mapping and TXT instructions."""
        data = add(client)

        assert data["mapping"]["domain"] == "example.com"
        assert data["mapping"]["status"] == "pending"
        assert data["instructions"]["record_type"] == "TXT"

    def test_conflict(self, client):
        """Test a duplicate domain returns 409 with an error body."""
        add(client, "1")

        response = client.post("/domains", json={"owner_id": "2", "domain": "example.com"})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_quota(self, client):
        """Test the configured quota returns 403."""
        add(client, "1", "a.example.com")
        add(client, "1", "b.example.com")

        response = client.post("/domains", json={"owner_id": "1", "domain": "c.example.com"})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "limit_exceeded"

    def test_invalid_domain(self, client):
        """Test a malformed domain returns 422."""
        response = client.post("/domains", json={"owner_id": "1", "domain": "bad..domain"})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_get_and_missing(self, client):
        """Test fetch by id and 404 for unknown ids."""
        data = add(client)

        assert client.get(f"/domains/{data['mapping']['id']}").json()["domain"] == "example.com"
        response = client.get("/domains/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_list(self, client):
        """Test listing with owner filter and paging metadata."""
        add(client, "1", "a.example.com")
        add(client, "2", "b.example.com")

        body = client.get("/domains", params={"owner_id": "2"}).json()

        assert [m["domain"] for m in body["items"]] == ["b.example.com"]
        assert body["page"] == 1

    def test_list_bad_page(self, client):
        """Test a zero page returns 422."""
        assert client.get("/domains", params={"page": 0}).status_code == 422

    def test_lifecycle(self, client, dns, events):
        """Test verify, approve and live over HTTP."""
        data = add(client)
        mapping_id = data["mapping"]["id"]

        failed = client.post(f"/domains/{mapping_id}/verify").json()
        assert failed["verified"] is False

        verify(client, dns, data)

        approved = client.post(
            f"/domains/{mapping_id}/approve", json={"upstream_url": "http://shop:9000"}
        ).json()
        assert approved["mapping"]["status"] == "approved"
        assert "proxy_pass http://shop:9000;" in approved["proxy"]["nginx"]

        live = client.post(f"/domains/{mapping_id}/live").json()
        assert live["status"] == "live"
        assert events.names() == ["mapping_created", "verified", "approved"]

    def test_approve_pending(self, client):
        """Test an invalid transition returns 409."""
        data = add(client)

        response = client.post(f"/domains/{data['mapping']['id']}/approve")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "invalid_state"

    def test_reject(self, client, dns):
        """Test rejection with a reason."""
        data = add(client)
        verify(client, dns, data)

        response = client.post(
            f"/domains/{data['mapping']['id']}/reject", json={"reason": "Trademark dispute"}
        )

        assert response.json()["status"] == "rejected"
        assert response.json()["rejection_reason"] == "Trademark dispute"

    def test_delete(self, client):
        """Test deletion returns 204 and the mapping is gone."""
        data = add(client)

        assert client.delete(f"/domains/{data['mapping']['id']}").status_code == 204
        assert client.get(f"/domains/{data['mapping']['id']}").status_code == 404

    def test_instructions_and_propagation(self, client, dns):
        """Test the read-only DNS endpoints."""
        data = add(client)
        mapping_id = data["mapping"]["id"]

        instructions = client.get(f"/domains/{mapping_id}/instructions").json()
        assert instructions["record_value"] == data["mapping"]["verification_token"]

        dns.txt["example.com"] = [data["mapping"]["verification_token"]]
        propagation = client.get(f"/domains/{mapping_id}/propagation").json()
        assert propagation["matched_resolvers"] == 1
        assert propagation["dns_provider"] == "unknown"

    def test_proxy_config(self, client, dns):
        """Test proxy config with an explicit upstream once approved."""
        data = add(client)
        verify(client, dns, data)
        client.post(f"/domains/{data['mapping']['id']}/approve")

        body = client.get(
            f"/domains/{data['mapping']['id']}/proxy-config",
            params={"upstream_url": "http://10.0.0.5:8000"},
        ).json()

        assert "proxy_pass http://10.0.0.5:8000;" in body["nginx"]

    def test_proxy_config_pending(self, client):
        """Test a pending mapping returns 409."""
        data = add(client)

        response = client.get(f"/domains/{data['mapping']['id']}/proxy-config")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "invalid_state"


class TestCertificateRoutes:
    """Tests for certificate endpoints."""

    def test_status(self, client):
        """Test status reports the probe result."""
        data = add(client)

        body = client.get(f"/domains/{data['mapping']['id']}/certificate").json()

        assert body["certificate"]["days_remaining"] == 20
        assert body["setup_required"] is True

    def test_setup_manual(self, client, dns):
        """Test explicit manual setup."""
        data = add(client)
        verify(client, dns, data)

        body = client.post(
            f"/domains/{data['mapping']['id']}/certificate", json={"provider": "manual"}
        ).json()

        assert body["provider"] == "manual"
        assert body["ssl_status"] == "manual"

    def test_setup_unknown_provider(self, client, dns):
        """Test an unknown provider returns 422."""
        data = add(client)
        verify(client, dns, data)

        response = client.post(
            f"/domains/{data['mapping']['id']}/certificate", json={"provider": "selfsigned"}
        )

        assert response.status_code == 422


class TestTransferRoutes:
    """Tests for transfers and transfer requests."""

    def test_direct_transfer_and_log(self, client):
        """Test a direct transfer appears in the log."""
        data = add(client, "1")
        mapping_id = data["mapping"]["id"]

        moved = client.post(
            f"/domains/{mapping_id}/transfer", json={"new_owner_id": "2", "actor_id": "admin"}
        ).json()
        assert moved["owner_id"] == "2"

        log = client.get(f"/domains/{mapping_id}/transfers").json()["items"]
        assert [(e["old_owner_id"], e["new_owner_id"]) for e in log] == [("1", "2")]

    def test_request_flow(self, client):
        """Test requesting, listing and approving a transfer."""
        data = add(client, "1")

        created = client.post(
            "/transfer-requests",
            json={"mapping_id": data["mapping"]["id"], "requester_id": "2", "reason": "bought it"},
        )
        assert created.status_code == 201
        request_id = created.json()["id"]

        pending = client.get("/transfer-requests", params={"status": "pending"}).json()["items"]
        assert [r["id"] for r in pending] == [request_id]

        approved = client.post(f"/transfer-requests/{request_id}/approve", json={"actor_id": "a"})
        assert approved.json()["owner_id"] == "2"

        again = client.post(f"/transfer-requests/{request_id}/approve")
        assert again.status_code == 409

    def test_reject_request(self, client):
        """Test rejecting a request."""
        data = add(client, "1")
        request_id = client.post(
            "/transfer-requests", json={"mapping_id": data["mapping"]["id"], "requester_id": "2"}
        ).json()["id"]

        body = client.post(
            f"/transfer-requests/{request_id}/reject", json={"rejection_reason": "no proof"}
        ).json()

        assert body["status"] == "rejected"
        assert body["rejection_reason"] == "no proof"


class TestServiceRoutes:
    """Tests for health and metrics."""

    def test_health(self, client):
        """Test the liveness endpoint."""
        assert client.get("/health").json()["status"] == "ok"

    def test_metrics(self, client):
        """Test Prometheus exposition."""
        add(client)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "domainmapper_lifecycle_transitions_total" in response.text
