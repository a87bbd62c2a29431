"""Tests for domainmapper CLI."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from domainmapper import __version__
from domainmapper.cli import main
from domainmapper.domains.verification import ChallengeVerifier
from tests.fakes import FakeResolver, cert_info


@pytest.fixture
def dns() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def cli(tmp_path, dns):
    """Invoke the CLI against a fresh SQLite file with fake DNS."""
    runner = CliRunner()
    db = str(tmp_path / "domains.db")
    verifier = ChallengeVerifier(dns, {"192.0.2.1": ("Test", dns)})

    def invoke(*args: str, input: str | None = None):
        with patch.object(ChallengeVerifier, "from_settings", return_value=verifier):
            return runner.invoke(main, ["--db", db, *args], input=input)

    return invoke


def add_domain(cli, owner_id: str, domain: str) -> dict:
    result = cli("domain", "add", owner_id, domain, "--json")
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


class TestCLIBasics:
    """Basic CLI tests."""

    def test_help(self):
        """Test --help lists the command groups."""
        result = CliRunner().invoke(main, ["--help"])

        assert result.exit_code == 0
        for group in ("domain", "transfer", "cert", "proxy", "health", "config"):
            assert group in result.output

    def test_version_command(self):
        """Test version command."""
        result = CliRunner().invoke(main, ["version"])

        assert result.exit_code == 0
        assert __version__ in result.output


class TestDomainCommands:
    """Tests for the domain command group."""

    def test_add_prints_instructions(self, cli):
        """Test add shows the TXT record to publish."""
        result = cli("domain", "add", "42", "https://www.Example.com/")

        assert result.exit_code == 0
        assert "Domain registered successfully!" in result.output
        assert "example.com" in result.output
        assert "domainmapper-verification=" in result.output

    def test_add_json(self, cli):
        """Test add --json returns the mapping and instructions."""
        data = add_domain(cli, "42", "https://www.Example.com/")

        assert data["mapping"]["domain"] == "example.com"
        assert data["mapping"]["status"] == "pending"
        assert data["instructions"]["record_value"] == data["mapping"]["verification_token"]

    def test_add_duplicate(self, cli):
        """Test a conflict prints an error panel and exits 1."""
        add_domain(cli, "1", "example.com")

        result = cli("domain", "add", "2", "example.com")

        assert result.exit_code == 1
        assert "conflict" in result.output

    def test_add_invalid(self, cli):
        """Test a malformed domain exits 1."""
        result = cli("domain", "add", "1", "not_a_domain")

        assert result.exit_code == 1
        assert "validation_error" in result.output

    def test_verify_then_approve(self, cli, dns):
        """Test the verify, approve and live commands."""
        data = add_domain(cli, "42", "example.com")
        mapping_id = data["mapping"]["id"]

        pending = cli("domain", "verify", mapping_id)
        assert pending.exit_code == 1
        assert "Verification incomplete" in pending.output

        dns.txt["example.com"] = [data["mapping"]["verification_token"]]
        verified = cli("domain", "verify", mapping_id)
        assert verified.exit_code == 0
        assert "Domain verified successfully!" in verified.output

        approved = cli("domain", "approve", mapping_id, "--upstream", "http://shop:9000")
        assert approved.exit_code == 0
        assert "proxy_pass http://shop:9000;" in approved.output

        live = cli("domain", "live", mapping_id)
        assert live.exit_code == 0
        assert "Domain live:" in live.output

        shown = cli("domain", "show", "example.com", "--json")
        assert json.loads(shown.stdout)["status"] == "live"

    def test_approve_pending_fails(self, cli):
        """Test an invalid transition exits 1 with the state error code."""
        data = add_domain(cli, "42", "example.com")

        result = cli("domain", "approve", data["mapping"]["id"])

        assert result.exit_code == 1
        assert "invalid_state" in result.output

    def test_reject(self, cli, dns):
        """Test reject records the reason."""
        data = add_domain(cli, "42", "example.com")
        dns.txt["example.com"] = [data["mapping"]["verification_token"]]
        cli("domain", "verify", data["mapping"]["id"])

        result = cli("domain", "reject", data["mapping"]["id"], "--reason", "Trademark dispute")

        assert result.exit_code == 0
        assert "Trademark dispute" in result.output

    def test_list(self, cli):
        """Test list shows a table and filters by owner."""
        add_domain(cli, "1", "a.example.com")
        add_domain(cli, "2", "b.example.com")

        table = cli("domain", "list")
        assert table.exit_code == 0
        assert "a.example.com" in table.output
        assert "b.example.com" in table.output

        filtered = cli("domain", "list", "--owner", "2", "--json")
        assert [m["domain"] for m in json.loads(filtered.stdout)] == ["b.example.com"]

    def test_list_empty(self, cli):
        """Test an empty registry."""
        result = cli("domain", "list")

        assert result.exit_code == 0
        assert "No domains registered" in result.output

    def test_remove_with_confirmation(self, cli):
        """Test remove asks first and can be cancelled."""
        data = add_domain(cli, "1", "example.com")

        cancelled = cli("domain", "remove", data["mapping"]["id"], input="n\n")
        assert "Cancelled" in cancelled.output

        removed = cli("domain", "remove", data["mapping"]["id"], "-y")
        assert removed.exit_code == 0

        missing = cli("domain", "show", data["mapping"]["id"])
        assert missing.exit_code == 1
        assert "not_found" in missing.output

    def test_show_unknown_domain(self, cli):
        """Test show by domain name for an unmapped domain."""
        result = cli("domain", "show", "nowhere.example.com")

        assert result.exit_code == 1
        assert "Domain not found" in result.output

    def test_propagation_json(self, cli, dns):
        """Test propagation output as JSON."""
        data = add_domain(cli, "1", "example.com")
        dns.txt["example.com"] = [data["mapping"]["verification_token"]]

        result = cli("domain", "propagation", data["mapping"]["id"], "--json")

        assert result.exit_code == 0
        assert json.loads(result.stdout)["percentage"] == 100.0

    def test_propagation_shows_dns_provider(self, cli, dns):
        """Test the table output names the DNS host."""
        data = add_domain(cli, "1", "example.com")
        dns.ns["example.com"] = ["ana.ns.cloudflare.com"]

        result = cli("domain", "propagation", data["mapping"]["id"])

        assert result.exit_code == 0
        assert "DNS provider: cloudflare" in result.output


class TestTransferCommands:
    """Tests for ownership transfer commands."""

    def test_direct_transfer(self, cli):
        """Test a direct transfer and the log listing."""
        data = add_domain(cli, "1", "example.com")

        result = cli("domain", "transfer", data["mapping"]["id"], "2", "--actor", "admin")
        assert result.exit_code == 0
        assert "owner 2" in result.output

        log = cli("transfer", "list", "--log", "--json")
        entries = json.loads(log.stdout)
        assert [(e["old_owner_id"], e["new_owner_id"]) for e in entries] == [("1", "2")]

    def test_request_approve(self, cli):
        """Test a request can be listed and approved."""
        data = add_domain(cli, "1", "example.com")

        requested = cli("transfer", "request", data["mapping"]["id"], "2", "--reason", "bought it")
        assert requested.exit_code == 0

        pending = json.loads(cli("transfer", "list", "--status", "pending", "--json").stdout)
        assert len(pending) == 1

        approved = cli("transfer", "approve", pending[0]["id"], "--actor", "admin")
        assert approved.exit_code == 0
        assert "Transfer approved" in approved.output

    def test_request_reject(self, cli):
        """Test a rejected request cannot be rejected twice."""
        data = add_domain(cli, "1", "example.com")
        cli("transfer", "request", data["mapping"]["id"], "2")
        request_id = json.loads(cli("transfer", "list", "--json").stdout)[0]["id"]

        first = cli("transfer", "reject", request_id, "--reason", "no proof")
        second = cli("transfer", "reject", request_id)

        assert first.exit_code == 0
        assert second.exit_code == 1


class TestCertCommands:
    """Tests for certificate commands."""

    def test_inspect(self, cli):
        """Test inspect prints issuer and days remaining."""
        with patch(
            "domainmapper.certificates.inspector.CertificateInspector.inspect",
            return_value=cert_info("example.com", 42),
        ):
            result = cli("cert", "inspect", "example.com")

        assert result.exit_code == 0
        assert "Let's Encrypt" in result.output
        assert "42" in result.output

    def test_setup_manual(self, cli, dns):
        """Test manual setup on a verified mapping."""
        data = add_domain(cli, "1", "example.com")
        dns.txt["example.com"] = [data["mapping"]["verification_token"]]
        cli("domain", "verify", data["mapping"]["id"])

        result = cli("cert", "setup", data["mapping"]["id"], "manual", "--json")

        assert result.exit_code == 0
        assert json.loads(result.stdout)["ssl_status"] == "manual"

    def test_setup_requires_verified(self, cli):
        """Test setup on a pending mapping exits 1."""
        data = add_domain(cli, "1", "example.com")

        result = cli("cert", "setup", data["mapping"]["id"], "manual")

        assert result.exit_code == 1

    def test_sweep_empty(self, cli):
        """Test a sweep with nothing to check."""
        result = cli("cert", "sweep", "--json")

        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"checked": 0, "expiring": [], "unreachable": []}


class TestProxyCommands:
    """Tests for proxy config output."""

    def test_generate_nginx(self, cli, dns):
        """Test nginx-only output for an approved mapping."""
        data = add_domain(cli, "1", "example.com")
        dns.txt["example.com"] = [data["mapping"]["verification_token"]]
        cli("domain", "verify", data["mapping"]["id"])
        cli("domain", "approve", data["mapping"]["id"])

        result = cli("proxy", "generate", data["mapping"]["id"], "--server", "nginx")

        assert result.exit_code == 0
        assert "server_name example.com;" in result.stdout
        assert "VirtualHost" not in result.stdout

    def test_generate_pending_fails(self, cli):
        """Test a pending mapping gets no proxy config."""
        data = add_domain(cli, "1", "example.com")

        result = cli("proxy", "generate", data["mapping"]["id"])

        assert result.exit_code == 1
        assert "invalid_state" in result.output


class TestConfigCommands:
    """Tests for config commands."""

    def test_show_json_section(self, cli):
        """Test a single section as JSON."""
        result = cli("config", "show", "--section", "registry", "--json")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert list(data) == ["registry"]
        assert data["registry"]["path"].endswith("domains.db")

    def test_show_unknown_section(self, cli):
        """Test an unknown section exits 1."""
        result = cli("config", "show", "--section", "tunnels")

        assert result.exit_code == 1

    def test_export(self, cli):
        """Test export prints shell assignments."""
        result = cli("config", "export")

        assert result.exit_code == 0
        assert "export DOMAINMAPPER_REGISTRY_MAX_DOMAINS_PER_OWNER='1'" in result.output

    def test_validate_warns_for_memory_registry(self):
        """Test validate reports a consistency warning."""
        result = CliRunner().invoke(main, ["--db", ":memory:", "config", "validate"])

        assert result.exit_code == 0
        assert "Configuration is valid (with warnings)" in result.output

    def test_invalid_config_file(self, tmp_path):
        """Test an unknown section in the config file exits 1."""
        path = tmp_path / "domainmapper.yaml"
        path.write_text("tunnels:\n  port: 8000\n")

        result = CliRunner().invoke(main, ["--config", str(path), "config", "show"])

        assert result.exit_code == 1
        assert "invalid_config" in result.output
