"""Tests for the registry backends.

Every test runs against both the in-memory and the SQLite registry.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from domainmapper.core.exceptions import (
    ConflictError,
    LimitExceededError,
    NotFoundError,
    StateError,
    ValidationError,
)
from domainmapper.domains.events import MemoryDispatcher
from domainmapper.domains.manager import LifecycleManager, TenantDirectory
from domainmapper.domains.models import (
    DomainMapping,
    MappingStatus,
    SslStatus,
    TransferLogEntry,
    TransferRequest,
    TransferStatus,
)
from domainmapper.domains.registry import InMemoryRegistry, SQLiteRegistry
from domainmapper.proxy.generator import ProxyConfigGenerator


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    if request.param == "memory":
        registry = InMemoryRegistry()
    else:
        registry = SQLiteRegistry(tmp_path / "domains.db")
    yield registry
    await registry.close()


def mapping(owner_id: str, domain: str, **fields) -> DomainMapping:
    return DomainMapping(
        owner_id=owner_id,
        domain=domain,
        verification_token=f"domainmapper-verification={domain}",
        **fields,
    )


def log_entry(m: DomainMapping, new_owner_id: str) -> TransferLogEntry:
    return TransferLogEntry(
        mapping_id=m.id,
        domain=m.domain,
        old_owner_id=m.owner_id,
        new_owner_id=new_owner_id,
        actor_id="admin",
        reason="support ticket",
    )


class TestCreate:
    """Tests for insert, uniqueness and quota."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        """Test a created mapping can be read back."""
        m = mapping("42", "example.com")

        assert await store.create(m) == m.id
        stored = await store.get(m.id)

        assert stored.domain == "example.com"
        assert stored.owner_id == "42"
        assert stored.status == MappingStatus.PENDING
        assert stored.ssl_status == SslStatus.NONE
        assert stored.verification_token == m.verification_token

    @pytest.mark.asyncio
    async def test_domain_is_globally_unique(self, store):
        """Test a domain cannot be mapped twice, even by another owner."""
        await store.create(mapping("1", "example.com"))

        with pytest.raises(ConflictError):
            await store.create(mapping("2", "example.com"))

    @pytest.mark.asyncio
    async def test_quota(self, store):
        """Test the owner quota is enforced on insert."""
        await store.create(mapping("1", "a.example.com"), max_per_owner=2)
        await store.create(mapping("1", "b.example.com"), max_per_owner=2)

        with pytest.raises(LimitExceededError):
            await store.create(mapping("1", "c.example.com"), max_per_owner=2)

        assert await store.count("1") == 2
        assert await store.find_by_domain("c.example.com") is None

    @pytest.mark.asyncio
    async def test_conflict_checked_before_quota(self, store):
        """Test a taken domain reports a conflict even for an owner at quota."""
        await store.create(mapping("1", "example.com"), max_per_owner=1)

        with pytest.raises(ConflictError):
            await store.create(mapping("1", "example.com"), max_per_owner=1)

    @pytest.mark.asyncio
    async def test_concurrent_creates_admit_one(self, store):
        """Test racing inserts of one domain leave exactly one mapping."""
        results = await asyncio.gather(
            *(store.create(mapping(str(i), "race.example.com")) for i in range(10)),
            return_exceptions=True,
        )

        created = [r for r in results if isinstance(r, str)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(created) == 1
        assert len(conflicts) == 9

    @pytest.mark.asyncio
    async def test_concurrent_quota(self, store):
        """Test racing inserts by one owner never exceed the quota."""
        results = await asyncio.gather(
            *(store.create(mapping("7", f"d{i}.example.com"), max_per_owner=3) for i in range(8)),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, str)) == 3
        assert await store.count("7") == 3


class TestRead:
    """Tests for lookups and listing."""

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        """Test an unknown id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await store.get("missing")

    @pytest.mark.asyncio
    async def test_find_by_domain(self, store):
        """Test lookup by normalized domain."""
        m = mapping("1", "example.com")
        await store.create(m)

        assert (await store.find_by_domain("example.com")).id == m.id
        assert await store.find_by_domain("other.com") is None

    @pytest.mark.asyncio
    async def test_list_filters_and_order(self, store):
        """Test listing filters by owner, status and SSL and sorts newest first."""
        base = datetime(2024, 1, 1, tzinfo=UTC)
        await store.create(mapping("1", "old.example.com", created_at=base))
        await store.create(
            mapping(
                "1",
                "new.example.com",
                created_at=base + timedelta(days=2),
                status=MappingStatus.LIVE,
                ssl_status=SslStatus.AUTO,
            )
        )
        await store.create(mapping("2", "other.example.com", created_at=base + timedelta(days=1)))

        assert [m.domain for m in await store.list()] == [
            "new.example.com",
            "other.example.com",
            "old.example.com",
        ]
        assert [m.domain for m in await store.list(owner_id="1")] == [
            "new.example.com",
            "old.example.com",
        ]
        assert [m.domain for m in await store.list(status=MappingStatus.LIVE)] == [
            "new.example.com"
        ]
        assert [
            m.domain for m in await store.list(ssl_statuses=[SslStatus.AUTO, SslStatus.MANAGED_CDN])
        ] == ["new.example.com"]

    @pytest.mark.asyncio
    async def test_pagination(self, store):
        """Test page and per_page slice the ordered list."""
        base = datetime(2024, 1, 1, tzinfo=UTC)
        for i in range(5):
            await store.create(
                mapping(str(i), f"d{i}.example.com", created_at=base + timedelta(hours=i))
            )

        first = await store.list(page=1, per_page=2)
        third = await store.list(page=3, per_page=2)

        assert [m.domain for m in first] == ["d4.example.com", "d3.example.com"]
        assert [m.domain for m in third] == ["d0.example.com"]
        assert await store.list(page=4, per_page=2) == []


class TestUpdate:
    """Tests for compare-and-set updates."""

    @pytest.mark.asyncio
    async def test_update_fields(self, store):
        """Test fields are written and updated_at advances."""
        m = mapping("1", "example.com", created_at=datetime(2024, 1, 1, tzinfo=UTC))
        m = m.copy(updated_at=m.created_at)
        await store.create(m)

        updated = await store.update(m.id, status=MappingStatus.VERIFIED)

        assert updated.status == MappingStatus.VERIFIED
        assert updated.updated_at > m.updated_at
        assert (await store.get(m.id)).status == MappingStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_expected_status_mismatch(self, store):
        """Test a stale expected status raises StateError and changes nothing."""
        m = mapping("1", "example.com")
        await store.create(m)

        with pytest.raises(StateError):
            await store.update(
                m.id, expected_status=MappingStatus.VERIFIED, status=MappingStatus.APPROVED
            )

        assert (await store.get(m.id)).status == MappingStatus.PENDING

    @pytest.mark.asyncio
    async def test_concurrent_transition_applies_once(self, store):
        """Test two racing transitions from one state: exactly one wins."""
        m = mapping("1", "example.com")
        await store.create(m)

        results = await asyncio.gather(
            store.update(m.id, expected_status=MappingStatus.PENDING, status=MappingStatus.VERIFIED),
            store.update(m.id, expected_status=MappingStatus.PENDING, status=MappingStatus.VERIFIED),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, StateError)) == 1

    @pytest.mark.asyncio
    async def test_managed_fields_rejected(self, store):
        """Test the token and domain cannot be changed."""
        m = mapping("1", "example.com")
        await store.create(m)

        with pytest.raises(ValidationError):
            await store.update(m.id, verification_token="new")
        with pytest.raises(ValidationError):
            await store.update(m.id, domain="other.com")

    @pytest.mark.asyncio
    async def test_update_missing(self, store):
        """Test updating an unknown id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await store.update("missing", status=MappingStatus.VERIFIED)


class TestDelete:
    """Tests for deletion."""

    @pytest.mark.asyncio
    async def test_delete(self, store):
        """Test deletion frees the domain for a new mapping."""
        m = mapping("1", "example.com")
        await store.create(m)

        await store.delete(m.id)

        with pytest.raises(NotFoundError):
            await store.get(m.id)
        await store.create(mapping("2", "example.com"))

    @pytest.mark.asyncio
    async def test_delete_missing(self, store):
        """Test deleting an unknown id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await store.delete("missing")

    @pytest.mark.asyncio
    async def test_delete_keeps_transfer_log(self, store):
        """Test the audit log survives deletion while requests are removed."""
        m = mapping("1", "example.com")
        await store.create(m)
        await store.transfer_owner(m.id, "2", log_entry(m, "2"))
        await store.create_transfer_request(
            TransferRequest(
                mapping_id=m.id,
                domain=m.domain,
                current_owner_id="2",
                requesting_owner_id="3",
            )
        )

        await store.delete(m.id)

        assert len(await store.list_transfer_logs(m.id)) == 1
        assert await store.list_transfer_requests(mapping_id=m.id) == []


class TestTransferOwner:
    """Tests for atomic ownership transfer."""

    @pytest.mark.asyncio
    async def test_transfer_updates_owner_and_log(self, store):
        """Test the owner changes, status is kept and one log entry is written."""
        m = mapping("1", "example.com", status=MappingStatus.LIVE)
        await store.create(m)

        updated = await store.transfer_owner(m.id, "2", log_entry(m, "2"), max_per_owner=1)

        assert updated.owner_id == "2"
        assert updated.status == MappingStatus.LIVE
        assert (await store.get(m.id)).owner_id == "2"
        logs = await store.list_transfer_logs(m.id)
        assert len(logs) == 1
        assert (logs[0].old_owner_id, logs[0].new_owner_id) == ("1", "2")
        assert logs[0].actor_id == "admin"

    @pytest.mark.asyncio
    async def test_transfer_quota_rolls_back(self, store):
        """Test a recipient at quota leaves owner and log untouched."""
        m = mapping("1", "a.example.com")
        await store.create(m)
        await store.create(mapping("2", "b.example.com"))

        with pytest.raises(LimitExceededError):
            await store.transfer_owner(m.id, "2", log_entry(m, "2"), max_per_owner=1)

        assert (await store.get(m.id)).owner_id == "1"
        assert await store.list_transfer_logs() == []

    @pytest.mark.asyncio
    async def test_transfer_with_request(self, store):
        """Test the request is approved in the same transaction."""
        m = mapping("1", "example.com")
        await store.create(m)
        request = TransferRequest(
            mapping_id=m.id, domain=m.domain, current_owner_id="1", requesting_owner_id="2"
        )
        await store.create_transfer_request(request)

        await store.transfer_owner(m.id, "2", log_entry(m, "2"), request_id=request.id)

        assert (await store.get_transfer_request(request.id)).status == TransferStatus.APPROVED

    @pytest.mark.asyncio
    async def test_transfer_with_settled_request_rolls_back(self, store):
        """Test a non-pending request aborts the whole transfer."""
        m = mapping("1", "example.com")
        await store.create(m)
        request = TransferRequest(
            mapping_id=m.id, domain=m.domain, current_owner_id="1", requesting_owner_id="2"
        )
        await store.create_transfer_request(request)
        await store.update_transfer_request(request.id, status=TransferStatus.REJECTED)

        with pytest.raises(StateError):
            await store.transfer_owner(m.id, "2", log_entry(m, "2"), request_id=request.id)

        assert (await store.get(m.id)).owner_id == "1"
        assert await store.list_transfer_logs() == []

    @pytest.mark.asyncio
    async def test_transfer_expected_owner_mismatch(self, store):
        """Test a transfer from an owner who no longer holds the mapping is refused."""
        m = mapping("1", "example.com")
        await store.create(m)
        await store.transfer_owner(m.id, "2", log_entry(m, "2"), expected_owner_id="1")

        with pytest.raises(StateError):
            await store.transfer_owner(m.id, "3", log_entry(m, "3"), expected_owner_id="1")

        assert (await store.get(m.id)).owner_id == "2"
        logs = await store.list_transfer_logs(m.id)
        assert [(e.old_owner_id, e.new_owner_id) for e in logs] == [("1", "2")]

    @pytest.mark.asyncio
    async def test_log_records_stored_owner(self, store):
        """Test the log's previous owner comes from the stored mapping."""
        m = mapping("1", "example.com")
        await store.create(m)
        await store.transfer_owner(m.id, "2", log_entry(m, "2"))

        await store.transfer_owner(m.id, "3", log_entry(m, "3"))

        logs = await store.list_transfer_logs(m.id)
        assert [(e.old_owner_id, e.new_owner_id) for e in logs] == [("1", "2"), ("2", "3")]

    @pytest.mark.asyncio
    async def test_transfer_missing(self, store):
        """Test transferring an unknown mapping raises NotFoundError."""
        m = mapping("1", "example.com")

        with pytest.raises(NotFoundError):
            await store.transfer_owner(m.id, "2", log_entry(m, "2"))


class TestTransferRequests:
    """Tests for transfer request storage."""

    @pytest.mark.asyncio
    async def test_duplicate_pending_request(self, store):
        """Test one pending request per mapping and requester."""
        m = mapping("1", "example.com")
        await store.create(m)
        first = TransferRequest(
            mapping_id=m.id, domain=m.domain, current_owner_id="1", requesting_owner_id="2"
        )
        await store.create_transfer_request(first)

        with pytest.raises(ConflictError):
            await store.create_transfer_request(
                TransferRequest(
                    mapping_id=m.id, domain=m.domain, current_owner_id="1", requesting_owner_id="2"
                )
            )

        await store.update_transfer_request(first.id, status=TransferStatus.REJECTED)
        await store.create_transfer_request(
            TransferRequest(
                mapping_id=m.id, domain=m.domain, current_owner_id="1", requesting_owner_id="2"
            )
        )

    @pytest.mark.asyncio
    async def test_list_filters(self, store):
        """Test filtering by status and by either party."""
        m = mapping("1", "example.com")
        await store.create(m)
        a = TransferRequest(
            mapping_id=m.id, domain=m.domain, current_owner_id="1", requesting_owner_id="2"
        )
        b = TransferRequest(
            mapping_id=m.id, domain=m.domain, current_owner_id="1", requesting_owner_id="3"
        )
        await store.create_transfer_request(a)
        await store.create_transfer_request(b)
        await store.update_transfer_request(b.id, status=TransferStatus.REJECTED)

        pending = await store.list_transfer_requests(status=TransferStatus.PENDING)
        assert [r.id for r in pending] == [a.id]
        assert {r.id for r in await store.list_transfer_requests(owner_id="1")} == {a.id, b.id}
        assert [r.id for r in await store.list_transfer_requests(owner_id="3")] == [b.id]

    @pytest.mark.asyncio
    async def test_update_request_compare_and_set(self, store):
        """Test a settled request cannot be settled again."""
        m = mapping("1", "example.com")
        await store.create(m)
        request = TransferRequest(
            mapping_id=m.id, domain=m.domain, current_owner_id="1", requesting_owner_id="2"
        )
        await store.create_transfer_request(request)
        await store.update_transfer_request(
            request.id,
            expected_status=TransferStatus.PENDING,
            status=TransferStatus.REJECTED,
            rejection_reason="no proof",
        )

        with pytest.raises(StateError):
            await store.update_transfer_request(
                request.id, expected_status=TransferStatus.PENDING, status=TransferStatus.APPROVED
            )

        stored = await store.get_transfer_request(request.id)
        assert stored.status == TransferStatus.REJECTED
        assert stored.rejection_reason == "no proof"

    @pytest.mark.asyncio
    async def test_get_missing_request(self, store):
        """Test an unknown request id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await store.get_transfer_request("missing")


class YieldingTenants(TenantDirectory):
    """Accepts every owner but yields to the loop, so transfers interleave."""

    async def is_active(self, owner_id: str) -> bool:
        await asyncio.sleep(0)
        return True


class TestConcurrentTransfers:
    """Tests for overlapping transfers through the lifecycle manager."""

    @pytest.mark.asyncio
    async def test_request_and_direct_transfer_race(self, store, verifier, provisioner):
        """Test overlapping transfers leave one consistent chain of owners."""
        manager = LifecycleManager(
            store,
            verifier,
            provisioner,
            ProxyConfigGenerator(),
            dispatcher=MemoryDispatcher(),
            tenants=YieldingTenants(),
        )
        m = mapping("1", "example.com")
        await store.create(m)
        request = await manager.request_transfer(m.id, "2")

        results = await asyncio.gather(
            manager.approve_transfer_request(request.id),
            manager.transfer_domain(m.id, "3"),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, BaseException)]
        assert all(isinstance(f, StateError) for f in failures)
        logs = await store.list_transfer_logs(m.id)
        assert len(logs) == len(results) - len(failures) >= 1
        assert logs[0].old_owner_id == "1"
        for previous, entry in zip(logs, logs[1:]):
            assert entry.old_owner_id == previous.new_owner_id
        assert (await store.get(m.id)).owner_id == logs[-1].new_owner_id
        approved = (await store.get_transfer_request(request.id)).status == TransferStatus.APPROVED
        assert approved == any(e.new_owner_id == "2" for e in logs)


class TestSQLitePersistence:
    """Tests specific to the SQLite backend."""

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, tmp_path):
        """Test mappings persist across registry instances."""
        path = tmp_path / "domains.db"
        first = SQLiteRegistry(path)
        m = mapping("1", "example.com", ssl_expiry=datetime(2030, 1, 1, tzinfo=UTC))
        await first.create(m)
        await first.close()

        second = SQLiteRegistry(path)
        stored = await second.get(m.id)
        await second.close()

        assert stored.domain == "example.com"
        assert stored.ssl_expiry == datetime(2030, 1, 1, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_memory_database(self):
        """Test ':memory:' works with the shared connection."""
        registry = SQLiteRegistry(":memory:")
        m = mapping("1", "example.com")
        await registry.create(m)

        assert (await registry.get(m.id)).id == m.id
        await registry.close()
