"""
Tests for keeping the cache in line with the server.
"""

import asyncio

import pytest
import pytest_asyncio

from tikker.domain.errors import ApiError, ValidationError
from tikker.infra.api_client import KimaiApiClient
from tikker.services.cache_store import ACTIVITIES, CUSTOMERS, PROJECTS, TASKS, TIME_ENTRIES, EntityCache
from tikker.services.cache_sync import CacheSynchronizer


@pytest_asyncio.fixture
async def connected(synchronizer, client):
    await client.connect()
    return synchronizer


class TestRefresh:

    @pytest.mark.asyncio
    async def test_requires_connection(self, synchronizer, fake_server):
        with pytest.raises(ValidationError):
            await synchronizer.refresh_customers()
        assert fake_server.requests == []

    @pytest.mark.asyncio
    async def test_refresh_all(self, connected, cache):
        await connected.refresh_all()
        assert len(cache.customers) == 2
        assert len(cache.projects) == 3
        assert len(cache.activities) == 4
        assert len(cache.tasks) == 3
        assert cache.time_entries == []
        assert set(cache.last_updated) == {CUSTOMERS, PROJECTS, ACTIVITIES, TIME_ENTRIES, TASKS}

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_stale_data(self, connected, cache, fake_server):
        await connected.refresh_customers()
        stamp = cache.last_updated[CUSTOMERS]
        fake_server.data["customers"].append({"id": 7, "name": "Initech"})
        fake_server.failures[("GET", "/api/customers")] = 500

        with pytest.raises(ApiError):
            await connected.refresh_customers()

        assert [c.id for c in cache.customers] == [5, 6]
        assert cache.last_updated[CUSTOMERS] == stamp

    @pytest.mark.asyncio
    async def test_refresh_all_updates_healthy_collections(self, connected, cache, fake_server):
        fake_server.failures[("GET", "/api/tasks")] = 500

        with pytest.raises(ApiError):
            await connected.refresh_all()

        assert len(cache.customers) == 2
        assert cache.tasks == []

    @pytest.mark.asyncio
    async def test_scoped_refresh_leaves_other_customers(self, connected, cache, fake_server):
        await connected.refresh_projects()
        fake_server.data["projects"] = [p for p in fake_server.data["projects"] if p["id"] != 13]
        fake_server.data["projects"].append({"id": 21, "name": "Audit", "customer": 6})

        await connected.refresh_projects(customer_id=5)

        # Customer 6's rows were not re-fetched, so project 21 is not there yet
        assert sorted(p.id for p in cache.projects) == [12, 20]

    @pytest.mark.asyncio
    async def test_scoped_activity_refresh(self, connected, cache, fake_server):
        await connected.refresh_activities()
        fake_server.data["activities"].append({"id": 33, "name": "Design", "project": 12})

        fetched = await connected.refresh_activities(project_id=12)

        assert [a.id for a in fetched] == [30, 33]
        assert sorted(a.id for a in cache.activities) == [30, 31, 32, 33, 40]

    @pytest.mark.asyncio
    async def test_scoped_refresh_with_global_activities(self, connected, cache, fake_server):
        await connected.refresh_activities()
        fake_server.include_globals = True

        fetched = await connected.refresh_activities(project_id=12)

        assert sorted(a.id for a in fetched) == [30, 32]
        ids = [a.id for a in cache.activities]
        assert len(ids) == len(set(ids))
        assert sorted(ids) == [30, 31, 32, 40]
        assert [a.id for a in cache.filter_activities_by_project(12)].count(32) == 1

    @pytest.mark.asyncio
    async def test_refreshes_of_one_collection_run_one_after_another(self, connected, cache, fake_server):
        fake_server.delay = 0.05
        fake_server.trace.clear()

        first = asyncio.create_task(connected.refresh_customers())
        second = asyncio.create_task(connected.refresh_customers())
        await asyncio.sleep(0.01)
        assert connected.is_refreshing(CUSTOMERS)
        assert not connected.is_refreshing(PROJECTS)

        await first
        # Only the second request can see this row
        fake_server.data["customers"].append({"id": 7, "name": "Initech"})
        await second

        assert fake_server.trace == [
            ("in", "GET", "/api/customers"),
            ("out", "GET", "/api/customers"),
            ("in", "GET", "/api/customers"),
            ("out", "GET", "/api/customers"),
        ]
        assert [c.id for c in cache.customers] == [5, 6, 7]

    @pytest.mark.asyncio
    async def test_different_collections_refresh_concurrently(self, connected, fake_server):
        fake_server.delay = 0.05
        fake_server.trace.clear()

        await asyncio.gather(connected.refresh_customers(), connected.refresh_projects())

        assert [step for step, _, _ in fake_server.trace][:2] == ["in", "in"]


class TestWrites:

    @pytest.mark.asyncio
    async def test_create_uses_server_record(self, connected, cache):
        created = await connected.create(TIME_ENTRIES, {
            "begin": "2026-03-02T09:00:00", "customer": 5, "project": 12, "activity": 30,
        })
        assert cache.time_entries == [created]
        assert created.id is not None

    @pytest.mark.asyncio
    async def test_update_replaces_cached_record(self, connected, cache):
        await connected.refresh_tasks()
        await connected.update(TASKS, 71, {"status": "progress"})
        assert cache.get_task(71).status.value == "progress"

    @pytest.mark.asyncio
    async def test_failed_write_leaves_cache_untouched(self, connected, cache, fake_server):
        await connected.refresh_tasks()
        fake_server.failures[("PATCH", "/api/tasks/71")] = 422

        with pytest.raises(ApiError):
            await connected.update(TASKS, 71, {"status": "progress"})

        assert cache.get_task(71).status.value == "pending"

    @pytest.mark.asyncio
    async def test_delete(self, connected, cache):
        await connected.refresh_customers()
        await connected.delete(CUSTOMERS, 6)
        assert [c.id for c in cache.customers] == [5]

    @pytest.mark.asyncio
    async def test_writes_require_connection(self, fake_server):
        client = KimaiApiClient(fake_server.auth())
        synchronizer = CacheSynchronizer(EntityCache(), client)
        with pytest.raises(ValidationError):
            await synchronizer.delete(CUSTOMERS, 6)
        assert fake_server.requests == []
