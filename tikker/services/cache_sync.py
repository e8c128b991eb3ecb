"""
Cache Synchronizer - Keeps the EntityCache in line with the server.

Writes go to the server first; the cache is patched with the record the server
answered with, never with the payload we sent. Refreshes of one collection are
serialized so a slow, older response cannot overwrite a newer one; different
collections refresh concurrently.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from tikker.domain.errors import ValidationError
from tikker.domain.models import Activity, Customer, Project, Task, TimeEntry
from tikker.infra.api_client import KimaiApiClient, Payload
from tikker.services.cache_store import (
    ACTIVITIES,
    COLLECTION_NAMES,
    CUSTOMERS,
    PROJECTS,
    TASKS,
    TIME_ENTRIES,
    EntityCache,
)

logger = logging.getLogger(__name__)


class CacheSynchronizer:
    """
    Fetches collections into the cache and applies confirmed writes.

    Errors are never swallowed: a failed refresh leaves the previous contents
    in place (stale but available) and re-raises to the caller.
    """

    def __init__(self, cache: EntityCache, client: KimaiApiClient):
        self.cache = cache
        self.client = client
        self._locks: Dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in COLLECTION_NAMES}

    def _require_connection(self) -> None:
        if not self.client.is_connected:
            raise ValidationError("Not connected to a server")

    def is_refreshing(self, collection: str) -> bool:
        return self._locks[collection].locked()

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self, collection: str) -> List[Any]:
        """Reload one whole collection"""
        loaders = {
            CUSTOMERS: self.refresh_customers,
            PROJECTS: self.refresh_projects,
            ACTIVITIES: self.refresh_activities,
            TIME_ENTRIES: self.refresh_time_entries,
            TASKS: self.refresh_tasks,
        }
        return await loaders[collection]()

    async def refresh_customers(self) -> List[Customer]:
        async with self._locks[CUSTOMERS]:
            self._require_connection()
            customers = await self._fetch(CUSTOMERS, self.client.get_customers())
            self.cache.replace(CUSTOMERS, customers)
            return customers

    async def refresh_projects(self, customer_id: Optional[int] = None) -> List[Project]:
        """
        Reload projects. With a customer id only that customer's rows are
        replaced.
        """
        async with self._locks[PROJECTS]:
            self._require_connection()
            projects = await self._fetch(PROJECTS, self.client.get_projects(customer_id))
            if customer_id:
                self.cache.replace_scoped(PROJECTS, "customer", customer_id, projects)
            else:
                self.cache.replace(PROJECTS, projects)
            return projects

    async def refresh_activities(self, project_id: Optional[int] = None) -> List[Activity]:
        """
        Reload activities. With a project id only that project's rows are
        replaced.
        """
        async with self._locks[ACTIVITIES]:
            self._require_connection()
            activities = await self._fetch(ACTIVITIES, self.client.get_activities(project_id))
            if project_id:
                self.cache.replace_scoped(ACTIVITIES, "project", project_id, activities)
            else:
                self.cache.replace(ACTIVITIES, activities)
            return activities

    async def refresh_time_entries(self, **filters) -> List[TimeEntry]:
        async with self._locks[TIME_ENTRIES]:
            self._require_connection()
            page = await self._fetch(TIME_ENTRIES, self.client.get_time_entries(**filters))
            self.cache.replace(TIME_ENTRIES, page.data)
            return page.data

    async def refresh_tasks(self, **filters) -> List[Task]:
        async with self._locks[TASKS]:
            self._require_connection()
            page = await self._fetch(TASKS, self.client.get_tasks(**filters))
            self.cache.replace(TASKS, page.data)
            return page.data

    async def refresh_catalog(self) -> None:
        """Customers, projects and activities; what starting a time entry needs"""
        await self._gather(CUSTOMERS, PROJECTS, ACTIVITIES)

    async def refresh_all(self) -> None:
        await self._gather(*COLLECTION_NAMES)

    async def _gather(self, *collections: str) -> None:
        """Refresh concurrently; after all settle, raise the first failure"""
        results = await asyncio.gather(
            *(self.refresh(name) for name in collections),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _fetch(self, collection: str, call):
        try:
            return await call
        except Exception as e:
            logger.warning(f"Refreshing {collection} failed, keeping cached data: {e}")
            raise

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, collection: str, data: Payload) -> Any:
        self._require_connection()
        created = await self.client.create_entity(collection, data)
        self.cache.add(collection, created)
        return created

    async def update(self, collection: str, entity_id: int, data: Payload) -> Any:
        self._require_connection()
        updated = await self.client.update_entity(collection, entity_id, data)
        self.cache.put(collection, updated)
        return updated

    async def delete(self, collection: str, entity_id: int) -> None:
        self._require_connection()
        await self.client.delete_entity(collection, entity_id)
        self.cache.remove(collection, entity_id)

