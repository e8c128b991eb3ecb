"""
Entity Cache - In-memory mirror of the server's entities.

Architecture Decision: Observer Pattern (Qt Signals)
The cache announces which collection changed; views re-read what they need
instead of holding their own copies.

The cache only ever holds server-confirmed records. Filters are read-only
projections and never reshape the stored collections.
"""

import datetime
from typing import Any, Dict, List, Optional

from PySide6.QtCore import QObject, Signal

from tikker.domain.models import Activity, Customer, Project, Task, TimeEntry

CUSTOMERS = "customers"
PROJECTS = "projects"
ACTIVITIES = "activities"
TIME_ENTRIES = "time_entries"
TASKS = "tasks"

COLLECTION_NAMES = (CUSTOMERS, PROJECTS, ACTIVITIES, TIME_ENTRIES, TASKS)

# Newest-first collections; catalog collections keep server order and append
_PREPEND = {TIME_ENTRIES, TASKS}


class EntityCache(QObject):
    """
    Holds customers, projects, activities, time entries and tasks, each as an
    ordered list keyed by id, plus a last-updated stamp per collection.
    """

    changed = Signal(str)  # collection name
    cleared = Signal()

    def __init__(self):
        super().__init__()
        self._items: Dict[str, List[Any]] = {name: [] for name in COLLECTION_NAMES}
        self.last_updated: Dict[str, datetime.datetime] = {}

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def items(self, collection: str) -> List[Any]:
        """Copy of a collection, safe for callers to keep"""
        return list(self._items[collection])

    @property
    def customers(self) -> List[Customer]:
        return self.items(CUSTOMERS)

    @property
    def projects(self) -> List[Project]:
        return self.items(PROJECTS)

    @property
    def activities(self) -> List[Activity]:
        return self.items(ACTIVITIES)

    @property
    def time_entries(self) -> List[TimeEntry]:
        return self.items(TIME_ENTRIES)

    @property
    def tasks(self) -> List[Task]:
        return self.items(TASKS)

    def get(self, collection: str, entity_id: Optional[int]) -> Optional[Any]:
        if entity_id is None:
            return None
        return next((item for item in self._items[collection] if item.id == entity_id), None)

    def get_customer(self, customer_id: Optional[int]) -> Optional[Customer]:
        return self.get(CUSTOMERS, customer_id)

    def get_project(self, project_id: Optional[int]) -> Optional[Project]:
        return self.get(PROJECTS, project_id)

    def get_activity(self, activity_id: Optional[int]) -> Optional[Activity]:
        return self.get(ACTIVITIES, activity_id)

    def get_time_entry(self, entry_id: Optional[int]) -> Optional[TimeEntry]:
        return self.get(TIME_ENTRIES, entry_id)

    def get_task(self, task_id: Optional[int]) -> Optional[Task]:
        return self.get(TASKS, task_id)

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def filter_projects_by_customer(self, customer_id: Optional[int]) -> List[Project]:
        """
        Projects of one customer.

        An unset parent (None or 0) means "no filter" and returns every project.
        """
        if not customer_id:
            return self.projects
        return [p for p in self._items[PROJECTS] if p.customer == customer_id]

    def filter_activities_by_project(self, project_id: Optional[int]) -> List[Activity]:
        """
        Activities usable with one project: its own plus the global ones.

        An unset parent (None or 0) means "no filter" and returns every activity.
        """
        if not project_id:
            return self.activities
        return [a for a in self._items[ACTIVITIES] if a.project == project_id or a.is_global]

    # ------------------------------------------------------------------
    # Mutation (server-confirmed records only)
    # ------------------------------------------------------------------

    def replace(self, collection: str, items: List[Any]) -> None:
        """Replace a whole collection and stamp it"""
        self._items[collection] = list(items)
        self._stamp(collection)

    def replace_scoped(self, collection: str, parent_field: str, parent_id: int, items: List[Any]) -> None:
        """
        Replace only the rows belonging to one parent; other parents' rows
        are left untouched. Rows of the answer that belong elsewhere (global
        activities in a per-project list) replace their cached copy instead
        of being added twice.
        """
        incoming = {item.id for item in items}
        kept = [
            item for item in self._items[collection]
            if getattr(item, parent_field) != parent_id and item.id not in incoming
        ]
        self._items[collection] = kept + list(items)
        self._stamp(collection)

    def add(self, collection: str, item: Any) -> None:
        """
        Insert a newly created record. Time entries and tasks go to the front,
        catalog entities to the back. A record already present is replaced.
        """
        if self.get(collection, item.id) is not None:
            self.put(collection, item)
            return
        if collection in _PREPEND:
            self._items[collection].insert(0, item)
        else:
            self._items[collection].append(item)
        self.changed.emit(collection)

    def put(self, collection: str, item: Any) -> None:
        """Replace the record with the same id as a whole, never field by field"""
        rows = self._items[collection]
        for index, existing in enumerate(rows):
            if existing.id == item.id:
                rows[index] = item
                self.changed.emit(collection)
                return
        self.add(collection, item)

    def remove(self, collection: str, entity_id: int) -> None:
        rows = self._items[collection]
        remaining = [item for item in rows if item.id != entity_id]
        if len(remaining) != len(rows):
            self._items[collection] = remaining
            self.changed.emit(collection)

    def clear(self) -> None:
        """Forget everything, e.g. on disconnect"""
        self._items = {name: [] for name in COLLECTION_NAMES}
        self.last_updated = {}
        self.cleared.emit()

    def _stamp(self, collection: str) -> None:
        self.last_updated[collection] = datetime.datetime.now()
        self.changed.emit(collection)
