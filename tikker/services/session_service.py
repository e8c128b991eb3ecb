"""
Session Manager - Turns user intents into timer, server and cache updates.

Architecture Decision: Single orchestrator
Only this service decides whether a failure is shown to the user or leaves
state as it was. The gateway and the synchronizer always raise; here a failed
stop keeps the timer running so no tracked time is lost, and the user simply
retries.

A time entry and a task are independent bindings that share the one timer.
Each binding remembers the timer total at the moment it was bound, so each
gets its own active-time duration.
"""

import asyncio
import datetime
import logging
from typing import List, Optional, Set, Tuple, Union

from PySide6.QtCore import QObject, QTimer, Signal
from sqlalchemy.exc import SQLAlchemyError

from tikker.domain.errors import ApiError, TikkerError, ValidationError
from tikker.domain.models import (
    AuthConfig,
    BindingKind,
    CurrentTask,
    CurrentTimeEntry,
    Profile,
    RecentSession,
    SessionEvent,
    SessionEventType,
    SessionState,
    Task,
    TaskStatus,
    TimeEntry,
    TimerBinding,
    TimerHistory,
    TimerStatus,
)
from tikker.infra.api_client import KimaiApiClient
from tikker.infra.config import Settings
from tikker.infra.repository import HistoryRepository, SessionRepository, TimerStateRepository
from tikker.services.cache_store import TASKS, TIME_ENTRIES
from tikker.services.cache_sync import CacheSynchronizer
from tikker.services.timer_service import TimerService, format_time

logger = logging.getLogger(__name__)

MAX_EVENTS = 100
MAX_RECENT_SESSIONS = 10
SESSION_MAX_AGE = datetime.timedelta(hours=24)

Binding = Union[CurrentTimeEntry, CurrentTask]


class SessionManager(QObject):
    """
    Owns the SessionState: who is logged in, and which time entry and/or task
    the timer is bound to.
    """

    # Signals
    session_changed = Signal()
    error_occurred = Signal(str)

    def __init__(self, timer: TimerService, synchronizer: CacheSynchronizer, client: KimaiApiClient,
                 session_repo: Optional[SessionRepository] = None,
                 timer_repo: Optional[TimerStateRepository] = None,
                 history_repo: Optional[HistoryRepository] = None,
                 settings: Optional[Settings] = None):
        super().__init__()
        self.timer = timer
        self.synchronizer = synchronizer
        self.cache = synchronizer.cache
        self.client = client
        self.session_repo = session_repo
        self.timer_repo = timer_repo
        self.history_repo = history_repo
        self.settings = settings

        self._state = SessionState()
        self.history = TimerHistory()

        # (kind, entity id) of writes currently in flight
        self._in_flight: Set[Tuple[BindingKind, Optional[int]]] = set()

        self.refresh_timer = QTimer(self)
        self.refresh_timer.timeout.connect(self._on_refresh_timeout)

    @property
    def clock(self):
        return self.timer.clock

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state.model_copy(deep=True)

    @property
    def current_time_entry(self) -> Optional[CurrentTimeEntry]:
        return self._state.current_time_entry

    @property
    def current_task(self) -> Optional[CurrentTask]:
        return self._state.current_task

    @property
    def is_connected(self) -> bool:
        return self._state.is_connected and self.client.is_connected

    @property
    def events(self):
        return list(self._state.events)

    def current_duration(self, binding: Optional[Binding]) -> Optional[float]:
        """Active seconds tracked for a binding, None if this process never timed it"""
        if binding is None or binding.timer_offset is None:
            return None
        if self.timer.status == TimerStatus.IDLE:
            return None
        return max(0.0, self.timer.total_elapsed() - binding.timer_offset)

    # ------------------------------------------------------------------
    # Startup / login
    # ------------------------------------------------------------------

    async def restore(self) -> SessionState:
        """
        Load the persisted session after a (possibly unclean) restart.

        Bindings survive, but the timer always comes back idle and the
        connection has to be re-established.
        """
        stored = await self.session_repo.load() if self.session_repo else None
        if stored is not None:
            stored.is_connected = False
            stored.is_authenticated = False
            if stored.current_time_entry is not None:
                stored.current_time_entry.timer_offset = None
            if stored.current_task is not None:
                stored.current_task.timer_offset = None
            self._state = stored

        self.timer.restore(await self.timer_repo.load() if self.timer_repo else None)
        if self.history_repo:
            self.history = await self.history_repo.load() or TimerHistory()

        logger.info(
            f"Session restored (time entry: {self._bound_id(self._state.current_time_entry)}, "
            f"task: {self._bound_id(self._state.current_task)})"
        )
        self.session_changed.emit()
        return self.state

    async def login(self, target: Union[Profile, AuthConfig, None] = None) -> SessionState:
        """
        Connect with a profile (or the settings' current profile), then load
        the catalog needed to validate start requests.

        Raises:
            ConfigurationError: incomplete profile
            ServerConnectionError: a connect check failed
            ApiError: the catalog could not be loaded (session stays connected)
        """
        profile_id, auth = self._resolve_auth(target)

        try:
            await self.client.connect(auth)
        except TikkerError as e:
            self._state.is_connected = False
            self._state.connection_error = str(e)
            self._record(SessionEventType.ERROR, error=str(e))
            self.error_occurred.emit(str(e))
            self.session_changed.emit()
            raise

        now = self.clock()
        if profile_id is not None and profile_id != self._state.profile_id:
            # Bindings belong to the previous server
            self._state.current_time_entry = None
            self._state.current_task = None
        self._state.profile_id = profile_id
        self._state.user = self.client.current_user
        self._state.is_authenticated = True
        self._state.is_connected = True
        self._state.connection_error = None
        self._state.session_start = now
        self._state.last_activity = now
        self._record(SessionEventType.LOGIN, user=self.client.current_user.username)
        self._add_recent_session(profile_id, auth.base_url)

        if self.settings is not None and profile_id is not None:
            self.settings.update_profile(profile_id, last_used=now)

        try:
            await self.synchronizer.refresh_catalog()
            await self.reconcile()
        finally:
            await self._persist()
            self.session_changed.emit()
        return self.state

    async def logout(self) -> None:
        """
        Disconnect, clear cache and session. The timer keeps its own lifecycle;
        the event log and the recent sessions survive.
        """
        await self.client.disconnect()
        self.cache.clear()
        self.refresh_timer.stop()
        self._state = SessionState(
            session_start=self.clock(),
            last_activity=self.clock(),
            events=self._state.events,
            recent_sessions=self._state.recent_sessions,
        )
        self._record(SessionEventType.LOGOUT)
        await self._persist()
        self.session_changed.emit()

    def is_session_valid(self) -> bool:
        """Authenticated, with a known user, and logged in less than a day ago"""
        if not self._state.is_authenticated or self._state.user is None:
            return False
        return self.clock() - self._state.session_start < SESSION_MAX_AGE

    def session_duration(self) -> float:
        """Seconds since login, 0 when logged out"""
        if not self._state.is_authenticated:
            return 0.0
        return max(0.0, (self.clock() - self._state.session_start).total_seconds())

    def format_session_duration(self) -> str:
        return format_time(self.session_duration())

    @property
    def recent_sessions(self) -> List[RecentSession]:
        return list(self._state.recent_sessions)

    def _add_recent_session(self, profile_id: Optional[str], base_url: str) -> None:
        """Newest first, one entry per user, at most MAX_RECENT_SESSIONS"""
        user = self._state.user
        if user is None:
            return
        recent = RecentSession(
            profile_id=profile_id,
            base_url=base_url,
            user=user,
            session_start=self._state.session_start,
            last_activity=self._state.last_activity,
        )
        others = [s for s in self._state.recent_sessions if s.user.id != user.id]
        self._state.recent_sessions = ([recent] + others)[:MAX_RECENT_SESSIONS]

    async def clear_recent_sessions(self) -> None:
        self._state.recent_sessions = []
        await self._persist()
        self.session_changed.emit()

    async def clear_session_events(self) -> None:
        self._state.events = []
        await self._persist()
        self.session_changed.emit()

    async def switch_profile(self, profile_id: str) -> SessionState:
        if self.settings is None or self.settings.get_profile(profile_id) is None:
            raise ValidationError(f"Unknown profile {profile_id}")
        await self.logout()
        self.settings.set_current_profile(profile_id)
        return await self.login(self.settings.get_profile(profile_id))

    def _resolve_auth(self, target: Union[Profile, AuthConfig, None]) -> Tuple[Optional[str], AuthConfig]:
        if isinstance(target, Profile):
            return target.id, target.auth
        if isinstance(target, AuthConfig):
            return None, target
        profile = self.settings.current_profile if self.settings else None
        if profile is None:
            raise ValidationError("No connection profile selected")
        return profile.id, profile.auth

    async def reconcile(self) -> None:
        """
        Drop bindings whose remote record was closed elsewhere (other device,
        web UI) while we were away.
        """
        entry = self._state.current_time_entry
        if entry is not None:
            remote = await self._fetch_for_reconcile(TIME_ENTRIES, entry.id)
            if remote is False or (remote is not None and not remote.is_open):
                logger.info(f"Time entry {entry.id} was closed remotely; unbinding")
                self._state.current_time_entry = None
                self._release_timer()

        task = self._state.current_task
        if task is not None:
            remote = await self._fetch_for_reconcile(TASKS, task.id)
            if remote is False or (remote is not None and remote.status != TaskStatus.PROGRESS):
                logger.info(f"Task {task.id} is no longer in progress remotely; unbinding")
                self._state.current_task = None
                self._release_timer()

    async def _fetch_for_reconcile(self, collection: str, entity_id: int):
        """Remote record, False if it no longer exists, None if unknown right now"""
        try:
            record = await self.client.get_entity(collection, entity_id)
        except ApiError as e:
            if e.code == 404:
                return False
            logger.warning(f"Could not verify {collection} {entity_id}: {e}")
            return None
        self.cache.put(collection, record)
        return record

    # ------------------------------------------------------------------
    # Time entries
    # ------------------------------------------------------------------

    def validate_selection(self, customer_id: int, project_id: int, activity_id: int) -> None:
        """
        The three ids must exist in the cache and form a valid
        customer -> project -> activity chain.
        """
        if self.cache.get_customer(customer_id) is None:
            raise ValidationError(f"Customer {customer_id} is not available")

        project = self.cache.get_project(project_id)
        if project is None or project.customer != customer_id:
            raise ValidationError(f"Project {project_id} does not belong to customer {customer_id}")

        activity = self.cache.get_activity(activity_id)
        if activity is None or not (activity.is_global or activity.project == project_id):
            raise ValidationError(f"Activity {activity_id} is not available for project {project_id}")

    async def start_time_entry(self, customer_id: int, project_id: int, activity_id: int,
                               description: Optional[str] = None, billable: bool = True,
                               tags: Optional[list] = None) -> Optional[TimeEntry]:
        """
        Create an open remote time entry and bind the timer to it.

        Returns None if an identical start is already in flight.

        Raises:
            ValidationError: not connected, one already running, or invalid selection
            ApiError: the server rejected the entry (nothing is bound)
        """
        self._require_connection()
        if self._state.current_time_entry is not None:
            raise ValidationError("A time entry is already running")
        self._require_unpaused()
        self.validate_selection(customer_id, project_id, activity_id)

        key = (BindingKind.TIMESHEET, None)
        if key in self._in_flight:
            return None

        now = self.clock()
        payload = {
            "begin": now.replace(microsecond=0).isoformat(),
            "customer": customer_id,
            "project": project_id,
            "activity": activity_id,
            "description": description,
            "billable": billable,
            "tags": list(tags or []),
        }
        payload = {k: v for k, v in payload.items() if v is not None}

        self._in_flight.add(key)
        try:
            created = await self.synchronizer.create(TIME_ENTRIES, payload)
        except TikkerError as e:
            self._report_failure("start time entry", e)
            raise
        finally:
            self._in_flight.discard(key)

        binding = CurrentTimeEntry(
            id=created.id,
            begin=created.begin,
            customer=customer_id,
            project=project_id,
            activity=activity_id,
            description=created.description,
            billable=created.billable,
            tags=created.tags,
            timer_offset=self._claim_timer(TimerBinding(
                kind=BindingKind.TIMESHEET,
                entity_id=created.id,
                customer=customer_id,
                project=project_id,
                activity=activity_id,
                description=created.description,
                billable=created.billable,
                tags=created.tags,
            )),
        )
        self._state.current_time_entry = binding
        self._touch()
        self._record(SessionEventType.START, time_entry=created.id)
        await self._persist()
        self.session_changed.emit()
        return created

    async def stop_time_entry(self) -> Optional[TimeEntry]:
        """
        Close the bound time entry on the server, then unbind.

        A second call while the first is still in flight is a no-op (returns
        None). If the server call fails the binding and the timer stay as
        they are so the stop can be retried.

        Raises:
            ValidationError: nothing is bound
            ApiError: the server rejected the update
        """
        entry = self._state.current_time_entry
        if entry is None:
            raise ValidationError("No time entry is running")

        key = (BindingKind.TIMESHEET, entry.id)
        if key in self._in_flight:
            logger.debug(f"Stop for time entry {entry.id} already in flight")
            return None

        self._in_flight.add(key)
        try:
            self._require_connection()
            duration = self.current_duration(entry)
            payload = {"end": self.clock().replace(microsecond=0).isoformat()}
            if duration is not None:
                payload["duration"] = round(duration)
            updated = await self.synchronizer.update(TIME_ENTRIES, entry.id, payload)
        except TikkerError as e:
            self._report_failure(f"stop time entry {entry.id}", e)
            raise
        finally:
            self._in_flight.discard(key)

        self._state.current_time_entry = None
        self._release_timer()
        self._touch()
        self._record(SessionEventType.STOP, time_entry=entry.id, duration=updated.duration)
        await self.update_history()
        await self._persist()
        self.session_changed.emit()
        return updated

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def start_task(self, task_id: int) -> Optional[Task]:
        """
        Mark a cached task as in progress on the server and bind it.

        Only one task start may be in flight at a time, whatever the task, so
        at most one task is ever put in progress by this session. A start
        issued while another is in flight returns None.

        Raises:
            ValidationError: not connected, a task is already in progress,
                the timer is paused for another binding, the task is
                unknown or closed
            ApiError: the server rejected the status change
        """
        self._require_connection()
        if self._state.current_task is not None:
            raise ValidationError(f"Task {self._state.current_task.id} is already in progress")
        self._require_unpaused()

        task = self.cache.get_task(task_id)
        if task is None:
            raise ValidationError(f"Task {task_id} is not available")
        if task.status == TaskStatus.CLOSED:
            raise ValidationError(f"Task {task_id} is closed")

        key = (BindingKind.TASK, None)
        if key in self._in_flight:
            logger.debug(f"Task start already in flight; ignoring start of task {task_id}")
            return None

        self._in_flight.add(key)
        try:
            updated = await self.synchronizer.update(TASKS, task_id, {"status": TaskStatus.PROGRESS.value})
        except TikkerError as e:
            self._report_failure(f"start task {task_id}", e)
            raise
        finally:
            self._in_flight.discard(key)

        prior = task.status if task.status != TaskStatus.PROGRESS else TaskStatus.OPEN
        binding = CurrentTask(
            id=updated.id,
            title=updated.title,
            status=TaskStatus.PROGRESS,
            prior_status=prior,
            priority=updated.priority,
            customer=updated.customer,
            project=updated.project,
            activity=updated.activity,
            estimated_duration=updated.estimated_duration,
            actual_duration=updated.actual_duration,
            begin=self.clock(),
            timer_offset=self._claim_timer(TimerBinding(
                kind=BindingKind.TASK,
                entity_id=updated.id,
                customer=updated.customer,
                project=updated.project,
                activity=updated.activity,
                description=updated.title,
            )),
        )
        self._state.current_task = binding
        self._touch()
        self._record(SessionEventType.START, task=task_id)
        await self._persist()
        self.session_changed.emit()
        return updated

    async def stop_task(self, final_status: Optional[TaskStatus] = None) -> Optional[Task]:
        """
        Add this session's active time to the task and set its status.

        `final_status` defaults to the status the task had before it was
        started. The accumulated duration is added, never overwritten.
        """
        current = self._state.current_task
        if current is None:
            raise ValidationError("No task is in progress")

        key = (BindingKind.TASK, current.id)
        if key in self._in_flight:
            return None

        self._in_flight.add(key)
        try:
            self._require_connection()
            duration = self.current_duration(current)
            if duration is None:
                logger.info(f"Task {current.id} was not timed by this session; no duration added")
            cached = self.cache.get_task(current.id)
            base = cached.actual_duration if cached is not None else current.actual_duration
            status = final_status or current.prior_status
            payload = {
                "status": status.value,
                "actualDuration": base + round(duration or 0),
            }
            updated = await self.synchronizer.update(TASKS, current.id, payload)
        except TikkerError as e:
            self._report_failure(f"stop task {current.id}", e)
            raise
        finally:
            self._in_flight.discard(key)

        self._state.current_task = None
        self._release_timer()
        self._touch()
        self._record(SessionEventType.STOP, task=current.id, status=status.value, duration=round(duration or 0))
        await self._persist()
        self.session_changed.emit()
        return updated

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------

    async def pause(self) -> bool:
        if not self.timer.pause():
            return False
        self._record(SessionEventType.PAUSE, duration=round(self.timer.total_elapsed()))
        await self._persist()
        self.session_changed.emit()
        return True

    async def resume(self) -> bool:
        if not self.timer.resume():
            return False
        self._record(SessionEventType.RESUME)
        await self._persist()
        self.session_changed.emit()
        return True

    # ------------------------------------------------------------------
    # Refresh / history
    # ------------------------------------------------------------------

    async def refresh(self) -> None:
        """Reload every collection and recompute the history totals"""
        self._require_connection()
        await self.synchronizer.refresh_all()
        await self.update_history()

    async def update_history(self) -> TimerHistory:
        self.history = TimerHistory.from_entries(self.cache.time_entries)
        await self._save_history()
        return self.history

    async def clear_history(self) -> None:
        """Forget the aggregate totals; the next refresh rebuilds them"""
        self.history = TimerHistory()
        await self._save_history()

    async def _save_history(self) -> None:
        if self.history_repo:
            try:
                await self.history_repo.save(self.history)
            except SQLAlchemyError as e:
                logger.warning(f"Failed to save history: {e}")

    def start_auto_refresh(self, interval_seconds: int) -> None:
        self.refresh_timer.start(max(5, interval_seconds) * 1000)

    def _on_refresh_timeout(self):
        if not self.is_connected:
            return
        # Requires the asyncio loop running alongside Qt
        asyncio.create_task(self._background_refresh())

    async def _background_refresh(self):
        try:
            await self.refresh()
        except TikkerError as e:
            logger.warning(f"Background refresh failed: {e}")
            self.error_occurred.emit(str(e))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_connection(self) -> None:
        if not self.is_connected:
            raise ValidationError("Not connected to a server")

    def _require_unpaused(self) -> None:
        """
        Starting a binding while another one is paused would resume the shared
        timer and add time to the paused binding.
        """
        if self.timer.status == TimerStatus.PAUSED and self._timed_bindings():
            raise ValidationError("Resume the timer before starting something else")

    def _timed_bindings(self):
        """Bound records whose time this process is measuring"""
        return [b for b in (self._state.current_time_entry, self._state.current_task)
                if b is not None and b.timer_offset is not None]

    def _claim_timer(self, binding: TimerBinding) -> float:
        """
        Point the timer at a new binding and return the timer total at this
        moment (the binding's offset).

        A cycle left over from a logged-out session has nothing bound to it and
        is discarded. A cycle shared with another binding keeps its state.
        """
        if self.timer.is_active() and not self._timed_bindings():
            logger.info(f"Discarding timer cycle with nothing bound ({self.timer.total_elapsed():.0f}s)")
            self.timer.reset()
        if self.timer.status == TimerStatus.STOPPED:
            self.timer.reset()
        if self.timer.status == TimerStatus.IDLE:
            self.timer.start(binding)
            return 0.0
        self.timer.bind(binding)
        return self.timer.total_elapsed()

    def _release_timer(self) -> None:
        """
        Finish the timer cycle unless another binding is still being timed;
        in that case the timer keeps running for it.
        """
        remaining = self._timed_bindings()
        if remaining:
            other = remaining[0]
            kind = BindingKind.TIMESHEET if isinstance(other, CurrentTimeEntry) else BindingKind.TASK
            self.timer.update_binding(kind=kind, entity_id=other.id)
            return
        if self.timer.stop():
            self.timer.reset()

    def _report_failure(self, action: str, error: TikkerError) -> None:
        logger.warning(f"Failed to {action}: {error}")
        self._record(SessionEventType.ERROR, action=action, error=str(error))
        self.error_occurred.emit(str(error))

    def _record(self, event_type: SessionEventType, **details) -> None:
        event = SessionEvent(type=event_type, timestamp=self.clock(), details=details)
        self._state.events = [event] + self._state.events[:MAX_EVENTS - 1]

    def _touch(self) -> None:
        self._state.last_activity = self.clock()

    @staticmethod
    def _bound_id(binding: Optional[Binding]) -> Optional[int]:
        return binding.id if binding is not None else None

    async def _persist(self) -> None:
        """Write session and timer snapshot, each under its own key"""
        try:
            if self.session_repo:
                await self.session_repo.save(self._state)
            if self.timer_repo:
                await self.timer_repo.save(self.timer.snapshot())
        except SQLAlchemyError as e:
            logger.warning(f"Failed to persist session state: {e}")
