"""
Application wiring.

Objects are constructed explicitly in dependency order:
cache -> gateway -> synchronizer -> timer -> session.
"""

import logging
from typing import Optional

from tikker.infra.api_client import KimaiApiClient
from tikker.infra.config import Settings, get_settings
from tikker.infra.db import DatabaseEngine, init_db
from tikker.infra.repository import HistoryRepository, KeyValueRepository, SessionRepository, TimerStateRepository
from tikker.services.cache_store import EntityCache
from tikker.services.cache_sync import CacheSynchronizer
from tikker.services.session_service import SessionManager
from tikker.services.timer_service import TimerService

logger = logging.getLogger(__name__)


class TikkerApp:
    """Owns every long-lived service of one running client"""

    def __init__(self, settings: Settings, engine: DatabaseEngine):
        prefs = settings.preferences
        self.settings = settings
        self.engine = engine

        self.cache = EntityCache()
        self.client = KimaiApiClient(
            settings.current_profile.auth if settings.current_profile else None,
            timeout=prefs.request_timeout,
            verify_ssl=not prefs.ignore_ssl_errors,
        )
        self.synchronizer = CacheSynchronizer(self.cache, self.client)
        self.timer = TimerService(
            show_seconds=prefs.show_seconds,
            show_notifications=prefs.show_notifications,
            notification_interval=prefs.notification_interval,
        )

        store = KeyValueRepository(engine)
        self.session = SessionManager(
            self.timer,
            self.synchronizer,
            self.client,
            session_repo=SessionRepository(store),
            timer_repo=TimerStateRepository(store),
            history_repo=HistoryRepository(store),
            settings=settings,
        )

    @classmethod
    async def create(cls, settings: Optional[Settings] = None) -> "TikkerApp":
        """Open local storage and restore the previous session"""
        settings = settings or get_settings()
        engine = await init_db(settings.get_db_url())
        app = cls(settings, engine)
        await app.session.restore()
        return app

    async def connect(self, force: bool = False) -> bool:
        """
        Log in with the current profile if it asks for auto-connect (or when
        forced). Returns whether a login happened.
        """
        profile = self.settings.current_profile
        if profile is None:
            logger.info("No connection profile configured")
            return False
        if not (force or profile.auto_connect):
            return False
        await self.session.login(profile)
        if self.settings.preferences.sync_on_startup:
            await self.session.refresh()
        if self.settings.preferences.auto_refresh_enabled:
            self.session.start_auto_refresh(self.settings.preferences.auto_refresh_interval)
        return True

    async def shutdown(self) -> None:
        """Release network and database resources. Session state is already persisted."""
        self.session.refresh_timer.stop()
        await self.client.close()
        await self.engine.dispose()
