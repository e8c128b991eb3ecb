"""Services layer - Business logic"""

from .cache_store import EntityCache
from .cache_sync import CacheSynchronizer
from .session_service import SessionManager
from .timer_service import TimerService, format_time

__all__ = ["EntityCache", "CacheSynchronizer", "SessionManager", "TimerService", "format_time"]
