"""
Repository Pattern Implementation.

Architecture Decision: Why Repository Pattern?
Separates persistence from the session logic. Each typed repository owns one
key of the key-value table and converts between JSON and domain models, which
makes it easy to swap the storage or hand a fake to tests.
"""

import json
import logging
from typing import Any, Generic, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as ModelValidationError
from sqlalchemy import delete, select

from tikker.domain.models import SessionState, TimerHistory, TimerState
from tikker.infra.db import DatabaseEngine, KeyValueModel

logger = logging.getLogger(__name__)

SESSION_KEY = "tikker-session"
TIMER_STATE_KEY = "tikker-timer-state"
TIMER_HISTORY_KEY = "tikker-timer-history"


class KeyValueRepository:
    """
    Stores JSON documents by key.
    """

    def __init__(self, engine: DatabaseEngine):
        self.engine = engine

    async def get(self, key: str) -> Optional[Any]:
        """Get the decoded document, or None if the key was never written"""
        async with self.engine.get_session() as session:
            result = await session.execute(
                select(KeyValueModel).where(KeyValueModel.key == key)
            )
            row = result.scalar_one_or_none()
            return json.loads(row.value) if row else None

    async def set(self, key: str, value: Any) -> None:
        """Insert or replace the document"""
        encoded = json.dumps(value)
        async with self.engine.get_session() as session:
            row = await session.get(KeyValueModel, key)
            if row is None:
                session.add(KeyValueModel(key=key, value=encoded))
            else:
                row.value = encoded
            await session.commit()

    async def delete(self, key: str) -> None:
        async with self.engine.get_session() as session:
            await session.execute(delete(KeyValueModel).where(KeyValueModel.key == key))
            await session.commit()


M = TypeVar("M", bound=BaseModel)


class DocumentRepository(Generic[M]):
    """
    A single pydantic document stored under a fixed key.
    """

    key: str
    model: Type[M]

    def __init__(self, store: KeyValueRepository):
        self.store = store

    async def load(self) -> Optional[M]:
        """Load the document; unreadable data is logged and treated as absent"""
        data = await self.store.get(self.key)
        if data is None:
            return None
        try:
            return self.model.model_validate(data)
        except ModelValidationError as e:
            logger.warning(f"Discarding unreadable '{self.key}' document: {e}")
            return None

    async def save(self, document: M) -> None:
        await self.store.set(self.key, document.model_dump(mode="json"))

    async def clear(self) -> None:
        await self.store.delete(self.key)


class SessionRepository(DocumentRepository[SessionState]):
    key = SESSION_KEY
    model = SessionState


class TimerStateRepository(DocumentRepository[TimerState]):
    key = TIMER_STATE_KEY
    model = TimerState


class HistoryRepository(DocumentRepository[TimerHistory]):
    key = TIMER_HISTORY_KEY
    model = TimerHistory
