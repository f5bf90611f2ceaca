"""
Base Repository for Astropal

Generic async repository over one SQLModel table. Repositories never
commit; the caller's unit of work (DatabaseManager.session_context) does.
"""

from typing import TypeVar, Generic, Optional, Type

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel


ModelType = TypeVar("ModelType", bound=SQLModel)


class BaseRepository(Generic[ModelType]):
    """
    Generic async repository with the operations every table shares.

    Args:
        model: The SQLModel class to operate on
        session: Async database session
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self._model = model
        self._session = session

    async def get_by_id(self, id: str) -> Optional[ModelType]:
        """Get a single record by its primary key."""
        return await self._session.get(self._model, id)

    async def add(self, db_obj: ModelType) -> ModelType:
        """Stage a new or modified record and flush it."""
        self._session.add(db_obj)
        await self._session.flush()
        return db_obj
