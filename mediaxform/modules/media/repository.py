"""
Metadata Store

CRUD of MediaObject rows keyed by id and queryable by owner with skip/limit
pagination. SqlMetadataStore runs on async SQLAlchemy sessions; connection
failures surface as TransientIOError.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

from mediaxform.core.exceptions import ConflictError, TransientIOError
from mediaxform.modules.media.models import MediaObject


class IMetadataStore(ABC):
    """Interface for media metadata persistence."""

    @abstractmethod
    async def create(self, obj: MediaObject) -> MediaObject:
        """Insert obj. Raises ConflictError on a duplicate (parent_id, fingerprint)."""

    @abstractmethod
    async def get_owned(self, owner_id: str, object_id: str) -> Optional[MediaObject]:
        """Return the object only if it exists and belongs to owner_id."""

    @abstractmethod
    async def list_by_owner(self, owner_id: str, skip: int, limit: int) -> List[MediaObject]:
        ...

    @abstractmethod
    async def list_children(self, owner_id: str, parent_id: str) -> List[MediaObject]:
        ...

    @abstractmethod
    async def find_derived(self, parent_id: str, fingerprint: str) -> Optional[MediaObject]:
        """Existing derived object produced from parent_id by fingerprint."""

    @abstractmethod
    async def delete_owned(self, owner_id: str, object_id: str) -> Optional[MediaObject]:
        """Delete and return the object, or None when absent / not owned."""


class SqlMetadataStore(IMetadataStore):
    """Metadata store over SQLModel tables."""

    def __init__(self, session_maker: sessionmaker):
        self.session_maker = session_maker

    async def create(self, obj: MediaObject) -> MediaObject:
        details = {"parent_id": obj.parent_id, "fingerprint": obj.fingerprint}
        try:
            async with self.session_maker() as session:
                session.add(obj)
                await session.commit()
                await session.refresh(obj)
                return obj
        except IntegrityError as e:
            details["reason"] = str(e.orig)
            raise ConflictError("Media object already exists", details=details)
        except OperationalError as e:
            raise TransientIOError(f"Metadata write failed: {e}", service="database")

    async def get_owned(self, owner_id: str, object_id: str) -> Optional[MediaObject]:
        statement = select(MediaObject).where(
            MediaObject.id == object_id,
            MediaObject.owner_id == owner_id,
        )
        return await self._first(statement)

    async def list_by_owner(self, owner_id: str, skip: int, limit: int) -> List[MediaObject]:
        statement = (
            select(MediaObject)
            .where(MediaObject.owner_id == owner_id)
            .order_by(MediaObject.created_at, MediaObject.id)
            .offset(skip)
            .limit(limit)
        )
        return await self._all(statement)

    async def list_children(self, owner_id: str, parent_id: str) -> List[MediaObject]:
        statement = (
            select(MediaObject)
            .where(
                MediaObject.owner_id == owner_id,
                MediaObject.parent_id == parent_id,
            )
            .order_by(MediaObject.created_at, MediaObject.id)
        )
        return await self._all(statement)

    async def find_derived(self, parent_id: str, fingerprint: str) -> Optional[MediaObject]:
        statement = (
            select(MediaObject)
            .where(
                MediaObject.parent_id == parent_id,
                MediaObject.fingerprint == fingerprint,
            )
            .order_by(MediaObject.created_at.desc())
        )
        return await self._first(statement)

    async def delete_owned(self, owner_id: str, object_id: str) -> Optional[MediaObject]:
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    select(MediaObject).where(
                        MediaObject.id == object_id,
                        MediaObject.owner_id == owner_id,
                    )
                )
                obj = result.scalars().first()
                if obj is None:
                    return None
                await session.delete(obj)
                await session.commit()
                return obj
        except OperationalError as e:
            raise TransientIOError(f"Metadata delete failed: {e}", service="database")

    async def _first(self, statement) -> Optional[MediaObject]:
        try:
            async with self.session_maker() as session:
                result = await session.execute(statement)
                return result.scalars().first()
        except OperationalError as e:
            raise TransientIOError(f"Metadata read failed: {e}", service="database")

    async def _all(self, statement) -> List[MediaObject]:
        try:
            async with self.session_maker() as session:
                result = await session.execute(statement)
                return list(result.scalars().all())
        except OperationalError as e:
            raise TransientIOError(f"Metadata read failed: {e}", service="database")
