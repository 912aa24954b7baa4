"""
Base Repository
Common CRUD operations for all entities
"""

import uuid
from typing import Generic, TypeVar, Type, Optional, List, Dict, Any
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from ..connection import Base

# Type variables for generic repository
ModelType = TypeVar("ModelType", bound=Base)
CreateSchemaType = TypeVar("CreateSchemaType")
UpdateSchemaType = TypeVar("UpdateSchemaType")


class RepositoryError(Exception):
    """Base repository error"""
    pass


class NotFoundError(RepositoryError):
    """Entity not found error"""
    pass


class ConflictError(RepositoryError):
    """Data conflict error"""
    pass


class BaseRepository(Generic[ModelType, CreateSchemaType, UpdateSchemaType]):
    """Base repository with common CRUD operations"""

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self.model = model
        self.session = session

    async def create(self, obj_in: CreateSchemaType, **kwargs) -> ModelType:
        """Create a new entity"""
        try:
            obj_data = obj_in.model_dump(exclude_none=True)
            obj_data.update(kwargs)

            db_obj = self.model(**obj_data)
            self.session.add(db_obj)
            await self.session.flush()
            await self.session.refresh(db_obj)
            return db_obj

        except IntegrityError as e:
            await self.session.rollback()
            raise ConflictError(f"Data conflict: {str(e)}")

    async def get(self, id: uuid.UUID) -> Optional[ModelType]:
        """Get entity by ID"""
        try:
            result = await self.session.execute(
                select(self.model).where(self.model.id == id)
            )
            return result.scalar_one_or_none()
        except Exception as e:
            raise RepositoryError(f"Error getting entity: {str(e)}")

    async def get_or_404(self, id: uuid.UUID) -> ModelType:
        """Get entity by ID or raise NotFoundError"""
        obj = await self.get(id)
        if obj is None:
            raise NotFoundError(f"{self.model.__name__} with id {id} not found")
        return obj

    async def get_multi(
        self,
        skip: int = 0,
        limit: int = 100,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[ModelType]:
        """Get multiple entities with pagination and filtering"""
        try:
            query = select(self.model)

            if filters:
                for field, value in filters.items():
                    if hasattr(self.model, field):
                        column = getattr(self.model, field)
                        if isinstance(value, list):
                            query = query.where(column.in_(value))
                        else:
                            query = query.where(column == value)

            if hasattr(self.model, 'created_at'):
                query = query.order_by(self.model.created_at.desc())

            query = query.offset(skip).limit(limit)

            result = await self.session.execute(query)
            return list(result.scalars().all())

        except Exception as e:
            raise RepositoryError(f"Error getting entities: {str(e)}")

    async def update(self, id: uuid.UUID, obj_in: UpdateSchemaType) -> ModelType:
        """Update entity by ID"""
        try:
            db_obj = await self.get_or_404(id)

            # Only fields explicitly set on the update schema
            update_data = obj_in.model_dump(exclude_unset=True)

            for field, value in update_data.items():
                if hasattr(db_obj, field):
                    setattr(db_obj, field, value)

            await self.session.flush()
            await self.session.refresh(db_obj)
            return db_obj

        except NotFoundError:
            raise
        except IntegrityError as e:
            await self.session.rollback()
            raise ConflictError(f"Data conflict: {str(e)}")
        except Exception as e:
            await self.session.rollback()
            raise RepositoryError(f"Error updating entity: {str(e)}")

    async def delete(self, id: uuid.UUID) -> bool:
        """Delete entity by ID"""
        try:
            db_obj = await self.get_or_404(id)

            await self.session.delete(db_obj)
            await self.session.flush()
            return True

        except NotFoundError:
            raise
        except Exception as e:
            await self.session.rollback()
            raise RepositoryError(f"Error deleting entity: {str(e)}")

    async def count(self, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count entities with optional filters"""
        try:
            query = select(func.count(self.model.id))

            if filters:
                for field, value in filters.items():
                    if hasattr(self.model, field):
                        query = query.where(getattr(self.model, field) == value)

            result = await self.session.execute(query)
            return result.scalar()

        except Exception as e:
            raise RepositoryError(f"Error counting entities: {str(e)}")
