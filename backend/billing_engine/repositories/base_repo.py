"""
Base repository for eligibility store tables.

Reads never commit. create/update commit immediately and are meant for
standalone admin writes; multi-step business operations add rows through
the session and commit once in the service layer.
"""

import logging
from abc import ABC, abstractmethod
from typing import Generic, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_engine.db_base import Base

logger = logging.getLogger(__name__)

# Type variable for repository models
T = TypeVar("T", bound=Base)


class BaseRepository(Generic[T], ABC):
    """Common CRUD helpers over one model class."""

    def __init__(self, db_session: Session):
        self.db_session = db_session
        self._model_class = self._get_model_class()

    @abstractmethod
    def _get_model_class(self) -> type:
        """Return the SQLAlchemy model class for this repository."""
        pass

    def _primary_key(self):
        return self._model_class.__mapper__.primary_key[0]

    def get_by_id(self, entity_id: str) -> Optional[T]:
        return self.db_session.query(self._model_class).filter(
            self._primary_key() == entity_id
        ).first()

    def create(self, entity_data: dict) -> T:
        """
        Create and commit a new entity.

        Raises:
            SQLAlchemyError: after rolling back, if the insert fails
        """
        entity = self._model_class(**entity_data)
        self.db_session.add(entity)

        try:
            self.db_session.commit()
            self.db_session.refresh(entity)
            logger.info(
                "Entity created",
                extra={
                    "entity_type": self._model_class.__name__,
                    "entity_id": getattr(entity, "id", None),
                }
            )
            return entity
        except SQLAlchemyError as e:
            self.db_session.rollback()
            logger.error(
                "Failed to create entity",
                extra={"entity_type": self._model_class.__name__, "error": str(e)}
            )
            raise

    def update(self, entity: T, entity_data: dict) -> T:
        """Apply known attributes from entity_data and commit."""
        for key, value in entity_data.items():
            if hasattr(entity, key):
                setattr(entity, key, value)

        try:
            self.db_session.commit()
            self.db_session.refresh(entity)
            logger.info(
                "Entity updated",
                extra={
                    "entity_type": self._model_class.__name__,
                    "entity_id": getattr(entity, "id", None),
                    "fields": sorted(entity_data.keys()),
                }
            )
            return entity
        except SQLAlchemyError as e:
            self.db_session.rollback()
            logger.error(
                "Failed to update entity",
                extra={"entity_type": self._model_class.__name__, "error": str(e)}
            )
            raise
