# backend/bookingcore/repositories/base_repository.py
"""
Base repository for the booking core.

Repositories never commit: the service layer owns the transaction so that a
booking transition, its mirrors and its outbox rows land together or not at
all. Repository methods translate SQLAlchemy errors into
``RepositoryException``.
"""

import logging
from typing import Generic, List, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError, UnboundExecutionError
from sqlalchemy.orm import Query, Session

from ..core.exceptions import RepositoryException

# Type variable for generic model support
T = TypeVar("T")

logger = logging.getLogger(__name__)

# Reported for sessions with no engine bound; production runs on PostgreSQL
DEFAULT_DIALECT = "postgresql"


def session_dialect(session: Session) -> str:
    """Lower-cased dialect name of the engine bound to ``session``."""
    try:
        bind = session.get_bind()
    except UnboundExecutionError:
        return DEFAULT_DIALECT
    return bind.dialect.name.lower()


class BaseRepository(Generic[T]):
    """
    Common data access helpers shared by the booking core repositories.

    Attributes:
        db: SQLAlchemy session
        model: SQLAlchemy model class
    """

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    @property
    def dialect_name(self) -> str:
        return session_dialect(self.db)

    def get_by_id(self, id: str) -> Optional[T]:
        try:
            return self.db.get(self.model, id)
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting {self.model.__name__} by id {id}: {str(e)}")
            raise RepositoryException(f"Failed to retrieve {self.model.__name__}: {str(e)}", e)

    def add(self, entity: T) -> T:
        """
        Stage a new entity and flush it to obtain database defaults.

        Note: Does NOT commit - transaction management is handled by service layer.
        """
        try:
            self.db.add(entity)
            self.db.flush()
            return entity
        except IntegrityError as exc:
            self.logger.error(
                "Integrity error creating %s: %s", self.model.__name__, exc, exc_info=True
            )
            raise RepositoryException(f"Integrity constraint violated: {exc}", exc) from exc
        except SQLAlchemyError as e:
            self.logger.error(f"Error creating {self.model.__name__}: {str(e)}")
            raise RepositoryException(f"Failed to create {self.model.__name__}: {str(e)}", e)

    def flush(self) -> None:
        """Flush pending ORM changes."""
        try:
            self.db.flush()
        except SQLAlchemyError as e:
            self.logger.error(f"Flush failed for {self.model.__name__}: {str(e)}")
            raise RepositoryException(f"Failed to write {self.model.__name__}: {str(e)}", e)

    def _build_query(self) -> Query:
        """Get base query for the model."""
        return self.db.query(self.model)

    def _execute_query(self, query: Query) -> List[T]:
        """Execute query with error handling."""
        try:
            return query.all()
        except SQLAlchemyError as e:
            self.logger.error(f"Query execution error: {str(e)}")
            raise RepositoryException(f"Query failed: {str(e)}", e)
