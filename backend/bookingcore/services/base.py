# backend/bookingcore/services/base.py
"""
Base service for the booking core.

Provides transaction management, logging and Prometheus operation metrics for
the service classes. Services own the transaction; repositories only flush.
"""

from contextlib import contextmanager
from functools import wraps
import logging
import time
from typing import Any, Callable, Iterator, TypeVar, cast

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.clock import Clock, SystemClock
from ..core.exceptions import RepositoryException, ServiceException
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SLOW_OPERATION_SECONDS = 1.0


class BaseService:
    """
    Base class for all service layer components.

    Attributes:
        db: Database session, one per unit of work
        clock: Source of transition timestamps
    """

    def __init__(self, db: Session, clock: Clock | None = None):
        self.db = db
        self.clock: Clock = clock or SystemClock()
        self.logger = logging.getLogger(self.__class__.__name__)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Context manager for database transactions.

        Commits on success. On any error the session is rolled back so no
        replica is left half-written; persistence errors surface as
        ``ServiceException`` carrying the original cause.
        """
        try:
            yield self.db
            self.db.commit()
            self.logger.debug("Transaction committed successfully")
        except (SQLAlchemyError, RepositoryException) as e:
            self.logger.error(f"Transaction failed: {str(e)}")
            self.db.rollback()
            cause = e.original_error if isinstance(e, RepositoryException) else e
            raise ServiceException(
                f"Database operation failed: {str(e)}",
                code="PERSISTENCE_ERROR",
                details={"cause": type(cause or e).__name__},
            ) from e
        except Exception as e:
            self.logger.debug(f"Rolling back after {type(e).__name__}: {str(e)}")
            self.db.rollback()
            raise

    @staticmethod
    def measure_operation(operation_name: str) -> Callable[[F], F]:
        """
        Decorator that records an operation's duration and outcome.

        Each call observes the service operation histogram and counts a
        success or an error (with the exception class name) in Prometheus.
        Calls slower than ``SLOW_OPERATION_SECONDS`` are also logged.

        Usage:
            @BaseService.measure_operation("create_booking")
            def create_booking(self, data):
                ...
        """

        def decorator(func: F) -> F:
            @wraps(func)
            def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
                start_time = time.monotonic()
                success = False
                error_type = None
                try:
                    result = func(self, *args, **kwargs)
                    success = True
                    return result
                except Exception as e:
                    error_type = type(e).__name__
                    raise
                finally:
                    elapsed = time.monotonic() - start_time
                    service_logger = getattr(self, "logger", logger)
                    if elapsed > SLOW_OPERATION_SECONDS:
                        service_logger.warning(
                            f"Slow operation detected: {operation_name} took {elapsed:.2f}s"
                        )
                    try:
                        prometheus_metrics.record_service_operation(
                            service=self.__class__.__name__,
                            operation=operation_name,
                            duration=elapsed,
                            status="success" if success else "error",
                            error_type=error_type,
                        )
                    except ValueError as metrics_error:
                        # Metrics must never change the outcome of the operation
                        service_logger.debug(f"Metrics recording failed: {metrics_error}")

            return cast(F, wrapper)

        return decorator
