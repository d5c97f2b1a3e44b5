from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError

from rapport_sync.application.exceptions import AppError, ConflictError, NetworkError

logger = logging.getLogger(__name__)


def translate_db_error(exc: Exception, operation: str) -> AppError:
    """Map a driver or SQLAlchemy failure onto the engine's error taxonomy."""
    if isinstance(exc, IntegrityError):
        return ConflictError(f"{operation}: duplicate or invalid reference")
    if isinstance(exc, (OperationalError, InterfaceError, ConnectionError, OSError)):
        logger.warning("%s: database unreachable: %s", operation, exc)
        return NetworkError(f"{operation}: database unreachable")
    if isinstance(exc, SQLAlchemyError):
        logger.error("%s: database error: %s", operation, exc)
        return AppError(f"{operation}: database error")
    raise exc
