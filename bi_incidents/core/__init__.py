"""Core application utilities."""

from .config import Settings, get_settings
from .errors import (
    ConcurrencyError,
    DeliveryError,
    IncidentError,
    NotFoundError,
    TransientStoreError,
    UnavailableError,
    UnexpectedError,
    ValidationError,
    classify_store_error,
    with_retry,
)
from .database import (
    async_session_factory,
    close_db,
    engine,
    get_session,
    get_session_context,
    init_db,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Errors
    "IncidentError",
    "ValidationError",
    "NotFoundError",
    "ConcurrencyError",
    "TransientStoreError",
    "DeliveryError",
    "UnavailableError",
    "UnexpectedError",
    "classify_store_error",
    "with_retry",
    # Database
    "engine",
    "async_session_factory",
    "get_session",
    "get_session_context",
    "init_db",
    "close_db",
]
