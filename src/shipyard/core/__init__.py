"""Shipyard core -- errors, settings, structured logging and events.

Everything else in shipyard depends on this layer; it depends on nothing
else in shipyard.

Architecture::

    errors.py      ShipyardError hierarchy (category, retryable, context)
    settings.py    ShipyardSettings (pydantic-settings, SHIPYARD_* env vars)
    logging.py     structlog configuration and get_logger()
    events/        Event, EventBus protocol, InMemoryEventBus
"""

from shipyard.core.errors import ErrorCategory, ErrorContext, ShipyardError
from shipyard.core.logging import configure_logging, get_logger
from shipyard.core.settings import ShipyardSettings, get_settings

__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "ShipyardError",
    "ShipyardSettings",
    "configure_logging",
    "get_logger",
    "get_settings",
]
