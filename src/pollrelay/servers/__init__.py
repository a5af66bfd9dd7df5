from .apps import RelayServer, checked_address
from .flows import setup_event_bus, http_status_for

__all__ = [
    "RelayServer",
    "checked_address",
    "setup_event_bus",
    "http_status_for",
]
