"""Bus MQTT del network server: una sesión paho por tenant."""

from .bus import BusPublishError, BusSession

__all__ = ["BusPublishError", "BusSession"]
