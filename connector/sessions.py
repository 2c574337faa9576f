"""Gestor de sesiones: bus MQTT por tenant y sesión cloud por dispositivo.

Cada mapa tiene su propio lock; los cierres se hacen fuera de los locks para
que un cierre lento no bloquee lookups de otros dispositivos.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from .cloud.base import CloudSession
from .errors import DuplicateKey
from .mqtt.bus import BusSession

logger = logging.getLogger(__name__)


@dataclass
class TenantSession:
    application_id: str
    bus: BusSession
    topics: tuple[str, ...] = field(default_factory=tuple)


@dataclass
class DeviceSession:
    device_id: str
    application_id: str
    cloud: CloudSession


class SessionManager:
    def __init__(self):
        self._tenants: dict[str, TenantSession] = {}
        self._devices: dict[str, DeviceSession] = {}
        self._tenants_lock = threading.Lock()
        self._devices_lock = threading.Lock()

    # -- tenants -------------------------------------------------------------

    def add_tenant_session(self, session: TenantSession) -> None:
        with self._tenants_lock:
            if session.application_id in self._tenants:
                raise DuplicateKey("tenant", session.application_id)
            self._tenants[session.application_id] = session

    def lookup_tenant(self, application_id: str) -> Optional[TenantSession]:
        with self._tenants_lock:
            return self._tenants.get(application_id)

    def tenant_ids(self) -> list[str]:
        with self._tenants_lock:
            return list(self._tenants)

    # -- devices -------------------------------------------------------------

    def add_device_session(self, session: DeviceSession) -> None:
        with self._devices_lock:
            if session.device_id in self._devices:
                raise DuplicateKey("device", session.device_id)
            self._devices[session.device_id] = session

    def lookup_device(self, device_id: str) -> Optional[DeviceSession]:
        with self._devices_lock:
            return self._devices.get(device_id)

    def remove_device_session(self, device_id: str) -> Optional[DeviceSession]:
        with self._devices_lock:
            return self._devices.pop(device_id, None)

    def device_ids(self) -> list[str]:
        with self._devices_lock:
            return list(self._devices)

    @property
    def device_count(self) -> int:
        with self._devices_lock:
            return len(self._devices)

    # -- shutdown ------------------------------------------------------------

    def close_all(self) -> int:
        """Cierra dispositivos y luego buses. Devuelve el número de cierres fallidos."""
        with self._devices_lock:
            devices = list(self._devices.values())
            self._devices.clear()
        with self._tenants_lock:
            tenants = list(self._tenants.values())
            self._tenants.clear()

        failures = 0
        for device in devices:
            logger.info("[SESSIONS] Closing device=%s application=%s", device.device_id, device.application_id)
            try:
                device.cloud.close()
            except Exception as e:
                failures += 1
                logger.warning("[SESSIONS] Close failed device=%s: %s", device.device_id, e)

        for tenant in tenants:
            logger.info("[SESSIONS] Stopping bus application=%s", tenant.application_id)
            try:
                tenant.bus.stop()
            except Exception as e:
                failures += 1
                logger.warning("[SESSIONS] Bus stop failed application=%s: %s", tenant.application_id, e)

        return failures

    @property
    def stats(self) -> dict:
        with self._tenants_lock:
            tenants = {app_id: t.bus.stats for app_id, t in self._tenants.items()}
        return {
            "tenants": tenants,
            "devices": self.device_count,
        }
